"""In-progress intake conversations, keyed by user."""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Callable, Dict, Optional

from core.errors import NoActiveSessionError
from core.locks import KeyedLock
from core.types import BridgeRequest, BridgeStep, RequestType
from core.validation import parse_amount, validate_destination

logger = logging.getLogger(__name__)


@dataclass
class AdvanceResult:
    """Outcome of one accepted answer."""
    request: BridgeRequest

    @property
    def completed(self) -> bool:
        return self.request.is_complete

    @property
    def next_step(self) -> Optional[BridgeStep]:
        return None if self.completed else self.request.step


class SessionStore:
    """Holds one open BridgeRequest per user.

    Sessions idle for longer than ``idle_timeout`` seconds are treated as
    gone and removed by purge_expired(). Callers that read-modify-write a
    session should hold lock(user_id) for the whole exchange.
    """

    def __init__(
        self,
        min_amount: Decimal,
        max_amount: Decimal,
        idle_timeout: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[str, BridgeRequest] = {}
        self._locks = KeyedLock()

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(user_id):
            yield

    def begin(self, user_id: str, request_type: RequestType, chat_id: str = "") -> BridgeRequest:
        """Open a session, replacing any open one for this user."""
        if user_id in self._sessions:
            logger.debug(f"Replacing open session for user {user_id}")
        request = BridgeRequest(
            user_id=user_id,
            chat_id=chat_id or user_id,
            request_type=request_type,
            updated_at=self._clock(),
        )
        self._sessions[user_id] = request
        return request

    def current(self, user_id: str) -> Optional[BridgeRequest]:
        request = self._sessions.get(user_id)
        if request is None:
            return None
        if self._is_expired(request):
            logger.info(f"Session for user {user_id} expired")
            del self._sessions[user_id]
            return None
        return request

    def advance(self, user_id: str, text: str) -> AdvanceResult:
        """Apply one answer to the user's session.

        A rejected answer leaves the session on the same step.

        Raises:
            NoActiveSessionError: If the user has no open session
            ParseError: Amount is not a number
            OutOfRangeError: Amount outside the limits
            InvalidAddressError: Destination address is invalid
        """
        request = self.current(user_id)
        if request is None:
            raise NoActiveSessionError("No bridge request in progress")

        if request.step == BridgeStep.AWAITING_AMOUNT:
            request.amount = parse_amount(text, self.min_amount, self.max_amount)
            request.step = BridgeStep.AWAITING_DESTINATION
        else:
            request.destination_address = validate_destination(text)

        request.updated_at = self._clock()
        return AdvanceResult(request)

    def clear(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)

    def purge_expired(self) -> int:
        """Drop idle sessions.

        Returns:
            Number of sessions removed
        """
        expired = [uid for uid, req in self._sessions.items() if self._is_expired(req)]
        for user_id in expired:
            del self._sessions[user_id]
        if expired:
            logger.info(f"Purged {len(expired)} idle sessions")
        return len(expired)

    def _is_expired(self, request: BridgeRequest) -> bool:
        return self._clock() - request.updated_at > self.idle_timeout

    def __len__(self) -> int:
        return len(self._sessions)
