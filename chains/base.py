"""Interfaces of the chain-side collaborators."""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from core.types import BridgeTransaction, SourcePayment


class SourceChainClient(ABC):
    """Read access to payments on the source chain."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def get_payments_to(self, locus: str) -> List[SourcePayment]:
        """All payments (confirmed or not) received at a deposit locus.

        Raises:
            TransientChainError: On RPC timeout or connection failure
        """


class DestinationChainClient(ABC):
    """Releases value on the destination chain."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def submit_release(self, address: str, amount: Decimal, dispatch_token: str) -> str:
        """Submit a release of amount to address, keyed by dispatch_token.

        Returns:
            Destination transaction reference

        Raises:
            TransientChainError: Safe to retry after find_release()
            PermanentSettlementError: The release will never be accepted
        """

    @abstractmethod
    async def get_confirmation(self, tx_ref: str) -> int:
        """Confirmations of a submitted release (0 while unmined).

        Raises:
            PermanentSettlementError: If the release was mined but reverted
        """

    async def find_release(self, dispatch_token: str) -> Optional[str]:
        """Look up an earlier release submitted under dispatch_token."""
        return None


class AddressIssuer(ABC):
    """Issues fresh deposit loci on the source chain."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def issue_deposit_locus(self) -> str:
        """Return an address backed by fresh, unused key material."""


class RefundHandler(ABC):
    """Compensation for transactions that failed after funds arrived."""

    @abstractmethod
    async def request_refund(self, tx: BridgeTransaction, reason: str) -> None:
        """Record that tx needs a refund."""
