"""Outbound side of the chat transport boundary."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class IncomingMessage:
    """Inbound chat message tagged with user and chat identity."""
    user_id: str
    chat_id: str
    text: str


class ChatTransport(ABC):
    """Sends messages to users. The chat front-end itself lives outside the bridge."""

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def send_message(self, chat_id: str, text: str, formatting: Optional[str] = None) -> None:
        """Send text to a chat.

        Args:
            chat_id: Chat identity from the inbound message
            text: Message body
            formatting: Optional formatting hint (e.g. "Markdown")
        """


class LogTransport(ChatTransport):
    """Writes outbound messages to the log. For running without a chat front-end."""

    async def send_message(self, chat_id: str, text: str, formatting: Optional[str] = None) -> None:
        logger.info(f"[chat {chat_id}] {text}")


class WebhookTransport(ChatTransport):
    """POSTs outbound messages as JSON to the chat front-end's webhook."""

    def __init__(self, webhook_url: str, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def send_message(self, chat_id: str, text: str, formatting: Optional[str] = None) -> None:
        if not self._session:
            await self.start()

        payload = {"chat_id": chat_id, "text": text, "parse_mode": formatting}
        try:
            async with self._session.post(self.webhook_url, json=payload) as response:
                if response.status >= 400:
                    logger.error(
                        f"Chat webhook rejected message to {chat_id}: HTTP {response.status}"
                    )
        except Exception as e:
            # Delivery is best effort; ledger state never depends on it
            logger.error(f"Failed to deliver message to chat {chat_id}: {e}")
