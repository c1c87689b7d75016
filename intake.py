"""Chat command registry and the intake conversation handler."""

import logging
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Union

from config import BridgeConfig
from core.errors import NotFoundError, ValidationError
from core.types import BridgeTransaction, RequestType, StatusSnapshot, TransactionStatus
from engine import BridgeEngine
from session_store import SessionStore
from transport import ChatTransport, IncomingMessage

logger = logging.getLogger(__name__)

CommandHandler = Callable[[IncomingMessage, str], Awaitable[None]]
TextHandler = Callable[[IncomingMessage], Awaitable[None]]


class Command(Enum):
    """Commands understood by the bot."""
    START = "start"
    HELP = "help"
    BRIDGE = "bridge"
    SWAP = "swap"
    STATUS = "status"
    RATES = "rates"
    CANCEL = "cancel"


STATUS_EMOJI = {
    TransactionStatus.PENDING: "⏳",
    TransactionStatus.DETECTED: "👀",
    TransactionStatus.CONFIRMING: "⚡️",
    TransactionStatus.SETTLING: "⚡️",
    TransactionStatus.COMPLETED: "✅",
    TransactionStatus.FAILED: "❌",
    TransactionStatus.EXPIRED: "⌛",
}

# Statuses the user hears about without asking
_NOTIFY_STATUSES = {
    TransactionStatus.DETECTED,
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.EXPIRED,
}


def fmt_amount(value: Decimal) -> str:
    """Render an amount without trailing zeros or exponent."""
    return format(value.normalize(), "f")


class CommandRegistry:
    """Maps command names to handlers, independent of the chat transport."""

    def __init__(self):
        self._commands: Dict[Command, CommandHandler] = {}
        self._text_handler: Optional[TextHandler] = None

    def on_command(self, name: Union[Command, str], handler: CommandHandler) -> None:
        self._commands[Command(name) if isinstance(name, str) else name] = handler

    def on_text(self, handler: TextHandler) -> None:
        self._text_handler = handler

    @staticmethod
    def parse(text: str):
        """Split ``/name@bot args`` into (command name, args), or None for plain text."""
        stripped = (text or "").strip()
        if not stripped.startswith("/"):
            return None
        head, _, args = stripped[1:].partition(" ")
        name = head.split("@", 1)[0].lower()
        return name, args.strip()

    async def dispatch(self, message: IncomingMessage) -> bool:
        """Route a message to its handler.

        Returns:
            True if a handler ran
        """
        parsed = self.parse(message.text)
        if parsed is None:
            if self._text_handler is None:
                return False
            await self._text_handler(message)
            return True

        name, args = parsed
        try:
            command = Command(name)
        except ValueError:
            logger.debug(f"Unknown command /{name} from user {message.user_id}")
            return False

        handler = self._commands.get(command)
        if handler is None:
            return False
        await handler(message, args)
        return True


class IntakeHandler:
    """Turns chat messages into bridge transactions, one validated step per message."""

    def __init__(
        self,
        engine: BridgeEngine,
        sessions: SessionStore,
        transport: ChatTransport,
        config: BridgeConfig,
    ):
        self.engine = engine
        self.sessions = sessions
        self.transport = transport
        self.config = config

        self.registry = CommandRegistry()
        self.registry.on_command(Command.START, self._welcome)
        self.registry.on_command(Command.HELP, self._welcome)
        self.registry.on_command(Command.BRIDGE, self._begin_bridge)
        self.registry.on_command(Command.SWAP, self._begin_swap)
        self.registry.on_command(Command.STATUS, self._status)
        self.registry.on_command(Command.RATES, self._rates)
        self.registry.on_command(Command.CANCEL, self._cancel)
        self.registry.on_text(self._answer)

        engine.add_listener(self._on_transition)

    async def handle(self, message: IncomingMessage) -> bool:
        """Entry point for every inbound chat message."""
        try:
            return await self.registry.dispatch(message)
        except Exception as e:
            logger.error(f"Error handling message from user {message.user_id}: {e}", exc_info=True)
            await self._reply(message, "❌ Something went wrong. Please try again later.")
            return False

    async def _reply(self, message: IncomingMessage, text: str, formatting: Optional[str] = None) -> None:
        await self.transport.send_message(message.chat_id, text, formatting)

    async def _welcome(self, message: IncomingMessage, args: str) -> None:
        await self._reply(message, (
            "🚀 Welcome to the BTC Bridge Bot!\n\n"
            "I can help you:\n"
            "• Bridge BTC\n"
            "• Swap BTC\n"
            "• Check transaction status\n\n"
            "Commands:\n"
            "/bridge - Start BTC bridge\n"
            "/swap - Start BTC swap\n"
            "/status <id> - Check status\n"
            "/rates - View current rates\n"
            "/cancel - Cancel the current request\n"
            "/help - Show this menu"
        ))

    async def _begin_bridge(self, message: IncomingMessage, args: str) -> None:
        await self._begin(message, RequestType.BRIDGE)

    async def _begin_swap(self, message: IncomingMessage, args: str) -> None:
        await self._begin(message, RequestType.SWAP)

    async def _begin(self, message: IncomingMessage, request_type: RequestType) -> None:
        async with self.sessions.lock(message.user_id):
            self.sessions.begin(message.user_id, request_type, chat_id=message.chat_id)

        title = "🌉 BTC Bridge Initiated" if request_type == RequestType.BRIDGE else "🔄 BTC Swap Initiated"
        await self._reply(message, (
            f"{title}\n\n"
            f"Enter the amount of BTC:\n"
            f"• Minimum: {fmt_amount(self.config.min_amount)} BTC\n"
            f"• Maximum: {fmt_amount(self.config.max_amount)} BTC\n"
            f"• Fee: {fmt_amount(self.config.fee_rate * 100)}%\n\n"
            f"Example: 0.1"
        ))

    async def _cancel(self, message: IncomingMessage, args: str) -> None:
        async with self.sessions.lock(message.user_id):
            had_session = self.sessions.current(message.user_id) is not None
            self.sessions.clear(message.user_id)
        await self._reply(message, "🛑 Request cancelled." if had_session else "Nothing to cancel.")

    async def _answer(self, message: IncomingMessage) -> None:
        # Held across open_transaction so two quick answers cannot open two transactions
        async with self.sessions.lock(message.user_id):
            if self.sessions.current(message.user_id) is None:
                return

            try:
                result = self.sessions.advance(message.user_id, message.text)
            except ValidationError as e:
                await self._reply(message, f"❌ {e}. Please try again.")
                return

            if not result.completed:
                await self._reply(message, "📝 Enter your destination ETH address:")
                return

            tx = await self.engine.open_transaction(result.request)
            self.sessions.clear(message.user_id)

        await self._reply(message, self._deposit_instructions(tx), "Markdown")

    def _deposit_instructions(self, tx: BridgeTransaction) -> str:
        return (
            f"🏦 Ready for deposit!\n\n"
            f"Send exactly {fmt_amount(tx.source_amount)} BTC to:\n"
            f"`{tx.deposit_locus}`\n\n"
            f"Details:\n"
            f"• Amount: {fmt_amount(tx.source_amount)} BTC\n"
            f"• Fee: {fmt_amount(tx.fee_amount)} BTC\n"
            f"• You receive: {fmt_amount(tx.net_amount)} BTC\n"
            f"• Destination: `{tx.destination_address}`\n"
            f"• Transaction ID: {tx.id}\n\n"
            f"Deposits that do not match the amount exactly are held for review.\n\n"
            f"Check status: /status {tx.id}"
        )

    async def _status(self, message: IncomingMessage, args: str) -> None:
        tx_id = args.split()[0] if args else ""
        if not tx_id:
            await self._reply(message, "Usage: /status <transaction id>")
            return

        try:
            snapshot = await self.engine.status(tx_id)
        except NotFoundError:
            await self._reply(message, "❌ Transaction not found")
            return

        await self._reply(message, format_status(snapshot))

    async def _rates(self, message: IncomingMessage, args: str) -> None:
        await self._reply(message, (
            f"💱 Current rates\n\n"
            f"• Fee: {fmt_amount(self.config.fee_rate * 100)}%\n"
            f"• Minimum: {fmt_amount(self.config.min_amount)} BTC\n"
            f"• Maximum: {fmt_amount(self.config.max_amount)} BTC\n"
            f"• Deposit confirmations: {self.config.min_confirmations}\n"
            f"• Deposit window: {int(self.config.deposit_window // 60)} minutes"
        ))

    async def _on_transition(self, tx: BridgeTransaction, previous: TransactionStatus) -> None:
        if tx.status not in _NOTIFY_STATUSES:
            return

        if tx.status == TransactionStatus.DETECTED:
            if previous == TransactionStatus.CONFIRMING:
                # Reorg revert; the user already heard about this deposit
                return
            text = f"👀 Deposit detected for {tx.id}, waiting for confirmations."
        elif tx.status == TransactionStatus.COMPLETED:
            text = (
                f"✅ Transaction {tx.id} completed: {fmt_amount(tx.net_amount)} sent to "
                f"{tx.destination_address} in {tx.settlement_tx_ref}"
            )
        elif tx.status == TransactionStatus.FAILED:
            text = (
                f"❌ Transaction {tx.id} failed. Your deposit will be refunded. "
                f"Reference: {tx.id}"
            )
        elif previous == TransactionStatus.PENDING:
            text = f"⌛ Transaction {tx.id} expired: no deposit was received in time."
        else:
            text = f"⌛ Transaction {tx.id} expired: the deposit disappeared before it confirmed."

        await self.transport.send_message(tx.chat_id, text)


def format_status(snapshot: StatusSnapshot) -> str:
    lines = [
        "🔍 Transaction Status\n",
        f"ID: {snapshot.id}",
        f"Status: {STATUS_EMOJI.get(snapshot.status, '❓')} {snapshot.status.value}",
        f"Amount: {fmt_amount(snapshot.source_amount)} BTC",
        f"You receive: {fmt_amount(snapshot.net_amount)} BTC",
        f"Started: {snapshot.created_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
    ]
    if snapshot.detected_at:
        lines.append(f"Detected: {snapshot.detected_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if snapshot.completed_at:
        lines.append(f"Completed: {snapshot.completed_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if snapshot.flagged_for_review:
        lines.append("⚠️ Held for manual review")
    return "\n".join(lines)
