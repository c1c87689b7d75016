"""Storage backends for the transaction ledger."""

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.errors import DuplicateTransactionError
from core.types import BridgeTransaction, RequestType, TransactionStatus

logger = logging.getLogger(__name__)


@dataclass
class RefundRequest:
    """A queued refund/compensation request for a failed transaction."""
    tx_id: str
    reason: str
    created_at: datetime


class LedgerStore(ABC):
    """Durable key-value store for bridge transactions.

    Writes that change a record go through compare_and_set, keyed on the
    status the writer last saw.
    """

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    @abstractmethod
    async def insert(self, tx: BridgeTransaction) -> None:
        """Insert a new record.

        Raises:
            DuplicateTransactionError: If the id already exists
        """

    @abstractmethod
    async def get(self, tx_id: str) -> Optional[BridgeTransaction]:
        """Get a record by id."""

    @abstractmethod
    async def compare_and_set(self, tx: BridgeTransaction, expected_status: TransactionStatus) -> bool:
        """Replace the stored record only if its status is still expected_status.

        Returns:
            True if the write was applied
        """

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[TransactionStatus]) -> List[BridgeTransaction]:
        """List records in any of the given statuses, oldest first."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[BridgeTransaction]:
        """List all records for a user, newest first."""

    @abstractmethod
    async def record_transition(
        self, tx_id: str, from_status: TransactionStatus, to_status: TransactionStatus
    ) -> None:
        """Append to the transition audit trail."""

    @abstractmethod
    async def list_transitions(self, tx_id: str) -> List[tuple]:
        """Get (from_status, to_status) pairs for a transaction, in order."""

    @abstractmethod
    async def add_refund_request(self, tx_id: str, reason: str) -> None:
        """Queue a refund request (one per transaction)."""

    @abstractmethod
    async def list_refund_requests(self) -> List[RefundRequest]:
        """List queued refund requests."""


class MemoryLedgerStore(LedgerStore):
    """In-process store. Does not survive restarts; used for tests and dry runs."""

    def __init__(self):
        self._records: Dict[str, BridgeTransaction] = {}
        self._transitions: Dict[str, List[tuple]] = {}
        self._refunds: Dict[str, RefundRequest] = {}

    async def insert(self, tx: BridgeTransaction) -> None:
        if tx.id in self._records:
            raise DuplicateTransactionError(f"Transaction {tx.id} already exists")
        if any(r.deposit_locus == tx.deposit_locus for r in self._records.values()):
            raise DuplicateTransactionError(f"Deposit locus {tx.deposit_locus} already in use")
        self._records[tx.id] = tx.copy()

    async def get(self, tx_id: str) -> Optional[BridgeTransaction]:
        tx = self._records.get(tx_id)
        return tx.copy() if tx else None

    async def compare_and_set(self, tx: BridgeTransaction, expected_status: TransactionStatus) -> bool:
        current = self._records.get(tx.id)
        if current is None or current.status != expected_status:
            return False
        self._records[tx.id] = tx.copy()
        return True

    async def list_by_status(self, statuses: Iterable[TransactionStatus]) -> List[BridgeTransaction]:
        wanted = set(statuses)
        found = [tx.copy() for tx in self._records.values() if tx.status in wanted]
        return sorted(found, key=lambda tx: tx.created_at)

    async def list_for_user(self, user_id: str) -> List[BridgeTransaction]:
        found = [tx.copy() for tx in self._records.values() if tx.user_id == user_id]
        return sorted(found, key=lambda tx: tx.created_at, reverse=True)

    async def record_transition(
        self, tx_id: str, from_status: TransactionStatus, to_status: TransactionStatus
    ) -> None:
        self._transitions.setdefault(tx_id, []).append((from_status, to_status))

    async def list_transitions(self, tx_id: str) -> List[tuple]:
        return list(self._transitions.get(tx_id, []))

    async def add_refund_request(self, tx_id: str, reason: str) -> None:
        if tx_id not in self._refunds:
            self._refunds[tx_id] = RefundRequest(tx_id, reason, datetime.now(timezone.utc))

    async def list_refund_requests(self) -> List[RefundRequest]:
        return list(self._refunds.values())


_COLUMNS = (
    "id", "user_id", "chat_id", "request_type", "source_amount",
    "destination_address", "fee_rate", "fee_amount", "net_amount",
    "deposit_locus", "status", "created_at", "detected_at", "completed_at",
    "source_tx_ref", "settlement_tx_ref", "dispatch_token", "review_reason",
    "failure_reason",
)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str_to_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _to_row(tx: BridgeTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "chat_id": tx.chat_id,
        "request_type": tx.request_type.value,
        "source_amount": str(tx.source_amount),
        "destination_address": tx.destination_address,
        "fee_rate": str(tx.fee_rate),
        "fee_amount": str(tx.fee_amount),
        "net_amount": str(tx.net_amount),
        "deposit_locus": tx.deposit_locus,
        "status": tx.status.value,
        "created_at": _dt_to_str(tx.created_at),
        "detected_at": _dt_to_str(tx.detected_at),
        "completed_at": _dt_to_str(tx.completed_at),
        "source_tx_ref": tx.source_tx_ref,
        "settlement_tx_ref": tx.settlement_tx_ref,
        "dispatch_token": tx.dispatch_token,
        "review_reason": tx.review_reason,
        "failure_reason": tx.failure_reason,
    }


def _from_row(row: sqlite3.Row) -> BridgeTransaction:
    return BridgeTransaction(
        id=row["id"],
        user_id=row["user_id"],
        chat_id=row["chat_id"],
        request_type=RequestType(row["request_type"]),
        source_amount=Decimal(row["source_amount"]),
        destination_address=row["destination_address"],
        fee_rate=Decimal(row["fee_rate"]),
        fee_amount=Decimal(row["fee_amount"]),
        net_amount=Decimal(row["net_amount"]),
        deposit_locus=row["deposit_locus"],
        status=TransactionStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
        detected_at=_str_to_dt(row["detected_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        source_tx_ref=row["source_tx_ref"],
        settlement_tx_ref=row["settlement_tx_ref"],
        dispatch_token=row["dispatch_token"],
        review_reason=row["review_reason"],
        failure_reason=row["failure_reason"],
    )


class SqliteLedgerStore(LedgerStore):
    """SQLite database for bridge transaction state."""

    def __init__(self, db_path: str = "bridge.db"):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        # One connection is shared across executor threads
        self._conn_lock = threading.Lock()
        logger.info(f"Initialized database at {db_path}")

    async def start(self) -> None:
        """Initialize database connection and create tables."""
        # Run blocking DB operations in executor
        await asyncio.get_event_loop().run_in_executor(None, self._init_db)
        logger.info("Database started")

    def _init_db(self) -> None:
        """Internal: Initialize database connection and schema."""
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                request_type TEXT NOT NULL,
                source_amount TEXT NOT NULL,
                destination_address TEXT NOT NULL,
                fee_rate TEXT NOT NULL,
                fee_amount TEXT NOT NULL,
                net_amount TEXT NOT NULL,
                deposit_locus TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                detected_at TEXT,
                completed_at TEXT,
                source_tx_ref TEXT,
                settlement_tx_ref TEXT,
                dispatch_token TEXT,
                review_reason TEXT,
                failure_reason TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_status
                ON transactions(status);
            CREATE INDEX IF NOT EXISTS idx_transactions_user
                ON transactions(user_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_locus
                ON transactions(deposit_locus);

            CREATE TABLE IF NOT EXISTS transitions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_id TEXT NOT NULL,
                from_status TEXT NOT NULL,
                to_status TEXT NOT NULL,
                at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_tx
                ON transitions(tx_id);

            CREATE TABLE IF NOT EXISTS refund_requests (
                tx_id TEXT PRIMARY KEY,
                reason TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
        """)
        self.conn.commit()

    async def stop(self) -> None:
        """Close database connection."""
        if self.conn:
            await asyncio.get_event_loop().run_in_executor(None, self.conn.close)
            self.conn = None
        logger.info("Database stopped")

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def _locked():
            with self._conn_lock:
                return fn(self.conn)

        return await asyncio.get_event_loop().run_in_executor(None, _locked)

    async def insert(self, tx: BridgeTransaction) -> None:
        row = _to_row(tx)

        def _insert(conn):
            try:
                conn.execute(
                    f"INSERT INTO transactions ({', '.join(_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                    tuple(row[c] for c in _COLUMNS),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateTransactionError(f"Transaction {tx.id} already exists: {e}")

        await self._run(_insert)
        logger.debug(f"Inserted transaction {tx.id}")

    async def get(self, tx_id: str) -> Optional[BridgeTransaction]:
        def _get(conn):
            cursor = conn.execute("SELECT * FROM transactions WHERE id = ?", (tx_id,))
            row = cursor.fetchone()
            return _from_row(row) if row else None

        return await self._run(_get)

    async def compare_and_set(self, tx: BridgeTransaction, expected_status: TransactionStatus) -> bool:
        row = _to_row(tx)
        fields = [c for c in _COLUMNS if c != "id"]

        def _cas(conn):
            cursor = conn.execute(
                f"UPDATE transactions SET {', '.join(f'{c} = ?' for c in fields)} "
                f"WHERE id = ? AND status = ?",
                tuple(row[c] for c in fields) + (tx.id, expected_status.value),
            )
            conn.commit()
            return cursor.rowcount == 1

        return await self._run(_cas)

    async def list_by_status(self, statuses: Iterable[TransactionStatus]) -> List[BridgeTransaction]:
        values = [s.value for s in statuses]
        if not values:
            return []

        def _list(conn):
            cursor = conn.execute(
                f"SELECT * FROM transactions WHERE status IN ({', '.join('?' for _ in values)}) "
                f"ORDER BY created_at",
                values,
            )
            return [_from_row(row) for row in cursor.fetchall()]

        return await self._run(_list)

    async def list_for_user(self, user_id: str) -> List[BridgeTransaction]:
        def _list(conn):
            cursor = conn.execute(
                "SELECT * FROM transactions WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            )
            return [_from_row(row) for row in cursor.fetchall()]

        return await self._run(_list)

    async def record_transition(
        self, tx_id: str, from_status: TransactionStatus, to_status: TransactionStatus
    ) -> None:
        def _save(conn):
            conn.execute(
                "INSERT INTO transitions (tx_id, from_status, to_status) VALUES (?, ?, ?)",
                (tx_id, from_status.value, to_status.value),
            )
            conn.commit()

        await self._run(_save)

    async def list_transitions(self, tx_id: str) -> List[tuple]:
        def _list(conn):
            cursor = conn.execute(
                "SELECT from_status, to_status FROM transitions WHERE tx_id = ? ORDER BY seq",
                (tx_id,),
            )
            return [
                (TransactionStatus(row["from_status"]), TransactionStatus(row["to_status"]))
                for row in cursor.fetchall()
            ]

        return await self._run(_list)

    async def add_refund_request(self, tx_id: str, reason: str) -> None:
        def _save(conn):
            conn.execute(
                """INSERT OR IGNORE INTO refund_requests (tx_id, reason, created_at)
                   VALUES (?, ?, ?)""",
                (tx_id, reason, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

        await self._run(_save)

    async def list_refund_requests(self) -> List[RefundRequest]:
        def _list(conn):
            cursor = conn.execute("SELECT * FROM refund_requests ORDER BY created_at")
            return [
                RefundRequest(row["tx_id"], row["reason"], _str_to_dt(row["created_at"]))
                for row in cursor.fetchall()
            ]

        return await self._run(_list)
