"""Transaction id minting."""

import itertools
import secrets
import threading
import time

_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

_counter = itertools.count()
_counter_lock = threading.Lock()


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def _next_sequence() -> int:
    with _counter_lock:
        return next(_counter)


def new_transaction_id() -> str:
    """Mint a transaction id.

    Format: ``TX<ms timestamp><sequence><random>`` in base36. The process-wide
    sequence keeps ids minted in the same millisecond apart, the random
    suffix keeps separate processes apart. The ledger still rejects
    duplicates on insert.
    """
    millis = time.time_ns() // 1_000_000
    sequence = _next_sequence() % (36 ** 4)
    suffix = secrets.randbelow(36 ** 5)
    return f"TX{_base36(millis)}{_base36(sequence).rjust(4, '0')}{_base36(suffix).rjust(5, '0')}"
