"""Budget ledger backends.

A ledger accumulates spend per key in integer minor units and lets keys
expire on their own. Backends raise ``LedgerUnavailableError`` for any
infrastructure failure; the breaker decides what to do about it.
"""

from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from fnmatch import fnmatchcase
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple
import heapq
import sqlite3
import time

from costbreaker.models import from_minor_units, to_minor_units


class LedgerUnavailableError(Exception):
    """Raised when the backing store cannot be reached or errors out."""
    pass


class LedgerTimeoutError(LedgerUnavailableError):
    """Raised when a ledger call does not finish within its timeout.

    ``in_flight`` is True when the call had started and may still complete,
    False when it was dropped before it reached the store.
    """

    def __init__(self, message: str, in_flight: bool):
        super().__init__(message)
        self.in_flight = in_flight


class BudgetLedger(Protocol):
    """Backing store interface."""

    def increment(self, key: str, amount: Decimal) -> Decimal:
        ...

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        ...

    def read(self, key: str) -> Decimal:
        ...

    def scan(self, pattern: str) -> Dict[str, Decimal]:
        ...


class InMemoryLedger:
    """In-memory ledger with per-key expiry.

    Used as the test fake and for single-process deployments. ``time_fn``
    can be replaced to move the clock in tests.

    Expired keys are dropped on every write, so buckets that are never
    touched again do not accumulate.
    """

    def __init__(self, time_fn: Optional[Callable[[], float]] = None):
        self._time = time_fn or time.time
        self._lock = Lock()
        self._values: Dict[str, int] = {}
        self._expires_at: Dict[str, float] = {}
        # (deadline, key); entries whose deadline was since extended are stale
        self._deadlines: List[Tuple[float, str]] = []

    def _purge_if_expired(self, key: str, now: float) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= now:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _sweep(self, now: float) -> None:
        while self._deadlines and self._deadlines[0][0] <= now:
            deadline, key = heapq.heappop(self._deadlines)
            if self._expires_at.get(key) == deadline:
                self._values.pop(key, None)
                self._expires_at.pop(key, None)

    def increment(self, key: str, amount: Decimal) -> Decimal:
        units = to_minor_units(amount)
        with self._lock:
            self._sweep(self._time())
            self._values[key] = self._values.get(key, 0) + units
            return from_minor_units(self._values[key])

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._time()
            self._sweep(now)
            if key not in self._values:
                return
            deadline = now + ttl_seconds
            current = self._expires_at.get(key)
            if current is None or deadline > current:
                self._expires_at[key] = deadline
                heapq.heappush(self._deadlines, (deadline, key))

    def read(self, key: str) -> Decimal:
        with self._lock:
            self._purge_if_expired(key, self._time())
            return from_minor_units(self._values.get(key, 0))

    def scan(self, pattern: str) -> Dict[str, Decimal]:
        with self._lock:
            now = self._time()
            for key in list(self._values):
                self._purge_if_expired(key, now)
            return {
                key: from_minor_units(units)
                for key, units in self._values.items()
                if fnmatchcase(key, pattern)
            }

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None if it has no expiry."""
        with self._lock:
            now = self._time()
            self._purge_if_expired(key, now)
            expires_at = self._expires_at.get(key)
            if expires_at is None:
                return None
            return expires_at - now

    def __len__(self) -> int:
        with self._lock:
            now = self._time()
            for key in list(self._values):
                self._purge_if_expired(key, now)
            return len(self._values)


class SQLiteLedger:
    """SQLite-backed ledger.

    Each operation opens its own connection and runs in a ``BEGIN IMMEDIATE``
    transaction, so increments are atomic across threads and processes
    sharing the database file. Expired rows are ignored on read and deleted
    on the next write.
    """

    def __init__(
        self,
        db_path: str = "costbreaker.db",
        timeout_seconds: float = 0.5,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        self._time = time_fn or time.time
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_entries (
                    key TEXT PRIMARY KEY,
                    units INTEGER NOT NULL,
                    expires_at REAL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_budget_entries_expiry ON budget_entries(expires_at)"
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds, isolation_level=None)
        except sqlite3.Error as exc:
            raise LedgerUnavailableError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def increment(self, key: str, amount: Decimal) -> Decimal:
        units = to_minor_units(amount)
        now = self._time()
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM budget_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            conn.execute(
                """
                INSERT INTO budget_entries (key, units, expires_at)
                VALUES (?, ?, NULL)
                ON CONFLICT(key) DO UPDATE SET units = units + excluded.units
                """,
                (key, units),
            )
            row = conn.execute(
                "SELECT units FROM budget_entries WHERE key = ?",
                (key,),
            ).fetchone()
        return from_minor_units(row[0])

    def set_expiry(self, key: str, ttl_seconds: int) -> None:
        deadline = self._time() + ttl_seconds
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE budget_entries SET expires_at = ?
                WHERE key = ? AND (expires_at IS NULL OR expires_at < ?)
                """,
                (deadline, key, deadline),
            )

    def read(self, key: str) -> Decimal:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT units FROM budget_entries
                WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (key, self._time()),
            ).fetchone()
        if not row:
            return Decimal(0)
        return from_minor_units(row[0])

    def scan(self, pattern: str) -> Dict[str, Decimal]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT key, units FROM budget_entries
                WHERE key GLOB ? AND (expires_at IS NULL OR expires_at > ?)
                """,
                (pattern, self._time()),
            ).fetchall()
        return {key: from_minor_units(units) for key, units in rows}
