"""
Event Store Abstraction

The outbox every ledger mutation is committed through.

Implementations:
- InMemoryEventStore: development, tests, single-process deployments
- PostgresEventStore: durable, row-locked chain head

The EventStore is responsible for:
- Atomic append with sequence number and previous hash assignment
- Ordering and durability
- Chain head management (single source of truth for sequence/hash)

The SpeciesLedger retains responsibility for:
- Admission rules, indexes and aggregates
- Hashing and signing events
- Applying state only after the store has committed

TRANSACTION CONTRACT:

    with store.begin_append() as ctx:
        seq, prev_hash = ctx.head.next_sequence, ctx.head.last_event_hash
        # ... compute hash and sign ...
        ctx.commit(event)

If the block raises before commit, nothing is written and the head is released.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Optional

from ..core.hasher import Hasher
from ..observability import get_logger
from ..schemas import EventType, LedgerEvent

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class EventStoreError(Exception):
    """Base exception for event store errors."""
    pass


class ConcurrencyError(EventStoreError):
    """Raised when the chain head moved under an open append."""
    pass


class ChainIntegrityError(EventStoreError):
    """Raised when an appended event does not link to the head."""
    pass


class LockTimeoutError(EventStoreError):
    """Raised when the head lock could not be acquired in time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """Current state of the chain head. This is what gets locked."""
    last_sequence: int  # -1 means empty store
    last_event_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one atomic append.

    Holds the connection (or lock token) that acquired the head, so
    commit and rollback always happen where the lock was taken.
    """
    head: ChainHead
    _store: "EventStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, event: LedgerEvent) -> LedgerEvent:
        if self._committed:
            raise EventStoreError("Transaction already committed")
        if self._rolled_back:
            raise EventStoreError("Transaction already rolled back")

        result = self._store._do_commit(self, event)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def _check_linkage(head: ChainHead, event: LedgerEvent, error: type[EventStoreError]) -> None:
    """Shared append validation: sequence, previous hash, event hash."""
    expected_sequence = head.next_sequence

    if event.sequence_number != expected_sequence:
        raise error(
            f"Sequence mismatch: expected {expected_sequence}, "
            f"got {event.sequence_number}"
        )

    if expected_sequence == 0:
        if event.previous_event_hash is not None:
            raise ChainIntegrityError("Genesis event must have previous_event_hash=None")
    elif event.previous_event_hash != head.last_event_hash:
        raise error(
            f"Previous hash mismatch: expected {head.last_event_hash}, "
            f"got {event.previous_event_hash}"
        )

    if not Hasher.verify_event_hash(event, event.previous_event_hash):
        raise ChainIntegrityError(
            f"Hash verification failed for event {event.sequence_number}"
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EventStore(ABC):
    """
    Abstract base class for event storage.

    Implementations must ensure:
    1. Atomic append through begin_append()
    2. No gaps and no duplicates in sequence numbers
    3. Chain linkage is always correct
    """

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Lock the chain head and yield a context with its current state.
        Rolls back automatically unless ctx.commit() succeeded.
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def list_all(self) -> list[LedgerEvent]:
        """All events ordered by sequence number."""
        pass

    @abstractmethod
    def list_since(self, sequence_number: int, limit: Optional[int] = None) -> list[LedgerEvent]:
        """Events with sequence_number > the given one, in order."""
        pass

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Current chain head without locking. Read-only use."""
        pass

    @abstractmethod
    def get_event_count(self) -> int:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEventStore(EventStore):
    """
    In-memory EventStore.

    Suitable for development, tests and single-process deployments.
    NOT durable: a restart loses the ledger.
    """

    _LOCK_TOKEN = "in_memory_lock"

    def __init__(self):
        self._events: list[LedgerEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        self._lock.acquire()
        head = ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )
        ctx = AppendContext(head=head, _store=self, _conn=self._LOCK_TOKEN)

        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        if ctx._conn != self._LOCK_TOKEN:
            raise EventStoreError("_do_commit called outside transaction")

        try:
            _check_linkage(self._head, event, ChainIntegrityError)
            self._events.append(event)
            self._head = ChainHead(
                last_sequence=event.sequence_number,
                last_event_hash=event.event_hash,
            )
            return event
        finally:
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn == self._LOCK_TOKEN:
            ctx._conn = None
            self._lock.release()

    def list_all(self) -> list[LedgerEvent]:
        return list(self._events)

    def list_since(self, sequence_number: int, limit: Optional[int] = None) -> list[LedgerEvent]:
        events = [e for e in self._events if e.sequence_number > sequence_number]
        return events[:limit] if limit is not None else events

    def get_head(self) -> ChainHead:
        return ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )

    def get_event_count(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        """Clear all events (for testing only)."""
        with self._lock:
            self._events.clear()
            self._head = ChainHead(last_sequence=-1, last_event_hash=None)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

_EVENT_COLUMNS = """
    event_id,
    sequence_number,
    event_type,
    entity_id,
    caller,
    payload_json,
    previous_event_hash,
    event_hash,
    signature,
    created_at
"""


class PostgresEventStore(EventStore):
    """
    PostgreSQL EventStore (psycopg2).

    Requirements:
    - Tables from species_ledger/db/schema.sql
    - A connection factory returning psycopg2 connections

    The head row in species_ledger_head is locked FOR UPDATE for the
    duration of each append, which serializes writers across processes.
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            row = self._lock_head(cursor)
            if row is None:
                # First run: create the head row, then lock it
                cursor.execute("""
                    INSERT INTO species_ledger_head (id, last_sequence, last_event_hash)
                    VALUES (TRUE, -1, NULL)
                    ON CONFLICT (id) DO NOTHING
                """)
                row = self._lock_head(cursor)

            head = ChainHead(last_sequence=row[0], last_event_hash=row[1])
            ctx = AppendContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                self._safe_rollback(conn)
            try:
                cursor.close()
            finally:
                conn.close()

    def _lock_head(self, cursor) -> Optional[tuple]:
        try:
            cursor.execute("""
                SELECT last_sequence, last_event_hash
                FROM species_ledger_head
                WHERE id = TRUE
                FOR UPDATE
            """)
        except Exception as e:
            kind = self._timeout_kind(e)
            if kind == "lock":
                raise LockTimeoutError("Ledger busy - could not acquire lock. Try again.") from e
            if kind in ("statement", "timeout"):
                raise EventStoreError("Query timed out - statement took too long.") from e
            raise
        return cursor.fetchone()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL failure.

        Returns "lock", "statement", "timeout", or None.
        PostgreSQL reports both lock_timeout and statement_timeout as 57014,
        so the message decides which one it was.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        from psycopg2.extras import Json

        if ctx._cursor is None or ctx._conn is None:
            raise EventStoreError("_do_commit called outside begin_append context")

        cursor = ctx._cursor

        # Re-read the locked head
        cursor.execute("""
            SELECT last_sequence, last_event_hash
            FROM species_ledger_head
            WHERE id = TRUE
        """)
        row = cursor.fetchone()
        _check_linkage(ChainHead(last_sequence=row[0], last_event_hash=row[1]), event, ConcurrencyError)

        cursor.execute(f"""
            INSERT INTO species_ledger_events ({_EVENT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            str(event.event_id),
            event.sequence_number,
            event.event_type.value,
            event.entity_id,
            event.caller,
            Json(event.payload),
            event.previous_event_hash,
            event.event_hash,
            event.signature,
            event.created_at,
        ))

        cursor.execute("""
            UPDATE species_ledger_head
            SET last_sequence = %s, last_event_hash = %s
            WHERE id = TRUE
        """, (event.sequence_number, event.event_hash))

        ctx._conn.commit()
        return event

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            self._safe_rollback(ctx._conn)

    @staticmethod
    def _safe_rollback(conn) -> None:
        try:
            conn.rollback()
        except Exception as e:
            # Broken connection: the server discards the transaction anyway
            logger.warning("Rollback failed", error=str(e))

    def _fetch_events(self, where: str = "", params: tuple = (), limit: Optional[int] = None) -> list[LedgerEvent]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            sql = f"SELECT {_EVENT_COLUMNS} FROM species_ledger_events {where} ORDER BY sequence_number"
            if limit is not None:
                sql += " LIMIT %s"
                params = params + (limit,)
            cursor.execute(sql, params)
            return [self._row_to_event(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
            conn.close()

    def list_all(self) -> list[LedgerEvent]:
        return self._fetch_events()

    def list_since(self, sequence_number: int, limit: Optional[int] = None) -> list[LedgerEvent]:
        return self._fetch_events("WHERE sequence_number > %s", (sequence_number,), limit)

    def get_head(self) -> ChainHead:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute("""
                SELECT last_sequence, last_event_hash
                FROM species_ledger_head
                WHERE id = TRUE
            """)
            row = cursor.fetchone()
            if row is None:
                return ChainHead(last_sequence=-1, last_event_hash=None)
            return ChainHead(last_sequence=row[0], last_event_hash=row[1])
        finally:
            cursor.close()
            conn.close()

    def get_event_count(self) -> int:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM species_ledger_events")
            return cursor.fetchone()[0]
        finally:
            cursor.close()
            conn.close()

    @staticmethod
    def _row_to_event(row: tuple) -> LedgerEvent:
        # JSONB comes back as dict from psycopg2, as str from some drivers
        payload = row[5]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return LedgerEvent(
            event_id=row[0],
            sequence_number=row[1],
            event_type=EventType(row[2]),
            entity_id=row[3],
            caller=row[4],
            payload=payload,
            previous_event_hash=row[6],
            event_hash=row[7],
            signature=row[8],
            created_at=row[9],
        )
