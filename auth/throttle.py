"""
auth/throttle.py -- Failed-login throttle with sliding window and lockout.

Per client identity the throttle moves through three states:

  Clean         no entry, or the window / lockout has expired
  Accumulating  1..N-1 failures inside the current window
  Locked        N-th failure reached; every attempt is refused until
                locked_until, whether or not the secret would match

The accumulation window (5 minutes) and the lockout (15 minutes) are separate
durations. The lockout is measured from the moment of locking, not from the
start of the window.

Client identities are stored as HMAC-SHA256(JWT_SECRET, identity). The same
address always maps to the same key, and a leaked throttle table does not
list the addresses of everyone who mistyped a password.

Storage:
  ThrottleStore is the seam. MemoryThrottleStore keeps a dict behind a lock
  and is only correct inside one process: several workers would each keep
  their own count and undercount an attacker. SQLThrottleStore keeps entries
  in a shared database and runs each read-modify-write in one locked
  transaction, which is what multi-process deployments must use.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ThrottleEntry, ThrottleStatus
from core.config import Settings

logger = logging.getLogger("presensi.throttle")

Mutator = Callable[[ThrottleEntry | None], ThrottleEntry | None]


@dataclass(frozen=True)
class ThrottlePolicy:
    """Lockout policy configuration."""

    max_attempts: int = 5
    window_seconds: int = 5 * 60
    lockout_seconds: int = 15 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> ThrottlePolicy:
        return cls(
            max_attempts=settings.throttle_max_attempts,
            window_seconds=settings.throttle_window_seconds,
            lockout_seconds=settings.throttle_lockout_seconds,
        )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class ThrottleStore(ABC):
    """Persistence for throttle entries keyed by hashed client identity."""

    @abstractmethod
    def get(self, key: str) -> ThrottleEntry | None: ...

    @abstractmethod
    def upsert(self, entry: ThrottleEntry) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def mutate(self, key: str, fn: Mutator) -> ThrottleEntry | None:
        """Atomically replace the entry for key with fn(current entry).

        fn returning None deletes the entry. No other mutate() for the same
        key may interleave between the read and the write.
        """

    def close(self) -> None:
        pass


class MemoryThrottleStore(ThrottleStore):
    """In-process store. Single process or tests only."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, ThrottleEntry] = {}

    def get(self, key: str) -> ThrottleEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry is not None else None

    def upsert(self, entry: ThrottleEntry) -> None:
        with self._lock:
            self._entries[entry.key] = replace(entry)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def mutate(self, key: str, fn: Mutator) -> ThrottleEntry | None:
        with self._lock:
            current = self._entries.get(key)
            updated = fn(replace(current) if current is not None else None)
            if updated is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = replace(updated)
            return updated

    def __len__(self) -> int:
        return len(self._entries)


_metadata = MetaData()

_login_throttle = Table(
    "login_throttle",
    _metadata,
    Column("key", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("count", Integer, nullable=False),
    Column("first_attempt_at", Float, nullable=False),  # POSIX seconds
    Column("locked_until", Float),  # NULL while accumulating
)


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and hand transaction control to SQLAlchemy.

    pysqlite's own implicit BEGIN is disabled so the "begin" listener below can
    issue BEGIN IMMEDIATE, which takes the write lock before the read.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def _begin_immediate(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class SQLThrottleStore(ThrottleStore):
    """Shared store backed by SQLAlchemy Core.

    On SQLite every transaction starts with BEGIN IMMEDIATE; on server
    databases mutate() reads the row with SELECT ... FOR UPDATE. Either way two
    processes cannot both read count=4 and both write count=5.

    A process-local lock additionally serializes mutate() calls from threads
    of the same process, which matters for shared-cache in-memory SQLite where
    lock contention is reported immediately instead of waited on.
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        self._is_sqlite = db_url.startswith("sqlite")
        if self._is_sqlite:
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self._is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
            event.listen(self.engine, "begin", _begin_immediate)
        _metadata.create_all(self.engine)
        self._local_lock = threading.Lock()

    def get(self, key: str) -> ThrottleEntry | None:
        with self.engine.begin() as conn:
            row = conn.execute(_login_throttle.select().where(_login_throttle.c.key == key)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def upsert(self, entry: ThrottleEntry) -> None:
        with self._local_lock, self.engine.begin() as conn:
            self._write(conn, entry.key, entry, exists=self._exists(conn, entry.key))

    def delete(self, key: str) -> None:
        with self._local_lock, self.engine.begin() as conn:
            conn.execute(_login_throttle.delete().where(_login_throttle.c.key == key))

    def mutate(self, key: str, fn: Mutator) -> ThrottleEntry | None:
        with self._local_lock:
            try:
                return self._mutate_once(key, fn)
            except IntegrityError:
                # FOR UPDATE locks nothing while the row is absent: another process
                # inserted it between our read and our insert. Re-read and re-apply.
                logger.info("Throttle row for %s appeared concurrently; retrying", key[:12])
                return self._mutate_once(key, fn)

    def _select_for_update(self, conn, key: str):
        query = _login_throttle.select().where(_login_throttle.c.key == key)
        if not self._is_sqlite:
            query = query.with_for_update()
        return conn.execute(query).fetchone()

    def _mutate_once(self, key: str, fn: Mutator) -> ThrottleEntry | None:
        with self.engine.begin() as conn:
            row = self._select_for_update(conn, key)
            current = _row_to_entry(row) if row is not None else None
            updated = fn(current)
            if updated is None:
                if current is not None:
                    conn.execute(_login_throttle.delete().where(_login_throttle.c.key == key))
            else:
                self._write(conn, key, updated, exists=current is not None)
            return updated

    def _exists(self, conn, key: str) -> bool:
        return conn.execute(_login_throttle.select().where(_login_throttle.c.key == key)).fetchone() is not None

    def _write(self, conn, key: str, entry: ThrottleEntry, exists: bool) -> None:
        values = {
            "count": entry.count,
            "first_attempt_at": entry.first_attempt_at,
            "locked_until": entry.locked_until,
        }
        if exists:
            conn.execute(_login_throttle.update().where(_login_throttle.c.key == key).values(**values))
        else:
            conn.execute(_login_throttle.insert().values(key=key, **values))

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> ThrottleEntry:
    # Row is tuple-like, so row.count would be tuple.count; go through the mapping.
    values = row._mapping
    return ThrottleEntry(
        key=values["key"],
        count=values["count"],
        first_attempt_at=values["first_attempt_at"],
        locked_until=values["locked_until"],
    )


def build_throttle_store(settings: Settings) -> ThrottleStore:
    """Pick the throttle backend named by THROTTLE_BACKEND."""
    if settings.throttle_backend == "database":
        return SQLThrottleStore(settings.database_url)
    logger.info("Login throttle uses in-process memory; counts are not shared between workers")
    return MemoryThrottleStore()


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------


class LoginThrottle:
    """Track failed logins per client identity and enforce lockouts.

    Usage:
        throttle = LoginThrottle(MemoryThrottleStore(), ThrottlePolicy(), key_secret)
        if throttle.check(ip).blocked: ...
        throttle.register_failure(ip)
        throttle.reset(ip)
    """

    def __init__(
        self,
        store: ThrottleStore,
        policy: ThrottlePolicy | None = None,
        key_secret: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policy = policy or ThrottlePolicy()
        self._key_secret = key_secret.encode("utf-8")
        self._clock = clock

    def key_for(self, identity: str) -> str:
        """Deterministic HMAC-SHA256 hex of the client identity."""
        return hmac.new(self._key_secret, identity.encode("utf-8"), hashlib.sha256).hexdigest()

    def check(self, identity: str) -> ThrottleStatus:
        """Return whether identity is currently locked out.

        Expired entries are cleaned up here, lazily, rather than by a
        background task.
        """
        key = self.key_for(identity)
        now = self._clock()
        entry = self.store.get(key)
        if entry is None:
            return ThrottleStatus(blocked=False)
        if self._is_locked(entry, now):
            return ThrottleStatus(blocked=True, retry_after=self._retry_after(entry, now))
        if self._is_stale(entry, now):
            self.store.mutate(key, lambda current: self._drop_if_stale(current, now))
        return ThrottleStatus(blocked=False)

    def register_failure(self, identity: str) -> ThrottleStatus:
        """Count one failed attempt; lock the identity when the limit is reached."""
        key = self.key_for(identity)
        now = self._clock()
        entry = self.store.mutate(key, lambda current: self._count_failure(key, current, now))
        if self._is_locked(entry, now):
            if entry.locked_until == now + self.policy.lockout_seconds:
                logger.warning(
                    "Client %s locked out for %ds after %d failed logins",
                    key[:12],
                    self.policy.lockout_seconds,
                    entry.count,
                )
            return ThrottleStatus(blocked=True, retry_after=self._retry_after(entry, now))
        return ThrottleStatus(blocked=False)

    def reset(self, identity: str) -> None:
        """Forget all failures for identity (called after a successful login)."""
        self.store.delete(self.key_for(identity))

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _count_failure(self, key: str, entry: ThrottleEntry | None, now: float) -> ThrottleEntry:
        if entry is not None and self._is_locked(entry, now):
            # Locked: the lockout runs from the locking moment and is not extended.
            return entry
        if entry is None or self._is_stale(entry, now):
            entry = ThrottleEntry(key=key, count=0, first_attempt_at=now)
        entry.count += 1
        if entry.count >= self.policy.max_attempts:
            entry.locked_until = now + self.policy.lockout_seconds
        return entry

    def _drop_if_stale(self, entry: ThrottleEntry | None, now: float) -> ThrottleEntry | None:
        if entry is None or self._is_stale(entry, now):
            return None
        return entry

    def _is_locked(self, entry: ThrottleEntry, now: float) -> bool:
        return entry.locked_until is not None and entry.locked_until > now

    def _is_stale(self, entry: ThrottleEntry, now: float) -> bool:
        if entry.locked_until is not None:
            return entry.locked_until <= now
        return now - entry.first_attempt_at > self.policy.window_seconds

    def _retry_after(self, entry: ThrottleEntry, now: float) -> int:
        return max(1, math.ceil(entry.locked_until - now))
