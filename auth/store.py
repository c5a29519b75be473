"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials and audit logs.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_audit are the mappers.
Gateway and route code never touch SQL directly.

This is the credential collaborator the gateway depends on:
  find_credential_by_identity(nisn)
  find_credential_by_identity_and_role(nisn, admin_required)
  update_credential_hash(identity_id, new_hash)
plus the provisioning and audit queries the admin routes and CLI need.

Security:
  All queries use bound parameters. No f-strings in SQL.
  The admin login path filters by role in the WHERE clause; a member row is
  never loaded, let alone compared, on the admin path.

DB path: auth/presensi_auth.db unless DATABASE_URL says otherwise. The login
throttle table (auth/throttle.py) may live in the same database.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import AuditLogEntry, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("nisn", String(64), nullable=False, unique=True),
    Column("name", String(255)),
    Column("token_hash", Text),  # bcrypt; NULL = cannot log in
    Column("is_admin", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_audit_logs = Table(
    "admin_audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", String(32), nullable=False),
    Column("actor_nisn", String(64)),
    Column("action", String(50), nullable=False),  # "user_create", "token_reset"
    Column("metadata", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and AuditLogEntry records.

    Usage:
        store = UserStore()
        store.create_user(User(nisn="99887766", token_hash=hash_secret("verysecure")))
        user = store.find_credential_by_identity("99887766")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Credential lookups
    # ------------------------------------------------------------------

    def find_credential_by_identity(self, nisn: str) -> User | None:
        """Look up a user by exact NISN. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.nisn == nisn)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_credential_by_identity_and_role(self, nisn: str, admin_required: bool) -> User | None:
        """Like find_credential_by_identity, restricted to admins when admin_required."""
        query = _users.select().where(_users.c.nisn == nisn)
        if admin_required:
            query = query.where(_users.c.is_admin.is_(True))
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_credential_hash(self, user_id: str, new_hash: str) -> bool:
        """Replace a user's token hash wholesale.

        Returns True if a row was updated, False if user_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(token_hash=new_hash))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().limit(1)).fetchone()
        return row is not None

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the NISN already exists.
        """
        user_id = user.id or uuid.uuid4().hex
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    nisn=user.nisn,
                    name=user.name,
                    token_hash=user.token_hash,
                    is_admin=bool(user.is_admin),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return user_id

    def list_users(self) -> list[User]:
        """Return all users ordered by NISN. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.nisn)).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_audit_log(self, entry: AuditLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_id=entry.actor_id,
                    actor_nisn=entry.actor_nisn,
                    action=entry.action,
                    metadata=json.dumps(entry.metadata),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_logs(self, limit: int = 10) -> list[AuditLogEntry]:
        """Return the most recent audit entries, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_audit(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        nisn=row.nisn,
        name=row.name,
        token_hash=row.token_hash,
        is_admin=bool(row.is_admin),
        created_at=row.created_at,
    )


def _row_to_audit(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        actor_id=row.actor_id,
        actor_nisn=row.actor_nisn,
        action=row.action,
        metadata=json.loads(row.metadata or "{}"),
        created_at=row.created_at,
    )
