"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_identity are the mappers.
Flow and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Integrity rules enforced by the database:
  - Email is unique among non-deleted users (partial unique index). Soft
    deleted rows keep their email so owned content still resolves.
  - UNIQUE(provider, subject) on external_identities: a provider account
    links to exactly one local user.
  - UNIQUE(user_id, provider): one link per provider per user.

Concurrency:
  Credential mutations carry the expected version in their WHERE clause and
  bump it in the same UPDATE. rowcount == 0 means another request won the
  race; the flow surfaces that as Conflict instead of overwriting.

  Reads are idempotent and retried on transient driver errors (tenacity).
  Writes are never retried -- a failed insert is surfaced, not replayed.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth.models import ExternalIdentity, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(200), nullable=False),
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text),  # NULL for external-only users
    Column("confirmed", Integer, nullable=False, server_default="0"),
    Column("two_factor", Integer, nullable=False, server_default="0"),
    Column("is_deleted", Integer, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index(
    "uq_users_email_live",
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.is_deleted == 0,
    postgresql_where=_users.c.is_deleted == 0,
)

_identities = Table(
    "external_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(30), nullable=False),
    Column("subject", String(255), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "subject", name="uq_identity_provider_subject"),
    UniqueConstraint("user_id", "provider", name="uq_identity_user_provider"),
)

# Retry policy for idempotent reads only.
_read_retry = retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    reraise=True,
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


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and ExternalIdentity entities (the credential store).

    Usage:
        store = UserStore("sqlite:///tokengate.db")
        user_id = store.create(User(email="a@example.com", name="Alice", hashed_password=h))
        user = store.find_by_email("a@example.com")
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
    # User queries
    # ------------------------------------------------------------------

    @_read_retry
    def find_by_email(self, email: str) -> User | None:
        """Look up a live (non-deleted) user by normalized email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == normalize_email(email)) & (_users.c.is_deleted == 0))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    @_read_retry
    def find_by_id(self, user_id: int, include_deleted: bool = False) -> User | None:
        """Look up a user by primary key. Deleted users are hidden unless asked for."""
        query = _users.select().where(_users.c.id == user_id)
        if not include_deleted:
            query = query.where(_users.c.is_deleted == 0)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def create(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if a live user already owns the
        email. Callers translate that into EmailTaken.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.insert().values(**_user_values(user)))
            return result.inserted_primary_key[0]

    def create_with_identity(self, user: User, provider: str, subject: str) -> int:
        """Insert a user and its external identity link in one transaction.

        Either both rows exist afterwards or neither does -- a failure on the
        link insert (e.g. a concurrent callback already linked the subject)
        rolls back the user row too.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.insert().values(**_user_values(user)))
            user_id = result.inserted_primary_key[0]
            conn.execute(
                _identities.insert().values(provider=provider, subject=subject, user_id=user_id, created_at=now)
            )
        return user_id

    def update_password_hash(self, user_id: int, hashed_password: str, expected_version: int) -> bool:
        """Replace the password hash if the row is still at expected_version.

        Returns True if a row was updated, False if the version moved on or
        the user does not exist.
        """
        return self._versioned_update(user_id, expected_version, hashed_password=hashed_password)

    def set_two_factor(self, user_id: int, enabled: bool, expected_version: int) -> bool:
        return self._versioned_update(user_id, expected_version, two_factor=1 if enabled else 0)

    def set_confirmed(self, user_id: int) -> bool:
        """Mark a user confirmed. Returns False if already confirmed or missing.

        The "confirmed = 0" predicate makes this a single atomic
        test-and-set, so two concurrent confirmations bump version once.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.confirmed == 0) & (_users.c.is_deleted == 0))
                .values(confirmed=1, version=_users.c.version + 1, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def update_name(self, user_id: int, name: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
                .values(name=name, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def soft_delete(self, user_id: int) -> bool:
        """Flag a user as deleted. The row stays for referential integrity."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_deleted == 0))
                .values(is_deleted=1, version=_users.c.version + 1, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def _versioned_update(self, user_id: int, expected_version: int, **fields) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id) & (_users.c.version == expected_version) & (_users.c.is_deleted == 0)
                )
                .values(version=_users.c.version + 1, updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # External identities
    # ------------------------------------------------------------------

    @_read_retry
    def find_by_provider_subject(self, provider: str, subject: str) -> User | None:
        """Resolve a provider account to its linked user (including deleted users)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .select_from(_users.join(_identities, _identities.c.user_id == _users.c.id))
                .where((_identities.c.provider == provider) & (_identities.c.subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    @_read_retry
    def get_identities(self, user_id: int) -> list[ExternalIdentity]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _identities.select().where(_identities.c.user_id == user_id).order_by(_identities.c.provider)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def link_external_identity(self, user_id: int, provider: str, subject: str) -> int:
        """Insert a (provider, subject) -> user link and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the subject is already linked
        (to anyone) or the user already has a link for this provider. A link
        is never silently overwritten.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.insert().values(provider=provider, subject=subject, user_id=user_id, created_at=_now_iso())
            )
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    now = _now_iso()
    return {
        "email": normalize_email(user.email),
        "name": user.name,
        "hashed_password": user.hashed_password,
        "confirmed": 1 if user.confirmed else 0,
        "two_factor": 1 if user.two_factor else 0,
        "is_deleted": 0,
        "version": 1,
        "created_at": now,
        "updated_at": now,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        confirmed=bool(row.confirmed),
        two_factor=bool(row.two_factor),
        is_deleted=bool(row.is_deleted),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_identity(row) -> ExternalIdentity:
    return ExternalIdentity(
        id=row.id,
        provider=row.provider,
        subject=row.subject,
        user_id=row.user_id,
        created_at=row.created_at,
    )
