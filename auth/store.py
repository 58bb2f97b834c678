"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_license_key /
_row_to_api_key are the mappers. Flow and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) and UNIQUE(username) are the source of truth for account
  uniqueness. The flows run a pre-check for a friendlier error, but two
  concurrent registrations can both pass it; create_user() then raises
  sqlalchemy.exc.IntegrityError for the loser and the flow maps that to the
  same generic conflict.

  consume_reset_token() changes the password and clears the reset columns in
  one UPDATE that is conditional on the token hash still being stored, so a
  reset token can be spent at most once even under concurrent submits.

Lifecycle: the store is constructed once by the hosting process (FastAPI
lifespan or the admin CLI) and passed explicitly to each flow. close() disposes
the engine's connection pool.

Layer rule: no imports from api/, web/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine

from auth.models import ApiKey, LicenseKey, LicenseOwnership, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("reset_password_token", String(64)),  # SHA-256 hex of the plaintext token
    Column("reset_password_expires", String(32)),  # ISO 8601 UTC
    Column("created_at", String(32), nullable=False),
)

_license_keys = Table(
    "license_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("license_key", String(255), nullable=False, unique=True),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("api_key", String(255), nullable=False, unique=True),
    Column("description", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(moment: datetime) -> str:
    # Fixed precision keeps stored timestamps lexically comparable.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, LicenseKey and ApiKey entities.

    Usage:
        store = CredentialStore("sqlite:///licenseportal.db")
        uid = store.create_user(User(email="a@x.com", username="alice", password_hash=hash_password("secret1")))
        user = store.get_by_username_or_email("alice")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by the health check."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. Callers treat that as the authoritative conflict signal.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    password_hash=user.password_hash,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def email_or_username_taken(self, email: str, username: str) -> bool:
        """Return True if any user already has this email or this username.

        Deliberately does not say which one matched.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id)
                .where((_users.c.email == email) | (_users.c.username == username))
                .limit(1)
            ).fetchone()
        return row is not None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username_or_email(self, identifier: str) -> User | None:
        """Look up a user whose username OR email equals identifier exactly."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == identifier) | (_users.c.username == identifier))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def set_reset_token(self, user_id: int, token_hash: str, expires: datetime) -> None:
        """Store a reset token lookup hash and its absolute expiry.

        Overwrites any outstanding token, so a user has at most one.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_password_token=token_hash, reset_password_expires=_iso(expires))
            )
            conn.commit()

    def get_by_reset_token(self, token_hash: str) -> User | None:
        """Look up the user holding this reset token hash. Expiry is the caller's check."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.reset_password_token == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def consume_reset_token(self, user_id: int, token_hash: str, password_hash: str) -> bool:
        """Set a new password hash and clear the reset token in one statement.

        Only succeeds while token_hash is still the stored token for user_id.
        Returns True if the password was changed, False if the token had
        already been used or replaced.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.reset_password_token == token_hash))
                .values(password_hash=password_hash, reset_password_token=None, reset_password_expires=None)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # License key queries
    # ------------------------------------------------------------------

    def create_license_key(self, license_key: LicenseKey) -> int:
        """Insert a license key for an existing user and return its ID.

        Raises IntegrityError on a duplicate key string or an unknown user_id.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _license_keys.insert().values(
                    user_id=license_key.user_id,
                    license_key=license_key.license_key,
                    is_active=1 if license_key.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_license_keys(self, user_id: int) -> list[LicenseKey]:
        """Return every license key owned by user_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _license_keys.select()
                .where(_license_keys.c.user_id == user_id)
                .order_by(_license_keys.c.created_at.desc(), _license_keys.c.id.desc())
            ).fetchall()
        return [_row_to_license_key(r) for r in rows]

    def get_license_ownership(self, license_key: str) -> LicenseOwnership | None:
        """Look up a license key joined to its owner. Inactive keys are returned too."""
        query = (
            select(
                _license_keys.c.id,
                _license_keys.c.is_active,
                _users.c.username,
                _users.c.email,
            )
            .select_from(_license_keys.join(_users, _license_keys.c.user_id == _users.c.id))
            .where(_license_keys.c.license_key == license_key)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        if row is None:
            return None
        return LicenseOwnership(
            license_id=row.id,
            is_active=bool(row.is_active),
            username=row.username,
            email=row.email,
        )

    def set_license_active(self, license_key: str, active: bool) -> bool:
        """Activate or deactivate a license key. Returns False if the key does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _license_keys.update()
                .where(_license_keys.c.license_key == license_key)
                .values(is_active=1 if active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API key queries
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        """Insert a new API key record and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    api_key=api_key.api_key,
                    description=api_key.description,
                    is_active=1 if api_key.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_active_api_key(self, raw_key: str) -> ApiKey | None:
        """Look up an active API key by its exact value. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.api_key == raw_key) & (_api_keys.c.is_active == 1))
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def set_api_key_active(self, key_id: int, active: bool) -> bool:
        """Activate or revoke an API key. Returns False if key_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update().where(_api_keys.c.id == key_id).values(is_active=1 if active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        reset_password_token=row.reset_password_token,
        reset_password_expires=row.reset_password_expires,
        created_at=row.created_at,
    )


def _row_to_license_key(row) -> LicenseKey:
    return LicenseKey(
        id=row.id,
        user_id=row.user_id,
        license_key=row.license_key,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        api_key=row.api_key,
        description=row.description,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )
