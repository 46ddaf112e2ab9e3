"""
auth/store.py -- SQLAlchemy Core persistence layer for users and per-user data.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user is
the mapper. Route and service code never touches SQL directly.

UserStore owns every table that references a username, because deleting an
account must remove the user and all of their rows in one transaction:

  users           credential records (password is a scrypt hash string)
  play_records    per-user JSON blobs keyed by (username, key)
  favorites       per-user JSON blobs keyed by (username, key)
  skip_configs    per-user JSON blobs keyed by (username, "source+id")
  search_history  per-user keywords, most recent 20 kept
  admin_config    single logical row holding the serialized AdminConfig

Security:
  All queries use bound parameters. No f-strings in SQL.

  Registration relies on the users primary key: a duplicate insert raises
  IntegrityError, which becomes UserExistsError. There is no separate
  existence check, so two concurrent registrations cannot both succeed.

Failure semantics:
  Connectivity failures (OperationalError / InterfaceError) surface as
  StoreUnavailable. Multi-statement writes run inside engine.begin(), which
  rolls back before the exception leaves the block. Connections are always
  context-managed so they return to the pool on every exit path.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from auth.models import User
from auth.passwords import hash_password, is_hashed_password, needs_rehash, verify_password
from core.errors import ConfigurationCorrupt, StoreUnavailable, UserExistsError, ValidationError
from core.models import ROLES

logger = logging.getLogger("tvcore.auth.store")

SEARCH_HISTORY_LIMIT = 20
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
PASSWORD_MIN_LENGTH = 6

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("username", String(50), primary_key=True),
    Column("password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
)


def _record_table(name: str, blob_column: str) -> Table:
    return Table(
        name,
        _metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("username", String(50), nullable=False, index=True),
        Column("key", String(255), nullable=False),
        Column(blob_column, Text, nullable=False),
        Column("updated_at", String(32)),
        UniqueConstraint("username", "key", name=f"uq_{name}_user_key"),
    )


_play_records = _record_table("play_records", "record")
_favorites = _record_table("favorites", "favorite")
_skip_configs = _record_table("skip_configs", "config")

_search_history = Table(
    "search_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, index=True),
    Column("keyword", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_admin_config = Table(
    "admin_config",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("config", Text, nullable=False),
    Column("updated_at", String(32)),
)

# Every table holding rows owned by a single user. delete_user() clears all of them.
_PER_USER_TABLES = (_play_records, _favorites, _search_history, _skip_configs)

# Blob column name per record table.
_BLOB_COLUMNS = {
    _play_records.name: "record",
    _favorites.name: "favorite",
    _skip_configs.name: "config",
}


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


def _is_encodable(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def validate_credentials(username: str, password: str) -> None:
    """Raise ValidationError unless username/password meet registration bounds."""
    if not username or not isinstance(username, str):
        raise ValidationError("Username is required.")
    if not password or not isinstance(password, str):
        raise ValidationError("Password is required.")
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters."
        )
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if not (_is_encodable(username) and _is_encodable(password)):
        raise ValidationError("Username and password must be valid UTF-8 text.")


# Timing equalization for unknown usernames: verify_user() always runs scrypt.
_DUMMY_HASH: str = hash_password("tvcore_timing_dummy")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, their per-user records, and the admin config row.

    Usage:
        store = UserStore("sqlite:///tvcore.db")
        store.register_user("alice", "secret1")
        store.verify_user("alice", "secret1")   # True
        store.delete_user("alice")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///tvcore.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._transaction() as conn:
            _metadata.create_all(conn)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            logger.error("Credential store unavailable: %s", exc)
            raise StoreUnavailable("Credential store unavailable.") from exc

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        """engine.begin(): commit on success, roll back on any exception."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            logger.error("Transaction rolled back: %s", exc)
            raise StoreUnavailable("Credential store transaction failed.") from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, username: str, password: str, role: str = "user") -> None:
        """Create a user with a hashed password.

        Raises ValidationError for out-of-bounds input and UserExistsError when
        the username is taken (detected by the primary key, not a pre-check).
        """
        validate_credentials(username, password)
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}.")
        try:
            with self._transaction() as conn:
                conn.execute(
                    _users.insert().values(
                        username=username,
                        password=hash_password(password),
                        role=role,
                        created_at=_now_iso(),
                    )
                )
        except IntegrityError as exc:
            raise UserExistsError(username) from exc
        logger.info("Registered user %r (role=%s)", username, role)

    def verify_user(self, username: str, password: str) -> bool:
        """Return True if the password matches. False (not an error) for unknown users.

        A successful match against a legacy plaintext value, or a hash made
        with outdated cost parameters, rewrites the stored value with a fresh
        scrypt hash.
        """
        if not _is_encodable(username):
            verify_password(password, _DUMMY_HASH)
            return False
        with self._connect() as conn:
            row = conn.execute(select(_users.c.password).where(_users.c.username == username)).fetchone()
        if row is None:
            verify_password(password, _DUMMY_HASH)
            return False
        if not verify_password(password, row.password):
            return False
        if needs_rehash(row.password):
            self._write_password(username, password)
            logger.info("Upgraded stored password hash for %r", username)
        return True

    def check_user_exists(self, username: str) -> bool:
        with self._connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.username == username)
            ).scalar()
        return (count or 0) > 0

    def get_user(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_role(self, username: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(select(_users.c.role).where(_users.c.username == username)).fetchone()
        return row.role if row is not None else None

    def set_role(self, username: str, role: str) -> bool:
        """Change a user's role. Returns True if a row was updated."""
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}.")
        with self._transaction() as conn:
            result = conn.execute(_users.update().where(_users.c.username == username).values(role=role))
        return result.rowcount > 0

    def change_password(self, username: str, new_password: str) -> bool:
        """Replace a user's password hash. Returns True if the user exists."""
        if not new_password or len(new_password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
        if not _is_encodable(new_password):
            raise ValidationError("Password must be valid UTF-8 text.")
        return self._write_password(username, new_password)

    def _write_password(self, username: str, password: str) -> bool:
        with self._transaction() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(password=hash_password(password))
            )
        return result.rowcount > 0

    def list_usernames(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(select(_users.c.username).order_by(_users.c.username)).fetchall()
        return [r.username for r in rows]

    def list_users_with_role(self) -> list[tuple[str, str | None]]:
        """Return the full roster as (username, role) pairs, ordered by username."""
        with self._connect() as conn:
            rows = conn.execute(select(_users.c.username, _users.c.role).order_by(_users.c.username)).fetchall()
        return [(r.username, r.role) for r in rows]

    def delete_user(self, username: str) -> bool:
        """Delete a user and every row they own, atomically.

        Either all of users / play_records / favorites / search_history /
        skip_configs lose their rows for `username`, or (on any failure)
        nothing is removed and StoreUnavailable is raised.

        Returns True if the user record existed.
        """
        with self._transaction() as conn:
            result = conn.execute(_users.delete().where(_users.c.username == username))
            for table in _PER_USER_TABLES:
                conn.execute(table.delete().where(table.c.username == username))
        logger.info("Deleted user %r and all per-user records", username)
        return result.rowcount > 0

    def ensure_owner(self, username: str, password: str) -> None:
        """Seed the owner account on startup.

        Missing account: created with role owner.
        Existing account with another role: promoted to owner.
        Existing account with a plaintext password: rewritten as a scrypt hash.
        """
        with self._transaction() as conn:
            row = conn.execute(
                select(_users.c.role, _users.c.password).where(_users.c.username == username)
            ).fetchone()
            if row is None:
                conn.execute(
                    _users.insert().values(
                        username=username,
                        password=hash_password(password),
                        role="owner",
                        created_at=_now_iso(),
                    )
                )
                logger.info("Created owner account %r", username)
                return
            if row.role != "owner":
                conn.execute(_users.update().where(_users.c.username == username).values(role="owner"))
                logger.info("Promoted %r to owner", username)
            if not is_hashed_password(row.password):
                conn.execute(
                    _users.update().where(_users.c.username == username).values(password=hash_password(password))
                )
                logger.info("Owner password for %r upgraded to hashed format", username)

    # ------------------------------------------------------------------
    # Per-user JSON records
    # ------------------------------------------------------------------

    def _get_record(self, table: Table, username: str, key: str) -> dict | None:
        blob = table.c[_BLOB_COLUMNS[table.name]]
        with self._connect() as conn:
            row = conn.execute(
                select(blob).where((table.c.username == username) & (table.c["key"] == key))
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def _get_all_records(self, table: Table, username: str) -> dict[str, dict]:
        blob = table.c[_BLOB_COLUMNS[table.name]]
        with self._connect() as conn:
            rows = conn.execute(select(table.c["key"], blob).where(table.c.username == username)).fetchall()
        return {r[0]: json.loads(r[1]) for r in rows}

    def _set_record(self, table: Table, username: str, key: str, value: dict[str, Any]) -> None:
        """Upsert inside one transaction: UPDATE, then INSERT if nothing matched."""
        column = _BLOB_COLUMNS[table.name]
        payload = json.dumps(value, ensure_ascii=False)
        now = _now_iso()
        with self._transaction() as conn:
            result = conn.execute(
                table.update()
                .where((table.c.username == username) & (table.c["key"] == key))
                .values({column: payload, "updated_at": now})
            )
            if result.rowcount == 0:
                conn.execute(table.insert().values({"username": username, "key": key, column: payload, "updated_at": now}))

    def _delete_record(self, table: Table, username: str, key: str) -> bool:
        with self._transaction() as conn:
            result = conn.execute(table.delete().where((table.c.username == username) & (table.c["key"] == key)))
        return result.rowcount > 0

    def get_play_record(self, username: str, key: str) -> dict | None:
        return self._get_record(_play_records, username, key)

    def set_play_record(self, username: str, key: str, record: dict[str, Any]) -> None:
        self._set_record(_play_records, username, key, record)

    def get_all_play_records(self, username: str) -> dict[str, dict]:
        return self._get_all_records(_play_records, username)

    def delete_play_record(self, username: str, key: str) -> bool:
        return self._delete_record(_play_records, username, key)

    def get_favorite(self, username: str, key: str) -> dict | None:
        return self._get_record(_favorites, username, key)

    def set_favorite(self, username: str, key: str, favorite: dict[str, Any]) -> None:
        self._set_record(_favorites, username, key, favorite)

    def get_all_favorites(self, username: str) -> dict[str, dict]:
        return self._get_all_records(_favorites, username)

    def delete_favorite(self, username: str, key: str) -> bool:
        return self._delete_record(_favorites, username, key)

    def get_skip_config(self, username: str, source: str, item_id: str) -> dict | None:
        return self._get_record(_skip_configs, username, f"{source}+{item_id}")

    def set_skip_config(self, username: str, source: str, item_id: str, config: dict[str, Any]) -> None:
        self._set_record(_skip_configs, username, f"{source}+{item_id}", config)

    def get_all_skip_configs(self, username: str) -> dict[str, dict]:
        return self._get_all_records(_skip_configs, username)

    def delete_skip_config(self, username: str, source: str, item_id: str) -> bool:
        return self._delete_record(_skip_configs, username, f"{source}+{item_id}")

    # ------------------------------------------------------------------
    # Search history
    # ------------------------------------------------------------------

    def get_search_history(self, username: str) -> list[str]:
        """Return up to 20 keywords, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                select(_search_history.c.keyword)
                .where(_search_history.c.username == username)
                .order_by(_search_history.c.created_at.desc(), _search_history.c.id.desc())
                .limit(SEARCH_HISTORY_LIMIT)
            ).fetchall()
        return [r.keyword for r in rows]

    def add_search_history(self, username: str, keyword: str) -> None:
        """Record a keyword. A repeated keyword moves to the front instead of duplicating.

        Older entries beyond the 20 most recent are trimmed in the same transaction.
        """
        with self._transaction() as conn:
            conn.execute(
                _search_history.delete().where(
                    (_search_history.c.username == username) & (_search_history.c.keyword == keyword)
                )
            )
            conn.execute(_search_history.insert().values(username=username, keyword=keyword, created_at=_now_iso()))
            keep = [
                r.id
                for r in conn.execute(
                    select(_search_history.c.id)
                    .where(_search_history.c.username == username)
                    .order_by(_search_history.c.created_at.desc(), _search_history.c.id.desc())
                    .limit(SEARCH_HISTORY_LIMIT)
                )
            ]
            conn.execute(
                _search_history.delete().where(
                    (_search_history.c.username == username) & _search_history.c.id.notin_(keep)
                )
            )

    def delete_search_history(self, username: str, keyword: str | None = None) -> None:
        """Delete one keyword, or the user's whole history when keyword is None."""
        condition = _search_history.c.username == username
        if keyword:
            condition = condition & (_search_history.c.keyword == keyword)
        with self._transaction() as conn:
            conn.execute(_search_history.delete().where(condition))

    # ------------------------------------------------------------------
    # Admin configuration row
    # ------------------------------------------------------------------

    def get_admin_config(self) -> dict | None:
        """Return the persisted configuration document, or None if none is stored.

        Raises ConfigurationCorrupt when the stored text is not a JSON object.
        """
        with self._connect() as conn:
            row = conn.execute(
                select(_admin_config.c.config).order_by(_admin_config.c.id).limit(1)
            ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row.config)
        except ValueError as exc:
            raise ConfigurationCorrupt("Persisted configuration is not valid JSON.") from exc
        if not isinstance(data, dict):
            raise ConfigurationCorrupt("Persisted configuration is not a JSON object.")
        return data

    def set_admin_config(self, config: dict[str, Any]) -> None:
        """Write the configuration document to the single logical row."""
        payload = json.dumps(config, ensure_ascii=False)
        with self._transaction() as conn:
            row = conn.execute(select(_admin_config.c.id).order_by(_admin_config.c.id).limit(1)).fetchone()
            if row is None:
                conn.execute(_admin_config.insert().values(config=payload, updated_at=_now_iso()))
            else:
                conn.execute(
                    _admin_config.update()
                    .where(_admin_config.c.id == row.id)
                    .values(config=payload, updated_at=_now_iso())
                )

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def clear_all_data(self) -> None:
        """Empty every table in one transaction (used before a backup import)."""
        with self._transaction() as conn:
            for table in (_users, *_PER_USER_TABLES, _admin_config):
                conn.execute(table.delete())
        logger.warning("All stored data cleared")

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        username=row.username,
        role=row.role,
        hashed_password=row.password,
        created_at=row.created_at,
    )
