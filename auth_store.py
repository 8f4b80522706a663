"""SQLite persistence for the auth gateway.

Two stores share the same connection wrapper:

- UserDirectory: users(id, email UNIQUE), upsert-by-email.
- SessionStore: opaque session token -> {user_id, email} with an expiry.

Every sqlite failure surfaces as PersistenceError; callers never see
aiosqlite exceptions.
"""

import secrets
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import aiosqlite
from termcolor import cprint

from gateway_errors import PersistenceError

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions (expires_at);
CREATE TABLE IF NOT EXISTS oauth_clients (
    client_id TEXT PRIMARY KEY,
    client_info_json TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS pending_logins (
    session_id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    params_json TEXT NOT NULL,
    email TEXT,
    code_hash TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS auth_codes (
    code TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,
    session_token TEXT NOT NULL,
    scopes TEXT NOT NULL,
    code_challenge TEXT NOT NULL,
    redirect_uri TEXT NOT NULL,
    redirect_uri_provided_explicitly INTEGER NOT NULL,
    resource TEXT,
    expires_at REAL NOT NULL
);
"""


@asynccontextmanager
async def store_errors(action: str):
    """Re-raise sqlite failures inside the block as PersistenceError."""
    try:
        yield
    except aiosqlite.Error as e:
        cprint(f"[STORE] Failed to {action}: {e}", "red")
        raise PersistenceError(f"Unable to {action}") from e


# =============================================================================
# Connection
# =============================================================================


class Database:
    """One aiosqlite connection plus the schema."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("Database is not available")
        return self._db

    async def initialize(self) -> None:
        """Create database and tables."""
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        cprint(f"[STORE] Initializing database at {self.db_path}", "yellow")
        async with store_errors("open database"):
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        cprint("[STORE] Database initialized", "green")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None


# =============================================================================
# User Directory
# =============================================================================


@dataclass(frozen=True)
class User:
    id: str
    email: str

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email}


class UserDirectory:
    """users(id, email UNIQUE). Rows are created on first sign-in and never deleted."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert_by_email(self, email: str) -> str:
        """Return the id for this email, creating the row if it is new.

        The no-op update on conflict makes RETURNING yield the existing id.
        """
        conn = self.db.connection
        async with store_errors("upsert user"):
            cursor = await conn.execute(
                """INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)
                ON CONFLICT (email) DO UPDATE SET email = email
                RETURNING id""",
                (uuid.uuid4().hex, email, time.time()),
            )
            row = await cursor.fetchone()
            await cursor.close()
            await conn.commit()
        if not row:
            raise PersistenceError(f"Unable to process user: {email}")
        cprint(f"[STORE] Found or created user {row['id']} with email {email}", "green")
        return row["id"]

    async def get_by_id(self, user_id: str) -> User | None:
        async with store_errors("load user"):
            cursor = await self.db.connection.execute(
                "SELECT id, email FROM users WHERE id = ?", (user_id,)
            )
            row = await cursor.fetchone()
        return User(id=row["id"], email=row["email"]) if row else None


# =============================================================================
# Session Store
# =============================================================================


@dataclass(frozen=True)
class SessionRecord:
    token: str
    user_id: str
    email: str
    expires_at: float


class SessionStore:
    """Opaque bearer tokens with a fixed lifetime.

    lookup() is the only answer to "is this token valid": an expired token
    and one that never existed look the same to the caller.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    async def create(self, user_id: str, email: str, ttl: int) -> str:
        token = secrets.token_urlsafe(32)
        now = self.clock()
        conn = self.db.connection
        async with store_errors("create session"):
            await conn.execute(
                "INSERT INTO sessions (token, user_id, email, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                (token, user_id, email, now, now + ttl),
            )
            await conn.commit()
        cprint(f"[STORE] Created session {token[:8]}... for user {user_id}", "green")
        return token

    async def lookup(self, token: str) -> SessionRecord | None:
        if not token:
            return None
        async with store_errors("look up session"):
            cursor = await self.db.connection.execute(
                "SELECT token, user_id, email, expires_at FROM sessions WHERE token = ? AND expires_at > ?",
                (token, self.clock()),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        return SessionRecord(
            token=row["token"],
            user_id=row["user_id"],
            email=row["email"],
            expires_at=row["expires_at"],
        )

    async def purge_expired(self) -> int:
        """Remove expired sessions. Returns the number of rows deleted."""
        conn = self.db.connection
        async with store_errors("purge sessions"):
            cursor = await conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (self.clock(),))
            await conn.commit()
        return cursor.rowcount
