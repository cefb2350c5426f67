"""SQLite-backed message and user stores.

Both stores share one database file but keep separate connections. Each
store serializes access to its connection with its own lock so the stores
can be called from the relay worker and from tests alike.

Tables:
- messages: every relayed message; ``seq`` preserves insertion order for
  records created in the same millisecond.
- users:    registered accounts with salted password hashes.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .constants import (
    B_MSG_CONTENT,
    B_MSG_ID,
    B_MSG_RECIPIENT,
    B_MSG_SENDER,
    B_MSG_TS,
)
from .envelope import now_ms
from .errors import PersistenceError

log = logging.getLogger("rdmd.store")


def new_object_id() -> str:
    """Return a fresh 24 hex char id."""
    return os.urandom(12).hex()


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    sender_id: str
    recipient_id: str
    content: str
    timestamp: int
    delivered: bool = False

    @classmethod
    def new(cls, sender_id: str, recipient_id: str, content: str) -> MessageRecord:
        return cls(
            message_id=new_object_id(),
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            timestamp=now_ms(),
        )

    def to_body(self) -> dict[int, Any]:
        """Wire form used by receiveMessage, messageSent and historyItem."""
        return {
            B_MSG_ID: self.message_id,
            B_MSG_SENDER: self.sender_id,
            B_MSG_CONTENT: self.content,
            B_MSG_TS: self.timestamp,
            B_MSG_RECIPIENT: self.recipient_id,
        }


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    username: str
    password_hash: str
    created_ts: int


def _connect(path: str) -> sqlite3.Connection:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    return conn


class MessageStore:
    """Durable append/query service for message records."""

    def __init__(self, path: str) -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            self._conn = _connect(self.path)
            self._init_schema()
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open message store {self.path}: {e}") from e

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages(
                    seq          INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id   TEXT NOT NULL UNIQUE,
                    sender_id    TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    content      TEXT NOT NULL,
                    ts           INTEGER NOT NULL,
                    delivered    INTEGER NOT NULL DEFAULT 0
                );"""
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS messages_pending "
                "ON messages(recipient_id, delivered, ts);"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS messages_pair "
                "ON messages(sender_id, recipient_id, ts);"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def append(self, record: MessageRecord) -> MessageRecord:
        """Persist ``record``; nothing is visible unless the insert commits."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO messages(message_id, sender_id, recipient_id, content, ts, delivered) "
                    "VALUES(?,?,?,?,?,?)",
                    (
                        record.message_id,
                        record.sender_id,
                        record.recipient_id,
                        record.content,
                        int(record.timestamp),
                        1 if record.delivered else 0,
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"append failed: {e}") from e
        return record

    def pending_for(self, recipient_id: str) -> list[MessageRecord]:
        """Undelivered records addressed to ``recipient_id``, oldest first."""
        return self._select(
            "WHERE recipient_id=? AND delivered=0 ORDER BY ts ASC, seq ASC",
            (recipient_id,),
        )

    def between(
        self, user_a: str, user_b: str, *, limit: int | None = None
    ) -> list[MessageRecord]:
        """All records exchanged by two identities, oldest first.

        With ``limit`` only the most recent ``limit`` records are returned
        (still oldest first).
        """
        where = (
            "WHERE (sender_id=? AND recipient_id=?) OR (sender_id=? AND recipient_id=?)"
        )
        params: tuple[Any, ...] = (user_a, user_b, user_b, user_a)
        if limit is None or limit <= 0:
            return self._select(where + " ORDER BY ts ASC, seq ASC", params)

        rows = self._select(where + " ORDER BY ts DESC, seq DESC LIMIT ?", params + (int(limit),))
        rows.reverse()
        return rows

    def mark_delivered(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        try:
            with self._lock, self._conn:
                cur = self._conn.executemany(
                    "UPDATE messages SET delivered=1 WHERE message_id=?",
                    [(mid,) for mid in message_ids],
                )
                return cur.rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"mark delivered failed: {e}") from e

    def get(self, message_id: str) -> MessageRecord | None:
        rows = self._select("WHERE message_id=?", (message_id,))
        return rows[0] if rows else None

    def count(self) -> int:
        try:
            with self._lock:
                row = self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"count failed: {e}") from e
        return int(row[0]) if row else 0

    def _select(self, clause: str, params: tuple[Any, ...]) -> list[MessageRecord]:
        sql = (
            "SELECT message_id, sender_id, recipient_id, content, ts, delivered "
            "FROM messages " + clause
        )
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"query failed: {e}") from e
        return [
            MessageRecord(
                message_id=r[0],
                sender_id=r[1],
                recipient_id=r[2],
                content=r[3],
                timestamp=int(r[4]),
                delivered=bool(r[5]),
            )
            for r in rows
        ]


# --- Passwords ---

_HASH_SCHEME = "pbkdf2_sha256"


def hash_password(password: str, *, iterations: int = 200_000, salt: bytes | None = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, int(iterations))
    return f"{_HASH_SCHEME}${int(iterations)}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
        if scheme != _HASH_SCHEME:
            return False
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
        rounds = int(iterations)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(digest, expected)


class UserExistsError(ValueError):
    pass


class UserStore:
    """Registered accounts. Identities handed to clients are ``user_id``s."""

    def __init__(self, path: str, *, iterations: int = 200_000) -> None:
        self.path = str(path)
        self.iterations = int(iterations)
        self._lock = threading.Lock()
        try:
            self._conn = _connect(self.path)
            with self._conn:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users(
                        user_id       TEXT PRIMARY KEY,
                        username      TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        created_ts    INTEGER NOT NULL
                    );"""
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open user store {self.path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_user(self, username: str, password: str) -> UserRecord:
        user = UserRecord(
            user_id=new_object_id(),
            username=username,
            password_hash=hash_password(password, iterations=self.iterations),
            created_ts=now_ms(),
        )
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO users(user_id, username, password_hash, created_ts) VALUES(?,?,?,?)",
                    (user.user_id, user.username, user.password_hash, user.created_ts),
                )
        except sqlite3.IntegrityError as e:
            raise UserExistsError(f"username already exists: {username}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"create user failed: {e}") from e
        log.info("Created user username=%r user_id=%s", username, user.user_id)
        return user

    def get_user(self, user_id: str) -> UserRecord | None:
        return self._fetch_one("user_id", user_id)

    def get_by_username(self, username: str) -> UserRecord | None:
        return self._fetch_one("username", username)

    def verify_credentials(self, username: str, password: str) -> UserRecord | None:
        user = self.get_by_username(username)
        if user is None:
            return None
        if not verify_password(password, user.password_hash):
            return None
        return user

    def _fetch_one(self, column: str, value: str) -> UserRecord | None:
        sql = f"SELECT user_id, username, password_hash, created_ts FROM users WHERE {column}=?"
        try:
            with self._lock:
                row = self._conn.execute(sql, (value,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"user lookup failed: {e}") from e
        if row is None:
            return None
        return UserRecord(user_id=row[0], username=row[1], password_hash=row[2], created_ts=int(row[3]))
