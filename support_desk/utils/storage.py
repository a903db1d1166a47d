from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from support_desk.utils.errors import PersistenceFailure
from support_desk.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT,
        role TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        is_blocked INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL,
        agent_id TEXT,
        status TEXT NOT NULL,
        subject TEXT,
        summary TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_message_at TEXT NOT NULL,
        assigned_at TEXT,
        resolved_at TEXT,
        closed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_customer ON conversations(customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_agent ON conversations(agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_last_message ON conversations(last_message_at)",
    """
    CREATE TABLE IF NOT EXISTS conversation_messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversation_messages_conversation ON conversation_messages(conversation_id, seq)",
)


def now_utc() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class Database:
    """One sqlite file shared by the user and conversation stores."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._ready = False

    def _connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._ready:
            return
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()
        self._ready = True

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work commits on success and rolls back on error.

        sqlite errors surface as :class:`PersistenceFailure`.
        """

        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect()
            self._ensure_schema(conn)
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            if conn is not None:
                conn.rollback()
            log.error("storage_transaction_failed", path=str(self.path), error=str(exc))
            raise PersistenceFailure("The conversation store is unavailable. Please retry.") from exc
        except BaseException:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()
