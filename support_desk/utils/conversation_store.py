from __future__ import annotations

import json
import sqlite3
import uuid
from threading import RLock
from typing import Any, Dict, List

from support_desk.schemas.models import Conversation, ConversationStatus, Message
from support_desk.utils.conversation_state import StatusPatch, initial_status
from support_desk.utils.errors import NotFound
from support_desk.utils.storage import Database, json_dumps, now_utc, parse_datetime, to_iso

_STORE_LOCK = RLock()

_PATCHABLE_COLUMNS = ("status", "agent_id", "assigned_at", "resolved_at", "closed_at")


def _load_message_payload(raw: str) -> Dict[str, Any]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(payload, dict):
        return payload
    return {}


def _row_to_conversation(row: sqlite3.Row, history: List[Message]) -> Conversation:
    now = now_utc()
    return Conversation(
        id=row["conversation_id"],
        customer_id=row["customer_id"],
        agent_id=row["agent_id"],
        status=ConversationStatus(row["status"]),
        subject=row["subject"],
        summary=row["summary"],
        chat_history=history,
        created_at=parse_datetime(row["created_at"]) or now,
        updated_at=parse_datetime(row["updated_at"]) or now,
        last_message_at=parse_datetime(row["last_message_at"]) or now,
        assigned_at=parse_datetime(row["assigned_at"]),
        resolved_at=parse_datetime(row["resolved_at"]),
        closed_at=parse_datetime(row["closed_at"]),
    )


def _patch_values(patch: StatusPatch) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, value in patch.columns().items():
        if name not in _PATCHABLE_COLUMNS:
            continue
        if isinstance(value, ConversationStatus):
            values[name] = value.value
        elif hasattr(value, "isoformat"):
            values[name] = value.isoformat()
        else:
            values[name] = value
    return values


class ConversationStore:
    """sqlite-backed conversations with an append-only message table.

    History order is the ``seq`` column of ``conversation_messages``: appends
    are single inserts, so concurrent writers never overwrite each other's
    messages. The store stamps each message's timestamp inside the write
    transaction, which keeps timestamp order and append order identical.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    def _load_history(self, conn: sqlite3.Connection, conversation_id: str) -> List[Message]:
        rows = conn.execute(
            """
            SELECT payload_json
            FROM conversation_messages
            WHERE conversation_id = ?
            ORDER BY seq ASC
            """,
            (conversation_id,),
        ).fetchall()
        history: List[Message] = []
        for row in rows:
            payload = _load_message_payload(row["payload_json"])
            if payload:
                history.append(Message.model_validate(payload))
        return history

    def _read(self, conn: sqlite3.Connection, conversation_id: str, *, include_history: bool = True) -> Conversation | None:
        row = conn.execute("SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)).fetchone()
        if row is None:
            return None
        history = self._load_history(conn, conversation_id) if include_history else []
        return _row_to_conversation(row, history)

    def _insert_message(self, conn: sqlite3.Connection, message: Message) -> Message:
        stamped = message.model_copy(update={"timestamp": now_utc(), "id": message.id or uuid.uuid4().hex})
        conn.execute(
            """
            INSERT INTO conversation_messages (message_id, conversation_id, created_at, payload_json)
            VALUES (?, ?, ?, ?)
            """,
            (
                stamped.id,
                stamped.conversation_id,
                stamped.timestamp.isoformat(),
                json_dumps(stamped.model_dump(mode="json")),
            ),
        )
        return stamped

    def create(
        self,
        customer_id: str,
        *,
        subject: str | None = None,
        initial_message: Message | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation_id = conversation_id or uuid.uuid4().hex
        now = to_iso(now_utc())
        with _STORE_LOCK, self._db.transaction(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO conversations (
                    conversation_id,
                    customer_id,
                    agent_id,
                    status,
                    subject,
                    summary,
                    created_at,
                    updated_at,
                    last_message_at
                ) VALUES (?, ?, NULL, ?, ?, NULL, ?, ?, ?)
                """,
                (conversation_id, customer_id, initial_status().value, (subject or "").strip() or None, now, now, now),
            )
            if initial_message is not None:
                first = self._insert_message(
                    conn, initial_message.model_copy(update={"conversation_id": conversation_id})
                )
                conn.execute(
                    "UPDATE conversations SET last_message_at = ?, updated_at = ? WHERE conversation_id = ?",
                    (first.timestamp.isoformat(), first.timestamp.isoformat(), conversation_id),
                )
            created = self._read(conn, conversation_id)
        assert created is not None
        return created

    def find_by_id(self, conversation_id: str, *, include_history: bool = True) -> Conversation | None:
        with _STORE_LOCK, self._db.transaction() as conn:
            return self._read(conn, conversation_id, include_history=include_history)

    def append_message_and_update(self, conversation_id: str, message: Message, patch: StatusPatch | None = None) -> Message:
        """Append ``message`` and apply ``patch`` in one transaction; returns the stored message."""

        with _STORE_LOCK, self._db.transaction(immediate=True) as conn:
            exists = conn.execute(
                "SELECT 1 FROM conversations WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
            if exists is None:
                raise NotFound("Conversation not found.", conversation_id=conversation_id)
            stored = self._insert_message(conn, message.model_copy(update={"conversation_id": conversation_id}))
            values = _patch_values(patch) if patch is not None else {}
            values["last_message_at"] = stored.timestamp.isoformat()
            values["updated_at"] = stored.timestamp.isoformat()
            assignments = ", ".join(f"{name} = ?" for name in values)
            conn.execute(
                f"UPDATE conversations SET {assignments} WHERE conversation_id = ?",
                (*values.values(), conversation_id),
            )
        return stored

    def update(self, conversation_id: str, patch: StatusPatch) -> Conversation:
        values = _patch_values(patch)
        values["updated_at"] = to_iso(now_utc())
        assignments = ", ".join(f"{name} = ?" for name in values)
        with _STORE_LOCK, self._db.transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"UPDATE conversations SET {assignments} WHERE conversation_id = ?",
                (*values.values(), conversation_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("Conversation not found.", conversation_id=conversation_id)
            updated = self._read(conn, conversation_id)
        assert updated is not None
        return updated

    def set_summary(self, conversation_id: str, summary: str) -> Conversation:
        with _STORE_LOCK, self._db.transaction(immediate=True) as conn:
            cursor = conn.execute(
                "UPDATE conversations SET summary = ?, updated_at = ? WHERE conversation_id = ?",
                (summary.strip(), to_iso(now_utc()), conversation_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("Conversation not found.", conversation_id=conversation_id)
            updated = self._read(conn, conversation_id)
        assert updated is not None
        return updated

    def list_by_filter(
        self,
        *,
        status: ConversationStatus | None = None,
        customer_id: str | None = None,
        agent_id: str | None = None,
        include_unassigned_open: bool = False,
        skip: int = 0,
        limit: int = 20,
        include_history: bool = False,
    ) -> List[Conversation]:
        """Newest activity first.

        With ``include_unassigned_open`` the agent filter widens to "assigned to
        ``agent_id`` or still open", which is the agent work queue.
        """

        clauses: List[str] = []
        params: List[Any] = []
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if agent_id and include_unassigned_open:
            clauses.append("(agent_id = ? OR status = ?)")
            params.extend([agent_id, ConversationStatus.open.value])
        elif agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ConversationStatus(status).value)
        query = "SELECT * FROM conversations"
        if clauses:
            query = f"{query} WHERE {' AND '.join(clauses)}"
        query = f"{query} ORDER BY last_message_at DESC LIMIT ? OFFSET ?"
        params.extend([max(limit, 1), max(skip, 0)])
        with _STORE_LOCK, self._db.transaction() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return [
                _row_to_conversation(row, self._load_history(conn, row["conversation_id"]) if include_history else [])
                for row in rows
            ]

    def count_by_status(self) -> Dict[str, int]:
        with _STORE_LOCK, self._db.transaction() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS count FROM conversations GROUP BY status").fetchall()
        return {row["status"]: int(row["count"] or 0) for row in rows}
