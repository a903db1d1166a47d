from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from support_desk.schemas.models import IdentitySnapshot, UserProfile, UserRole
from support_desk.utils.storage import Database, now_utc, parse_datetime

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class UserAccount:
    user_id: str
    email: str
    full_name: str | None
    role: UserRole
    is_active: bool
    is_blocked: bool
    created_at: datetime
    updated_at: datetime

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(user_id=self.user_id, name=self.display_name, role=self.role, email=self.email)

    def to_profile(self) -> UserProfile:
        return UserProfile(
            id=self.user_id,
            email=self.email,
            full_name=self.full_name,
            role=self.role,
            is_active=self.is_active,
            is_blocked=self.is_blocked,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_email(email: str) -> None:
    if not _EMAIL_PATTERN.match(email):
        raise ValueError("Email address is not valid.")


def _row_to_user(row) -> UserAccount:
    return UserAccount(
        user_id=row["user_id"],
        email=row["email"],
        full_name=row["full_name"],
        role=UserRole(row["role"]),
        is_active=bool(row["is_active"]),
        is_blocked=bool(row["is_blocked"]),
        created_at=parse_datetime(row["created_at"]) or now_utc(),
        updated_at=parse_datetime(row["updated_at"]) or now_utc(),
    )


class UserStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    def create_user(
        self,
        email: str,
        *,
        full_name: str | None = None,
        role: UserRole = UserRole.customer,
        user_id: str | None = None,
    ) -> UserAccount:
        normalized = normalize_email(email)
        validate_email(normalized)
        now = now_utc().isoformat()
        user_id = user_id or uuid.uuid4().hex
        with self._db.transaction() as conn:
            existing = conn.execute("SELECT 1 FROM users WHERE email = ?", (normalized,)).fetchone()
            if existing:
                raise ValueError("Email already registered.")
            conn.execute(
                """
                INSERT INTO users (user_id, email, full_name, role, is_active, is_blocked, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, 0, ?, ?)
                """,
                (user_id, normalized, (full_name or "").strip() or None, UserRole(role).value, now, now),
            )
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_user(row)

    def get_user(self, user_id: str) -> UserAccount | None:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> UserAccount | None:
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (normalize_email(email),)).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self, *, role: UserRole | None = None, skip: int = 0, limit: int = 50) -> List[UserAccount]:
        query = "SELECT * FROM users"
        params: List[Any] = []
        if role is not None:
            query = f"{query} WHERE role = ?"
            params.append(UserRole(role).value)
        query = f"{query} ORDER BY created_at ASC LIMIT ? OFFSET ?"
        params.extend([max(limit, 1), max(skip, 0)])
        with self._db.transaction() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> UserAccount | None:
        columns: Dict[str, Any] = {}
        if updates.get("full_name") is not None:
            columns["full_name"] = str(updates["full_name"]).strip() or None
        if updates.get("role") is not None:
            columns["role"] = UserRole(updates["role"]).value
        if updates.get("is_active") is not None:
            columns["is_active"] = 1 if updates["is_active"] else 0
        if updates.get("is_blocked") is not None:
            columns["is_blocked"] = 1 if updates["is_blocked"] else 0
        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            if row is None:
                return None
            if columns:
                columns["updated_at"] = now_utc().isoformat()
                assignments = ", ".join(f"{name} = ?" for name in columns)
                conn.execute(
                    f"UPDATE users SET {assignments} WHERE user_id = ?",
                    (*columns.values(), user_id),
                )
                row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_user(row)
