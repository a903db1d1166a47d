from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

import jwt

from support_desk.schemas.models import IdentitySnapshot, UserRole
from support_desk.utils.errors import AuthenticationFailure
from support_desk.utils.logging import get_logger
from support_desk.utils.storage import now_utc
from support_desk.utils.user_store import UserAccount, UserStore

log = get_logger(__name__)


class IdentityVerifier:
    """Turns a bearer token into the identity of an active, unblocked user."""

    def __init__(
        self,
        users: UserStore,
        *,
        secret: str,
        algorithm: str = "HS256",
        expire_minutes: int = 60,
    ) -> None:
        self._users = users
        self._secret = secret
        self._algorithm = algorithm
        self._expire_minutes = expire_minutes

    def issue_token(self, user: UserAccount, *, expire_minutes: int | None = None) -> str:
        issued_at = now_utc()
        lifetime = timedelta(minutes=expire_minutes if expire_minutes is not None else self._expire_minutes)
        claims: Dict[str, Any] = {
            "sub": user.user_id,
            "role": user.role.value,
            "iat": issued_at,
            "exp": issued_at + lifetime,
        }
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailure("Authentication token has expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailure("Could not validate credentials.") from exc

    def verify(self, token: str | None) -> IdentitySnapshot:
        if not token or not token.strip():
            raise AuthenticationFailure("Authentication token missing.")
        claims = self.decode(token.strip())
        user_id = claims.get("sub")
        role_claim = claims.get("role")
        if not user_id or not role_claim:
            raise AuthenticationFailure("Could not validate credentials.")

        user = self._users.get_user(str(user_id))
        if user is None:
            log.info("identity_rejected", user_id=user_id, reason="unknown_user")
            raise AuthenticationFailure("User not found.")
        if not user.is_active:
            log.info("identity_rejected", user_id=user_id, reason="inactive")
            raise AuthenticationFailure("Inactive user.")
        if user.is_blocked:
            log.info("identity_rejected", user_id=user_id, reason="blocked")
            raise AuthenticationFailure("User is blocked.")
        try:
            token_role = UserRole(role_claim)
        except ValueError as exc:
            raise AuthenticationFailure("Could not validate credentials.") from exc
        if token_role != user.role:
            log.info("identity_rejected", user_id=user_id, reason="role_changed")
            raise AuthenticationFailure("User role has changed. Please sign in again.")
        return user.snapshot()
