from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict

from fastapi import Depends, HTTPException, Request

from support_desk.schemas.models import IdentitySnapshot, UserRole
from support_desk.utils.errors import AuthenticationFailure, AuthorizationFailure


class RateLimiter:
    def __init__(self, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window = window_seconds
        self.calls: Dict[str, Deque[float]] = {}
        self._last_sweep = 0.0

    def allow(self, client_id: str) -> None:
        now = time.time()
        cutoff = now - self.window
        if now - self._last_sweep >= self.window:
            self._sweep(cutoff)
            self._last_sweep = now
        bucket = self.calls.setdefault(client_id, deque())
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) >= self.limit:
            raise HTTPException(status_code=429, detail="Rate limit exceeded")
        bucket.append(now)

    def _sweep(self, cutoff: float) -> None:
        for client_id in list(self.calls):
            bucket = self.calls[client_id]
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                del self.calls[client_id]

    def reset(self) -> None:
        self.calls.clear()
        self._last_sweep = 0.0


def bearer_token(header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""

    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_identity(request: Request) -> IdentitySnapshot:
    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        raise AuthenticationFailure("Not authenticated.")
    identity = request.app.state.verifier.verify(token)
    request.app.state.rate_limiter.allow(identity.user_id)
    return identity


def require_roles(*roles: UserRole) -> Callable[..., IdentitySnapshot]:
    allowed = frozenset(roles)

    def dependency(identity: IdentitySnapshot = Depends(require_identity)) -> IdentitySnapshot:
        if identity.role not in allowed:
            names = ", ".join(sorted(role.value for role in allowed))
            raise AuthorizationFailure(f"The user does not have the required role ({names}).")
        return identity

    return dependency
