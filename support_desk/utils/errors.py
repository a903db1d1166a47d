"""Failure taxonomy shared by the session gateway, the stores and the HTTP layer.

Every error may carry the conversation id it concerns. The gateway turns them
into scoped ``error_message`` events; the HTTP layer maps them to status codes.
"""

from __future__ import annotations


class SupportDeskError(Exception):
    code = "error"
    http_status = 400

    def __init__(self, message: str, *, conversation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id


class AuthenticationFailure(SupportDeskError):
    """Bad, missing or expired credential. Terminates the connection."""

    code = "authentication_failed"
    http_status = 401


class AuthorizationFailure(SupportDeskError):
    """Authenticated, but not entitled to the conversation or action."""

    code = "forbidden"
    http_status = 403


class NotFound(SupportDeskError):
    code = "not_found"
    http_status = 404


class InvalidPayload(SupportDeskError):
    code = "invalid_payload"
    http_status = 422


class ConflictOrTerminalState(SupportDeskError):
    """Action attempted against a closed conversation or in the wrong state."""

    code = "conflict"
    http_status = 409


class PersistenceFailure(SupportDeskError):
    """The conversation store could not complete the write; the client should retry."""

    code = "persistence_failed"
    http_status = 503


class SummarizerUnavailable(SupportDeskError):
    """No summary could be produced; the summarizer is disabled or kept failing."""

    code = "summarizer_unavailable"
    http_status = 503
