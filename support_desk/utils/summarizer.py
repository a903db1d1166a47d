"""Client for an OpenAI-compatible chat-completions endpoint used to summarize conversations.

Without ``SUMMARIZER_API_KEY`` the client is disabled and :func:`summarize`
returns ``None``. Transport errors are retried with exponential backoff; once
the attempts are used up the failure is logged, counted and ``None`` returned.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Iterable

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from support_desk.schemas.models import Message
from support_desk.utils.logging import get_logger
from support_desk.utils.observability import get_metrics

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.openai.com/v1"
_DEFAULT_MODEL = "gpt-4o-mini"
_SYSTEM_PROMPT = (
    "You summarize customer support conversations. Reply with a short neutral summary "
    "covering the customer's problem, what support did, and how it ended."
)


class SummarizerConfigError(RuntimeError):
    """Raised when the summarizer credentials are missing."""


def _base_url() -> str:
    return os.getenv("SUMMARIZER_BASE", _DEFAULT_BASE).rstrip("/")


def _api_key() -> str | None:
    return os.getenv("SUMMARIZER_API_KEY")


def enabled() -> bool:
    return bool(_api_key())


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise SummarizerConfigError("SUMMARIZER_API_KEY is not configured")
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        log.warning("summarizer_invalid_float_env", name=name, value=value)
        return default
    return parsed if parsed > 0 else default


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        log.warning("summarizer_invalid_int_env", name=name, value=value)
        return default
    return parsed if parsed > 0 else default


def _timeout_seconds() -> float:
    return _get_float_env("SUMMARIZER_TIMEOUT_SECONDS", 30.0)


def _max_attempts() -> int:
    return _get_int_env("SUMMARIZER_MAX_ATTEMPTS", 3)


def _backoff_min_seconds() -> float:
    return _get_float_env("SUMMARIZER_BACKOFF_MIN_SECONDS", 1.0)


def _backoff_max_seconds() -> float:
    return _get_float_env("SUMMARIZER_BACKOFF_MAX_SECONDS", 8.0)


def format_chat_history_for_summary(history: Iterable[Message]) -> str:
    """Render history as ``Name: text`` lines; attachments appear as ``[name attached]``."""

    lines = []
    for message in history:
        text = (message.content.text or "").strip()
        if message.content.file_info is not None:
            file_name = message.content.file_info.name or "attachment"
            text = f"{text} [{file_name} attached]".strip()
        if text:
            lines.append(f"{message.sender_name or 'User'}: {text}")
    return "\n".join(lines)


def _extract_content(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or [{}]
    return (choices[0].get("message", {}).get("content") or "").strip()


async def summarize(text: str, *, model: str | None = None, max_tokens: int = 200) -> str | None:
    metrics = get_metrics()
    if not text.strip():
        return ""
    if not enabled():
        metrics.increment_counter("summarizer::disabled")
        return None

    payload: Dict[str, Any] = {
        "model": model or os.getenv("SUMMARIZER_MODEL", _DEFAULT_MODEL),
        "messages": [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ],
        "temperature": 0.2,
        "max_tokens": max_tokens,
    }
    max_attempts = max(_max_attempts(), 1)
    timeout = _timeout_seconds()
    backoff_min = _backoff_min_seconds()
    backoff_max = max(backoff_min, _backoff_max_seconds())

    last_attempt_number = 0
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(multiplier=1, min=backoff_min, max=backoff_max),
                stop=stop_after_attempt(max_attempts),
                reraise=True,
            ):
                last_attempt_number = attempt.retry_state.attempt_number
                if last_attempt_number > 1:
                    metrics.increment_counter("summarizer::retry")
                    log.warning(
                        "summarizer_retry",
                        attempt=last_attempt_number,
                        idle_for=attempt.retry_state.idle_for,
                        max_attempts=max_attempts,
                    )
                with attempt:
                    response = await client.post(
                        f"{_base_url()}/chat/completions",
                        headers=_headers(),
                        json=payload,
                        timeout=timeout,
                    )
                    response.raise_for_status()
                    summary = _extract_content(response.json())
                    metrics.increment_counter("summarizer::success")
                    if last_attempt_number > 1:
                        metrics.increment_counter("summarizer::success_after_retry")
                    return summary
    except (httpx.HTTPError, ValueError) as exc:
        metrics.increment_counter("summarizer::exhausted")
        log.warning(
            "summarizer_failed",
            error=str(exc),
            attempts=max(last_attempt_number, 1),
            max_attempts=max_attempts,
        )
    return None
