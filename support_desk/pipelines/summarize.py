from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from support_desk.schemas.models import Conversation, ConversationStatus
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import ConflictOrTerminalState, NotFound, SummarizerUnavailable
from support_desk.utils.logging import get_logger
from support_desk.utils.observability import get_metrics
from support_desk.utils.summarizer import format_chat_history_for_summary, summarize

log = get_logger(__name__)

SummarizeFn = Callable[[str], Awaitable[str | None]]

EMPTY_HISTORY_NOTICE = "Could not format chat history for summarization."

_SUMMARIZABLE = frozenset({ConversationStatus.resolved, ConversationStatus.closed})


@dataclass
class SummaryResult:
    conversation: Conversation
    generated: bool
    duration_ms: float


async def summarize_conversation(
    store: ConversationStore,
    conversation_id: str,
    *,
    summarize_fn: SummarizeFn = summarize,
) -> SummaryResult:
    """Write a summary onto a resolved or closed conversation.

    ``generated`` is False when the history had nothing to summarize and the
    fixed notice was stored instead.
    """

    metrics = get_metrics()
    start = time.perf_counter()
    conversation = await asyncio.to_thread(store.find_by_id, conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found.", conversation_id=conversation_id)
    if conversation.status not in _SUMMARIZABLE:
        raise ConflictOrTerminalState(
            "Conversation must be resolved or closed to generate a summary.",
            conversation_id=conversation_id,
        )

    formatted = format_chat_history_for_summary(conversation.chat_history)
    generated = bool(formatted)
    if formatted:
        summary = await summarize_fn(formatted)
        if summary is None:
            metrics.increment_counter("summaries::unavailable")
            raise SummarizerUnavailable(
                "Summary generation failed. The summarizer is not available.",
                conversation_id=conversation_id,
            )
    else:
        summary = EMPTY_HISTORY_NOTICE

    updated = await asyncio.to_thread(store.set_summary, conversation_id, summary)
    duration_ms = (time.perf_counter() - start) * 1000
    metrics.record("summarize_conversation", duration_ms)
    metrics.increment_counter("summaries::stored")
    log.info(
        "conversation_summarized",
        conversation_id=conversation_id,
        generated=generated,
        message_count=len(conversation.chat_history),
        duration_ms=round(duration_ms, 2),
    )
    return SummaryResult(conversation=updated, generated=generated, duration_ms=duration_ms)
