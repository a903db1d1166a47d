import asyncio

import pytest

from support_desk.pipelines.summarize import EMPTY_HISTORY_NOTICE, summarize_conversation
from support_desk.schemas.models import ConversationStatus, Message, MessageContent, UserRole
from support_desk.utils.conversation_state import StatusPatch
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import ConflictOrTerminalState, NotFound, SummarizerUnavailable
from support_desk.utils.observability import get_metrics
from support_desk.utils.storage import Database, now_utc


@pytest.fixture
def store(tmp_path):
    get_metrics().reset()
    return ConversationStore(Database(tmp_path / "desk.sqlite"))


def _resolve(store, conversation_id):
    store.update(conversation_id, StatusPatch(status=ConversationStatus.resolved, resolved_at=now_utc()))


def _initial(text: str) -> Message:
    return Message(
        id="",
        conversation_id="",
        sender_id="cust-1",
        sender_name="Alice",
        sender_role=UserRole.customer,
        content=MessageContent(text=text),
    )


def test_summary_is_stored(store):
    conv = store.create("cust-1", initial_message=_initial("Need help"))
    _resolve(store, conv.id)
    seen = []

    async def fake_summarize(text: str) -> str:
        seen.append(text)
        return "Customer needed help."

    result = asyncio.run(summarize_conversation(store, conv.id, summarize_fn=fake_summarize))

    assert seen == ["Alice: Need help"]
    assert result.generated
    assert result.conversation.summary == "Customer needed help."
    assert store.find_by_id(conv.id).summary == "Customer needed help."


def test_empty_history_stores_notice(store):
    conv = store.create("cust-1")
    _resolve(store, conv.id)

    async def never_called(text: str) -> str:
        raise AssertionError("summarizer should not run")

    result = asyncio.run(summarize_conversation(store, conv.id, summarize_fn=never_called))

    assert not result.generated
    assert result.conversation.summary == EMPTY_HISTORY_NOTICE


def test_open_conversation_is_rejected(store):
    conv = store.create("cust-1", initial_message=_initial("Need help"))

    with pytest.raises(ConflictOrTerminalState):
        asyncio.run(summarize_conversation(store, conv.id))


def test_unknown_conversation(store):
    with pytest.raises(NotFound):
        asyncio.run(summarize_conversation(store, "missing"))


def test_unavailable_summarizer_leaves_summary_empty(store):
    conv = store.create("cust-1", initial_message=_initial("Need help"))
    _resolve(store, conv.id)

    async def unavailable(text: str) -> None:
        return None

    with pytest.raises(SummarizerUnavailable):
        asyncio.run(summarize_conversation(store, conv.id, summarize_fn=unavailable))
    assert store.find_by_id(conv.id).summary is None
    assert get_metrics().counter("summaries::unavailable") == 1.0
