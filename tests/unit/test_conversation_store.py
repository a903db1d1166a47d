import sqlite3
import threading

import pytest

from support_desk.schemas.models import ConversationStatus, Message, MessageContent, UserRole
from support_desk.utils.conversation_state import StatusPatch
from support_desk.utils.conversation_store import ConversationStore
from support_desk.utils.errors import NotFound, PersistenceFailure
from support_desk.utils.storage import Database, now_utc


@pytest.fixture
def store(tmp_path):
    return ConversationStore(Database(tmp_path / "desk.sqlite"))


def _message(text: str, sender_id: str = "cust-1", role: UserRole = UserRole.customer) -> Message:
    return Message(
        id="",
        conversation_id="",
        sender_id=sender_id,
        sender_name=sender_id.title(),
        sender_role=role,
        content=MessageContent(text=text),
    )


def test_create_with_initial_message(store):
    conv = store.create("cust-1", subject="Billing", initial_message=_message("Need help"))

    assert conv.status == ConversationStatus.open
    assert conv.subject == "Billing"
    assert len(conv.chat_history) == 1
    assert conv.chat_history[0].conversation_id == conv.id
    assert conv.chat_history[0].id
    assert conv.last_message_at == conv.chat_history[0].timestamp


def test_find_by_id_unknown_returns_none(store):
    assert store.find_by_id("missing") is None


def test_append_applies_patch_and_preserves_order(store):
    conv = store.create("cust-1")
    store.append_message_and_update(conv.id, _message("first"))
    stored = store.append_message_and_update(
        conv.id,
        _message("second", "agent-1", UserRole.agent),
        StatusPatch(status=ConversationStatus.in_progress),
    )

    loaded = store.find_by_id(conv.id)
    assert [m.content.text for m in loaded.chat_history] == ["first", "second"]
    assert loaded.status == ConversationStatus.in_progress
    assert loaded.last_message_at == stored.timestamp
    assert loaded.chat_history[1].sender_role == UserRole.agent


def test_append_to_unknown_conversation_raises(store):
    with pytest.raises(NotFound):
        store.append_message_and_update("missing", _message("hello"))


def test_concurrent_appends_all_land_in_timestamp_order(store):
    conv = store.create("cust-1")
    barrier = threading.Barrier(8)

    def writer(index: int) -> None:
        barrier.wait()
        for n in range(5):
            store.append_message_and_update(conv.id, _message(f"{index}-{n}"))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    history = store.find_by_id(conv.id).chat_history
    assert len(history) == 40
    assert len({m.id for m in history}) == 40
    timestamps = [m.timestamp for m in history]
    assert timestamps == sorted(timestamps)


def test_update_and_summary(store):
    conv = store.create("cust-1")
    now = now_utc()
    updated = store.update(
        conv.id,
        StatusPatch(status=ConversationStatus.closed, closed_at=now, resolved_at=now),
    )
    assert updated.status == ConversationStatus.closed
    assert updated.closed_at == now

    summarized = store.set_summary(conv.id, "  Customer asked about billing.  ")
    assert summarized.summary == "Customer asked about billing."

    with pytest.raises(NotFound):
        store.update("missing", StatusPatch(status=ConversationStatus.open))
    with pytest.raises(NotFound):
        store.set_summary("missing", "x")


def test_list_by_filter(store):
    first = store.create("cust-1")
    second = store.create("cust-2")
    third = store.create("cust-1")
    store.update(second.id, StatusPatch(status=ConversationStatus.assigned, agent_id="agent-1"))
    store.update(third.id, StatusPatch(status=ConversationStatus.in_progress, agent_id="agent-2"))
    store.append_message_and_update(first.id, _message("latest"))

    mine = store.list_by_filter(customer_id="cust-1")
    assert [c.id for c in mine] == [first.id, third.id]
    assert all(c.chat_history == [] for c in mine)

    queue = store.list_by_filter(agent_id="agent-1", include_unassigned_open=True)
    assert {c.id for c in queue} == {first.id, second.id}

    assigned_only = store.list_by_filter(agent_id="agent-1")
    assert [c.id for c in assigned_only] == [second.id]

    in_progress = store.list_by_filter(status=ConversationStatus.in_progress)
    assert [c.id for c in in_progress] == [third.id]

    paged = store.list_by_filter(skip=1, limit=1)
    assert len(paged) == 1

    with_history = store.list_by_filter(customer_id="cust-1", include_history=True)
    assert len(with_history[0].chat_history) == 1
    assert store.count_by_status() == {"open": 1, "assigned": 1, "in_progress": 1}


def test_sqlite_errors_become_persistence_failures(store, monkeypatch):
    conv = store.create("cust-1")

    def broken_connect(self):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(Database, "_connect", broken_connect)
    with pytest.raises(PersistenceFailure):
        store.append_message_and_update(conv.id, _message("hello"))
