from pathlib import Path

import pytest

from agent_chat.domain.exceptions import NetworkError, StoreError, ValidationError
from agent_chat.domain.models import AgentInfo, Conversation, ConversationTurn, StreamEvent
from agent_chat.infrastructure.storage.json_store import JsonConversationStore
from agent_chat.session.coordinator import ExchangeCoordinator
from agent_chat.session.manager import SessionManager


class SettingsStub:
    streaming_enabled = True
    exchange_timeout_seconds = 5.0
    cancel_ack_timeout = 2.0


class FakeTransport:
    def __init__(self, names=None):
        self.names = names or {}
        self.streams = []
        self.calls = []

    def get_agent(self, agent_id):
        if agent_id not in self.names:
            raise NetworkError(code="NETWORK_ERROR", message="offline")
        return AgentInfo(id=agent_id, name=self.names[agent_id])

    def send_message_stream(self, agent_id, text, attachment=None, thread_id=None, cancel_token=None):
        self.calls.append((agent_id, text, thread_id))
        return iter(self.streams.pop(0))


def _manager(root, transport=None):
    transport = transport or FakeTransport({"A1": "Helper"})
    store = JsonConversationStore(root=root)
    coord = ExchangeCoordinator(transport, store, cfg=SettingsStub())
    return SessionManager(store, coord, transport=transport), store, transport


def test_select_new_agent_starts_empty(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    conv = manager.select_agent("A1")
    assert conv.turns == []
    assert conv.thread_id is None
    assert conv.agent_display_name == "Helper"
    assert manager.active_agent_id == "A1"
    assert store.get_last_active_agent_id() == "A1"


def test_display_name_falls_back_to_id(tmp_path: Path):
    manager, _, _ = _manager(tmp_path, FakeTransport())
    assert manager.select_agent("A9").agent_display_name == "A9"


def test_switching_agents_flushes_and_reuses_instance(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    first = manager.select_agent("A1")
    first.append_turn(ConversationTurn(text="unsaved", is_from_user=True))
    assert first.dirty

    manager.select_agent("A2")
    assert not first.dirty
    assert [t.text for t in store.get_conversation("A1").turns] == ["unsaved"]

    again = manager.select_agent("A1")
    assert again is first


def test_send_roundtrip_and_restore(tmp_path: Path):
    manager, _, transport = _manager(tmp_path)
    transport.streams.append([StreamEvent.created("r1"), StreamEvent.delta("Hi there"), StreamEvent.complete("t1")])
    manager.select_agent("A1")
    outcome = manager.send("  Hello  ")
    assert outcome.ok
    assert transport.calls == [("A1", "Hello", None)]

    restored_manager, _, _ = _manager(tmp_path)
    conv = restored_manager.restore(["A1", "A2"])
    assert conv is not None
    assert [t.text for t in conv.turns] == ["Hello", "Hi there"]
    assert conv.thread_id == "t1"
    assert conv.last_response_id == "r1"


def test_restore_ignores_unknown_agent(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    store.set_last_active_agent_id("gone")
    assert manager.restore(["A1"]) is None
    assert manager.active is None


def test_empty_stored_conversation_resets_ids(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    store.save_conversation(Conversation(agent_id="A1", thread_id="stale", last_response_id="r0"))
    conv = manager.select_agent("A1")
    assert conv.thread_id is None
    assert conv.last_response_id is None


def test_send_requires_agent_and_text(tmp_path: Path):
    manager, _, _ = _manager(tmp_path)
    with pytest.raises(ValidationError) as exc:
        manager.send("hi")
    assert exc.value.code == "NO_ACTIVE_AGENT"
    manager.select_agent("A1")
    with pytest.raises(ValidationError) as exc:
        manager.send("   ")
    assert exc.value.code == "EMPTY_MESSAGE"


def test_clear_active_persists_empty_conversation(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    conv = manager.select_agent("A1")
    conv.append_turn(ConversationTurn(text="hi", is_from_user=True))
    conv.set_continuity("t1", "r1")
    manager.clear_active()
    saved = store.get_conversation("A1")
    assert saved.turns == []
    assert saved.thread_id is None and saved.last_response_id is None


def test_delete_active_removes_from_store(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    conv = manager.select_agent("A1")
    conv.append_turn(ConversationTurn(text="hi", is_from_user=True))
    manager.flush_on_suspend()
    manager.delete_active()
    assert manager.active is None
    assert store.get_conversation("A1") is None
    fresh = manager.select_agent("A1")
    assert fresh is not conv
    assert fresh.turns == []


def test_flush_on_suspend(tmp_path: Path):
    manager, store, _ = _manager(tmp_path)
    assert manager.flush_on_suspend() is False
    conv = manager.select_agent("A1")
    assert manager.flush_on_suspend() is False
    conv.append_turn(ConversationTurn(text="hi", is_from_user=True))
    assert manager.flush_on_suspend() is True
    assert len(store.get_conversation("A1").turns) == 1


def test_switch_blocked_when_flush_fails(tmp_path: Path, monkeypatch):
    manager, store, _ = _manager(tmp_path)
    conv = manager.select_agent("A1")
    conv.append_turn(ConversationTurn(text="hi", is_from_user=True))

    def broken_save(_conversation):
        raise StoreError(code="STORE_WRITE_ERROR", message="read-only")

    monkeypatch.setattr(store, "save_conversation", broken_save)
    with pytest.raises(StoreError):
        manager.select_agent("A2")
    assert manager.active is conv
    assert conv.dirty


def test_delete_refused_while_cancelled_exchange_still_running(tmp_path: Path, monkeypatch):
    manager, store, _ = _manager(tmp_path)
    conv = manager.select_agent("A1")
    conv.append_turn(ConversationTurn(text="hi", is_from_user=True))
    manager.flush_on_suspend()

    coordinator = manager._coordinator
    monkeypatch.setattr(coordinator, "cancel", lambda agent_id, reason="user", wait=True: True)
    monkeypatch.setattr(coordinator, "is_in_flight", lambda agent_id: True)

    with pytest.raises(ValidationError) as exc:
        manager.delete_active()
    assert exc.value.code == "EXCHANGE_IN_FLIGHT"
    assert manager.active is conv
    assert [t.text for t in store.get_conversation("A1").turns] == ["hi"]
