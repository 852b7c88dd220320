from pathlib import Path

import pytest

from agent_chat.api.service import ChatService
from agent_chat.domain.exceptions import ApiError, NetworkError
from agent_chat.domain.models import AgentInfo, MessageResponse
from agent_chat.infrastructure.storage.json_store import JsonConversationStore


class SettingsStub:
    streaming_enabled = False
    exchange_timeout_seconds = 5.0
    cancel_ack_timeout = 2.0


class FakeTransport:
    def __init__(self):
        self.agents = ["A1", "A2"]
        self.created = []
        self.types_error = None

    def list_agents(self):
        return list(self.agents)

    def list_agent_types(self):
        if self.types_error:
            raise self.types_error
        return ["Default", "Coder"]

    def get_agent(self, agent_id):
        return AgentInfo(id=agent_id, name=f"Agent {agent_id}")

    def create_agent(self, name, agent_type="Default"):
        self.created.append((name, agent_type))
        self.agents.append("A3")
        return AgentInfo(id="A3", name=name)

    def send_message(self, agent_id, text, attachment=None, thread_id=None):
        return MessageResponse(agent_id=agent_id, thread_id="t1", text=f"echo: {text}")


def _service(root, transport=None):
    return ChatService(transport or FakeTransport(), JsonConversationStore(root=root), cfg=SettingsStub())


def test_start_without_history(tmp_path: Path):
    service = _service(tmp_path)
    assert service.start() is None
    assert service.agent_ids == ["A1", "A2"]
    assert service.agent_types == ["Default", "Coder"]


def test_agent_types_failure_is_tolerated(tmp_path: Path):
    transport = FakeTransport()
    transport.types_error = NetworkError(code="NETWORK_ERROR", message="offline")
    service = _service(tmp_path, transport)
    service.start()
    assert service.agent_types == []


def test_agent_list_failure_propagates(tmp_path: Path):
    transport = FakeTransport()

    def broken():
        raise ApiError(code="API_ERROR", message="down", http_status=502)

    transport.list_agents = broken
    with pytest.raises(ApiError):
        _service(tmp_path, transport).start()


def test_send_and_restore_across_restart(tmp_path: Path):
    service = _service(tmp_path)
    service.start()
    conv = service.select_agent("A2")
    assert conv.agent_display_name == "Agent A2"
    outcome = service.send("ping")
    assert outcome.ok
    service.close()

    again = _service(tmp_path)
    restored = again.start()
    assert restored.agent_id == "A2"
    assert [t.text for t in restored.turns] == ["ping", "echo: ping"]
    assert [c.agent_id for c in again.list_conversations()] == ["A2"]


def test_create_agent_uses_first_type(tmp_path: Path):
    transport = FakeTransport()
    service = _service(tmp_path, transport)
    service.start()
    info = service.create_agent("Helper")
    assert transport.created == [("Helper", "Default")]
    assert info.id == "A3"
    assert "A3" in service.agent_ids


def test_clear_and_delete(tmp_path: Path):
    service = _service(tmp_path)
    service.start()
    service.select_agent("A1")
    service.send("hello")
    cleared = service.clear_conversation()
    assert cleared.turns == []
    service.delete_conversation()
    assert service.sessions.active is None
    assert service.list_conversations() == []
    assert service.suspend() is False
