"""Tests for checkpoint save / restore / search."""
from __future__ import annotations

import pytest

from agentdeck.engine.errors import (
    CheckpointNotFoundError,
    InvalidMessageError,
    TurnInProgressError,
)
from agentdeck.shared.models.message import ConversationMessage, MessageRole
from agentdeck.shared.services.checkpoint_store import CheckpointStore

from conftest import WORKSPACE


def _conversation(n: int) -> list[ConversationMessage]:
    messages = []
    for i in range(n):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        meta = {"session_id": f"sess-{i}", "model": "claude"} if role == MessageRole.ASSISTANT else None
        messages.append(ConversationMessage(role=role, content=f"message {i}", metadata=meta))
    return messages


def test_save_then_restore_round_trips_messages(engine, agent):
    original = _conversation(6)
    checkpoint_id = engine.checkpoints.save(
        WORKSPACE, agent.id, "Snapshot", messages=original, selected_model="claude",
    )

    other = engine.create_agent(WORKSPACE, "Other")
    result = engine.checkpoints.restore(WORKSPACE, other.id, checkpoint_id)

    restored = result.messages[:-1]
    assert [m.to_dict() for m in restored] == [m.to_dict() for m in original]
    assert result.messages[-1].role == MessageRole.SYSTEM
    assert result.messages[-1].metadata["checkpoint_restored"] is True
    assert [m.to_dict() for m in engine.conversations.read(WORKSPACE, other.id)] == [
        m.to_dict() for m in result.messages
    ]


def test_restore_into_new_agent_adds_notice_and_model(engine, agent):
    for message in _conversation(10):
        engine.conversations.append(WORKSPACE, agent.id, message)
    checkpoint_id = engine.checkpoints.save(
        WORKSPACE, agent.id, "API Expert", "knows the API", selected_model="gemini",
    )

    fresh = engine.create_agent(WORKSPACE, "Fresh")
    result = engine.checkpoints.restore(WORKSPACE, fresh.id, checkpoint_id)

    assert len(engine.conversations.read(WORKSPACE, fresh.id)) == 11
    assert result.to_dict()["selectedModel"] == "gemini"
    assert engine.agents.get_agent(WORKSPACE, fresh.id).preferred_model == "gemini"
    assert result.command_history == [f"message {i}" for i in range(0, 10, 2)]
    assert engine.checkpoints.load(checkpoint_id).usage_count == 1


def test_save_snapshots_live_log_without_touching_it(engine, agent):
    for message in _conversation(3):
        engine.conversations.append(WORKSPACE, agent.id, message)
    checkpoint_id = engine.checkpoints.save(WORKSPACE, agent.id, "live")

    checkpoint = engine.checkpoints.load(checkpoint_id)
    assert checkpoint.message_count == 3
    assert checkpoint.agent_name == "Alpha"
    assert checkpoint.metadata["messageCount"] == 3
    assert checkpoint.metadata["lastSessionId"] == "sess-1"
    assert len(engine.conversations.read(WORKSPACE, agent.id)) == 3


def test_save_requires_a_name(engine, agent):
    with pytest.raises(InvalidMessageError):
        engine.checkpoints.save(WORKSPACE, agent.id, "   ", messages=[])


def test_missing_checkpoint_leaves_live_log_intact(engine, agent):
    for message in _conversation(2):
        engine.conversations.append(WORKSPACE, agent.id, message)
    with pytest.raises(CheckpointNotFoundError):
        engine.checkpoints.restore(WORKSPACE, agent.id, "checkpoint_0_missing")
    with pytest.raises(CheckpointNotFoundError):
        engine.checkpoints.load("../../etc/passwd")
    assert len(engine.conversations.read(WORKSPACE, agent.id)) == 2


def test_restore_refused_while_turn_in_flight(engine, agent):
    checkpoint_id = engine.checkpoints.save(WORKSPACE, agent.id, "x", messages=_conversation(2))
    session = engine.manager._session_for(WORKSPACE, agent.id, "claude")
    session.is_processing = True
    with pytest.raises(TurnInProgressError):
        engine.checkpoints.restore(WORKSPACE, agent.id, checkpoint_id)


def test_search_list_rate_delete(tmp_path, engine, agent):
    a = engine.checkpoints.save(
        WORKSPACE, agent.id, "API Expert", "REST knowledge",
        messages=_conversation(2), tags=["backend"],
    )
    b = engine.checkpoints.save(
        WORKSPACE, agent.id, "UI Helper", "css and layout", messages=_conversation(2),
    )

    assert [e["id"] for e in engine.checkpoints.search("api backend")] == [a]
    assert engine.checkpoints.search("layout")[0]["id"] == b
    assert {e["id"] for e in engine.checkpoints.list(agent.id)} == {a, b}
    assert engine.checkpoints.list("agent-other") == []

    engine.checkpoints.rate(a, 5)
    assert engine.checkpoints.load(a).rating == 5
    with pytest.raises(ValueError):
        engine.checkpoints.rate(a, 9)

    assert engine.checkpoints.delete(b) is True
    assert engine.checkpoints.delete(b) is False
    assert [e["id"] for e in engine.checkpoints.list()] == [a]


def test_store_lists_newest_first(tmp_path):
    from agentdeck.shared.models.checkpoint import Checkpoint

    store = CheckpointStore(tmp_path / "checkpoints")
    store.save(Checkpoint(id="checkpoint_1_a", name="old", created_at="2026-01-01T00:00:00Z"))
    store.save(Checkpoint(id="checkpoint_2_b", name="new", created_at="2026-02-01T00:00:00Z"))
    assert [e["name"] for e in store.list()] == ["new", "old"]
