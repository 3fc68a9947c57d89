"""Tests for CLI session resumption."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agentdeck.adapters.events import ContentChunk, TurnError
from agentdeck.shared.models.message import ConversationMessage, MessageRole

from conftest import WORKSPACE


def _seed(engine, agent_id, session_id="sess-1"):
    engine.conversations.append(WORKSPACE, agent_id, ConversationMessage(
        role=MessageRole.USER, content="earlier question",
    ))
    engine.conversations.append(WORKSPACE, agent_id, ConversationMessage(
        role=MessageRole.ASSISTANT, content="earlier answer",
        metadata={"session_id": session_id},
    ))
    engine.agents.mark_idle(WORKSPACE, agent_id, session_id=session_id)


@pytest.mark.asyncio
async def test_resume_hands_session_to_next_turn(engine, agent, provider):
    _seed(engine, agent.id)
    provider.resumable.add("sess-1")
    provider.scripts.append([ContentChunk(content="continuing")])

    outcome = await engine.resumer.resume(WORKSPACE, agent.id)
    assert outcome.restored is True
    assert outcome.to_dict() == {"restored": True, "reason": "resumed", "sessionId": "sess-1"}

    log = engine.conversations.read(WORKSPACE, agent.id)
    assert log[-1].role == MessageRole.SYSTEM
    assert log[-1].metadata["session_resumed"] is True

    await engine.adapter.run(engine.manager.start_turn(WORKSPACE, agent.id, None, "next"))
    assert provider.requests[0].resume_session_id == "sess-1"
    assert provider.requests[0].prompt == "next"


@pytest.mark.asyncio
async def test_nothing_to_resume(engine, agent):
    outcome = await engine.resumer.resume(WORKSPACE, agent.id)
    assert outcome.restored is False
    assert outcome.reason == "no session recorded"


@pytest.mark.asyncio
async def test_unknown_session_clears_state(engine, agent):
    _seed(engine, agent.id)
    outcome = await engine.resumer.resume(WORKSPACE, agent.id)
    assert outcome.restored is False
    assert outcome.reason == "session unknown to CLI"
    assert engine.agents.load_state(WORKSPACE, agent.id).last_session_id is None


@pytest.mark.asyncio
async def test_only_latest_session_is_honoured(engine, agent, provider):
    _seed(engine, agent.id)
    provider.resumable.update({"sess-0", "sess-1"})
    outcome = await engine.resumer.resume(WORKSPACE, agent.id, session_id="sess-0")
    assert outcome.restored is False
    assert outcome.reason == "session id is not the latest"


@pytest.mark.asyncio
async def test_expired_session_is_not_resumed(engine, agent, provider):
    _seed(engine, agent.id)
    provider.resumable.add("sess-1")
    state = engine.agents.load_state(WORKSPACE, agent.id)
    old = datetime.now(timezone.utc) - timedelta(hours=engine.config.session_max_age_hours + 1)
    state.last_session_time = old.isoformat().replace("+00:00", "Z")
    engine.agents.save_state(WORKSPACE, state)

    outcome = await engine.resumer.resume(WORKSPACE, agent.id)
    assert outcome.restored is False
    assert outcome.reason == "session expired"


@pytest.mark.asyncio
async def test_engine_errors_are_reported_instead_of_raised(engine, agent):
    _seed(engine, agent.id)
    outcome = await engine.resumer.resume(WORKSPACE, agent.id, model="not-installed")
    assert outcome.restored is False
    assert outcome.reason.startswith("error:")


@pytest.mark.asyncio
async def test_failed_resumed_turn_starts_fresh_next_time(engine, agent, provider):
    _seed(engine, agent.id)
    provider.resumable.add("sess-1")
    provider.scripts.append([TurnError(error="No conversation found with session ID sess-1")])
    provider.scripts.append([ContentChunk(content="fresh")])

    assert (await engine.resumer.resume(WORKSPACE, agent.id)).restored
    outcome = await engine.adapter.run(engine.manager.start_turn(WORKSPACE, agent.id, None, "go"))
    assert outcome.success is False

    session = engine.manager.get_session(WORKSPACE, agent.id)
    assert session.session_id is None and session.resume_session_id is None
    assert engine.agents.load_state(WORKSPACE, agent.id).last_session_id is None

    await engine.adapter.run(engine.manager.start_turn(WORKSPACE, agent.id, None, "retry"))
    assert provider.requests[1].resume_session_id is None
    assert provider.requests[1].prompt.startswith("CONVERSATION HISTORY:")


@pytest.mark.asyncio
async def test_repeated_resume_logs_a_single_notice(engine, agent, provider):
    _seed(engine, agent.id)
    provider.resumable.add("sess-1")

    first = await engine.resumer.resume(WORKSPACE, agent.id)
    second = await engine.resumer.resume(WORKSPACE, agent.id)

    assert first.restored and second.restored
    assert second.reason == "already resumed"
    notices = [
        m for m in engine.conversations.read(WORKSPACE, agent.id)
        if (m.metadata or {}).get("session_resumed")
    ]
    assert len(notices) == 1
