"""Tests for turn streaming, persistence cadence and abort handling."""
from __future__ import annotations

import asyncio

import pytest

from agentdeck.adapters.events import (
    ApprovalRequired,
    ApprovalResolved,
    ContentChunk,
    FileChanged,
    ResultEvent,
    SystemInfo,
    ToolResultEvent,
    ToolUseEvent,
    TurnComplete,
    TurnError,
    TurnStarted,
)
from agentdeck.adapters.permission_store import PermissionStore
from agentdeck.engine.errors import ProcessFailureError
from agentdeck.shared.models.agent import AgentStatus
from agentdeck.shared.models.message import MessageRole, ToolUse

from conftest import WORKSPACE, Approve, WaitFor


def _write_tool_steps():
    tool = ToolUse(id="tu-1", name="Write", input={"file_path": "src/a.py", "content": "x"})
    return [
        ToolUseEvent(id=tool.id, name=tool.name, input=tool.input),
        Approve(tool),
        ToolResultEvent(tool_use_id=tool.id, content="written"),
    ]


@pytest.mark.asyncio
async def test_turn_streams_and_persists_final_message(engine, agent, provider):
    provider.scripts.append([
        SystemInfo(session_id="sess-1", model="claude-sonnet"),
        ContentChunk(content="Here "),
        ContentChunk(content="are "),
        ContentChunk(content="the files"),
        ResultEvent(result="ok", session_id="sess-1", duration_ms=40),
    ])

    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "list files")
    frames = [f async for f in engine.adapter.stream(handle)]

    assert isinstance(frames[0], TurnStarted)
    assert frames[0].message_id == handle.assistant_message_id
    assert isinstance(frames[-1], TurnComplete)
    chunks = [f.content for f in frames if isinstance(f, ContentChunk)]
    assert "".join(chunks) == "Here are the files"

    log = engine.conversations.read(WORKSPACE, agent.id)
    assert [m.role for m in log] == [MessageRole.USER, MessageRole.ASSISTANT]
    assistant = log[1]
    assert assistant.content == "Here are the files"
    assert assistant.metadata["result"]["result"] == "ok"
    assert assistant.metadata["streaming"] is False
    assert assistant.metadata["success"] is True
    assert assistant.session_id == "sess-1"

    state = engine.agents.load_state(WORKSPACE, agent.id)
    assert state.status is AgentStatus.IDLE
    assert state.last_session_id == "sess-1"
    assert state.interaction_count == 1
    assert engine.manager.is_processing(WORKSPACE, agent.id) is False


@pytest.mark.asyncio
async def test_placeholder_and_chunk_cadence(engine, agent, provider):
    gate = asyncio.Event()
    provider.scripts.append([
        ContentChunk(content="a"),
        ContentChunk(content="b"),
        ContentChunk(content="c"),
        WaitFor(gate),
    ])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "go")
    msg_id = handle.assistant_message_id
    seen = []

    async for frame in engine.adapter.stream(handle):
        if isinstance(frame, TurnStarted):
            placeholder = engine.conversations.get(WORKSPACE, agent.id, msg_id)
            assert placeholder.content == ""
            assert placeholder.metadata["streaming"] is True
        elif isinstance(frame, ContentChunk):
            seen.append(frame.content)
            persisted = engine.conversations.get(WORKSPACE, agent.id, msg_id).content
            if len(seen) == 2:
                assert persisted == "ab"
            elif len(seen) == 3:
                assert persisted == "ab"
                gate.set()

    assert engine.conversations.get(WORKSPACE, agent.id, msg_id).content == "abc"


@pytest.mark.asyncio
async def test_client_disconnect_keeps_exactly_the_delivered_chunks(engine, agent, provider):
    provider.scripts.append([
        ContentChunk(content="one "),
        ContentChunk(content="two "),
        ContentChunk(content="three"),
        WaitFor(asyncio.Event()),
        ContentChunk(content=" never sent"),
    ])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "count")
    frames = engine.adapter.stream(handle)
    delivered = []
    async for frame in frames:
        if isinstance(frame, ContentChunk):
            delivered.append(frame.content)
            if len(delivered) == 3:
                break
    await frames.aclose()
    await asyncio.gather(handle.task, return_exceptions=True)

    message = engine.conversations.get(WORKSPACE, agent.id, handle.assistant_message_id)
    assert message.content == "".join(delivered) == "one two three"
    assert message.metadata["interrupted"] is True
    assert message.metadata["streaming"] is False
    assert engine.manager.is_processing(WORKSPACE, agent.id) is False
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_interrupt_stops_frames_and_keeps_partial(engine, agent, provider):
    provider.scripts.append([
        ContentChunk(content="partial "),
        ContentChunk(content="answer"),
        WaitFor(asyncio.Event()),
    ])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "explain")
    frames = []
    async for frame in engine.adapter.stream(handle):
        frames.append(frame)
        if isinstance(frame, ContentChunk) and frame.content == "answer":
            assert engine.manager.interrupt_turn(WORKSPACE, agent.id) is True

    assert not any(isinstance(f, (TurnComplete, TurnError)) for f in frames)
    message = engine.conversations.get(WORKSPACE, agent.id, handle.assistant_message_id)
    assert message.content == "partial answer"
    assert message.metadata["interrupted"] is True
    assert engine.manager.interrupt_turn(WORKSPACE, agent.id) is False


@pytest.mark.asyncio
async def test_process_failure_ends_turn_with_error_frame_and_notice(engine, agent, provider):
    provider.scripts.append([
        ContentChunk(content="start of "),
        ProcessFailureError("claude", "exit status 1", 1),
    ])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "do it")
    frames = [f async for f in engine.adapter.stream(handle)]

    error = frames[-1]
    assert isinstance(error, TurnError)
    assert error.message_id == handle.assistant_message_id
    assert "exit status 1" in error.error

    log = engine.conversations.read(WORKSPACE, agent.id)
    assert [m.role for m in log] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.SYSTEM]
    assert log[1].content == "start of "
    assert log[1].metadata["success"] is False
    assert log[2].content.startswith("Error: ")
    assert log[2].metadata["error"] is True
    assert engine.agents.load_state(WORKSPACE, agent.id).status is AgentStatus.ERROR


@pytest.mark.asyncio
async def test_denied_write_emits_no_file_change(engine, agent, provider):
    provider.scripts.append(_write_tool_steps())
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "edit a.py")
    frames = []
    async for frame in engine.adapter.stream(handle):
        frames.append(frame)
        if isinstance(frame, ApprovalRequired):
            pending = engine.manager.pending_approval(WORKSPACE, agent.id)
            assert pending.tool_name == "Write"
            assert frame.timeout_seconds == engine.config.approval_timeout_seconds
            assert frame.operation_summary == "Write: src/a.py"
            engine.manager.resolve_approval(
                WORKSPACE, agent.id, frame.message_id, frame.tool_name, False,
            )

    resolved = [f for f in frames if isinstance(f, ApprovalResolved)]
    assert len(resolved) == 1 and resolved[0].approved is False
    assert not any(isinstance(f, FileChanged) for f in frames)
    assert provider.decisions == [False]
    assert engine.manager.pending_approval(WORKSPACE, agent.id) is None


@pytest.mark.asyncio
async def test_approved_write_emits_file_change_and_remembers(engine, agent, provider):
    provider.scripts.append(_write_tool_steps())
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "edit a.py")
    frames = []
    async for frame in engine.adapter.stream(handle):
        frames.append(frame)
        if isinstance(frame, ApprovalRequired):
            engine.manager.resolve_approval(
                WORKSPACE, agent.id, frame.message_id, frame.tool_name, True, remember=True,
            )

    changes = [f for f in frames if isinstance(f, FileChanged)]
    assert [(c.path, c.tool_name) for c in changes] == [("src/a.py", "Write")]
    assert provider.decisions == [True]
    permissions = PermissionStore(engine.layout.workspace_dir(WORKSPACE))
    assert permissions.is_allowed("Write")

    message = engine.conversations.get(WORKSPACE, agent.id, handle.assistant_message_id)
    assert message.metadata["tool_uses"][0]["name"] == "Write"
    assert message.metadata["tool_results"][0]["tool_use_id"] == "tu-1"


@pytest.mark.asyncio
async def test_safe_tools_skip_the_gate(engine, agent, provider):
    read = ToolUse(id="tu-r", name="Read", input={"file_path": "a.py"})
    provider.scripts.append([ToolUseEvent(id="tu-r", name="Read"), Approve(read)])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "read it")
    frames = [f async for f in engine.adapter.stream(handle)]
    assert not any(isinstance(f, ApprovalRequired) for f in frames)
    assert provider.decisions == [True]


@pytest.mark.asyncio
async def test_run_returns_final_message(engine, agent, provider):
    provider.scripts.append([ContentChunk(content="done")])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "finish")
    outcome = await engine.adapter.run(handle)
    assert outcome.success is True
    assert outcome.message.content == "done"
    assert outcome.message.id == handle.assistant_message_id


@pytest.mark.asyncio
async def test_interval_flush_while_waiting_on_approval(engine, agent, provider):
    engine.config.persist_every_chunks = 50
    engine.config.persist_interval_seconds = 0.2
    provider.scripts.append([ContentChunk(content="hello"), *_write_tool_steps()])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "edit a.py")
    msg_id = handle.assistant_message_id

    async def consume():
        return [f async for f in engine.adapter.stream(handle)]

    consumer = asyncio.ensure_future(consume())
    for _ in range(200):
        if engine.manager.pending_approval(WORKSPACE, agent.id) is not None:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.6)

    persisted = engine.conversations.get(WORKSPACE, agent.id, msg_id)
    assert persisted.content == "hello"
    assert persisted.metadata["streaming"] is True
    assert persisted.metadata["tool_uses"][0]["name"] == "Write"

    pending = engine.manager.pending_approval(WORKSPACE, agent.id)
    engine.manager.resolve_approval(
        WORKSPACE, agent.id, pending.message_id, pending.tool_name, True,
    )
    frames = await asyncio.wait_for(consumer, timeout=5.0)
    assert isinstance(frames[-1], TurnComplete)
    assert engine.conversations.get(WORKSPACE, agent.id, msg_id).metadata["streaming"] is False


@pytest.mark.asyncio
async def test_tool_events_count_toward_the_interval(engine, agent, provider):
    engine.config.persist_every_chunks = 50
    engine.config.persist_interval_seconds = 0.0
    gate = asyncio.Event()
    provider.scripts.append([
        ToolUseEvent(id="tu-r", name="Read", input={"file_path": "a.py"}),
        WaitFor(gate),
    ])
    handle = engine.manager.start_turn(WORKSPACE, agent.id, None, "read it")

    async for frame in engine.adapter.stream(handle):
        if isinstance(frame, ToolUseEvent):
            message = engine.conversations.get(WORKSPACE, agent.id, handle.assistant_message_id)
            assert message.metadata["tool_uses"][0]["id"] == "tu-r"
            gate.set()
