"""Tests for the terminal client's tab registry, command channels and controller."""
from __future__ import annotations

import asyncio

import pytest

from agentdeck.adapters.events import (
    ApprovalRequired,
    ContentChunk,
    ToolUseEvent,
    TurnComplete,
    TurnError,
    TurnStarted,
)
from agentdeck.client.api import AgentDeckClientError
from agentdeck.client.controller import TerminalClientController
from agentdeck.client.registry import CommandChannel, SessionRegistry
from agentdeck.shared.models.message import MessageRole


class FakeClient:
    """Stands in for AgentDeckClient; each turn replays one script."""

    def __init__(self, turns=(), conversation=None):
        self.turns = list(turns)
        self.conversation = conversation or {"messages": [], "is_processing": False}
        self.conversation_delay = 0.0
        self.stream_calls = []
        self.interrupted = asyncio.Event()
        self.approval_error: AgentDeckClientError | None = None
        self.restore_payload = {}
        self.resumable = False
        self.resume_calls = 0
        self.pending = None
        self.checkpoints = {}
        self.deleted = []

    async def get_conversation(self, workspace_id, agent_id):
        if self.conversation_delay:
            await asyncio.sleep(self.conversation_delay)
        return self.conversation

    async def stream_turn(self, workspace_id, agent_id, message, **kwargs):
        self.stream_calls.append((message, kwargs))
        script = self.turns.pop(0) if self.turns else []
        for step in script:
            if isinstance(step, Exception):
                raise step
            if step == "wait-for-interrupt":
                await self.interrupted.wait()
                continue
            yield step

    async def interrupt(self, workspace_id, agent_id):
        self.interrupted.set()
        return True

    async def resolve_approval(self, workspace_id, agent_id, message_id, tool_name, approved, **kw):
        if self.approval_error is not None:
            raise self.approval_error
        return {"success": True, "approved": approved}

    async def restore_session(self, workspace_id, agent_id, **kwargs):
        self.resume_calls += 1
        if self.resumable:
            return {"restored": True, "reason": "resumed", "sessionId": "sess-1"}
        return {"restored": False, "reason": "no session recorded", "sessionId": None}

    async def pending_approval(self, workspace_id, agent_id):
        return self.pending

    async def restore_checkpoint(self, workspace_id, agent_id, checkpoint_id):
        return self.restore_payload

    async def load_checkpoint(self, workspace_id, agent_id, checkpoint_id):
        return self.checkpoints[checkpoint_id]

    async def rate_checkpoint(self, workspace_id, agent_id, checkpoint_id, rating):
        self.checkpoints[checkpoint_id]["rating"] = rating

    async def delete_checkpoint(self, workspace_id, agent_id, checkpoint_id):
        del self.checkpoints[checkpoint_id]

    async def update_agent(self, workspace_id, agent_id, **changes):
        return {"id": agent_id, **changes}

    async def delete_agent(self, workspace_id, agent_id):
        self.deleted.append(agent_id)
        return {"status": "deleted"}


def _controller(client, **kwargs) -> TerminalClientController:
    return TerminalClientController(client, "ws1", default_model="claude", **kwargs)


# ── SessionRegistry ──


def test_registry_notifies_only_matching_subscribers():
    registry = SessionRegistry()
    seen_a, seen_any = [], []
    registry.open("ws1", "agent-a")
    registry.open("ws1", "agent-b")
    unsubscribe = registry.subscribe("agent-a", lambda tab: seen_a.append(tab.agent_id))
    registry.subscribe_all(lambda tab: seen_any.append(tab.agent_id))

    registry.update("agent-b", draft="hello")
    registry.update("agent-a", draft="hi")
    assert seen_a == ["agent-a"]
    assert seen_any == ["agent-b", "agent-a"]

    unsubscribe()
    registry.update("agent-a", draft="again")
    assert seen_a == ["agent-a"]


def test_registry_rejects_unknown_fields_and_tabs():
    registry = SessionRegistry()
    registry.open("ws1", "agent-a")
    with pytest.raises(AttributeError):
        registry.update("agent-a", bogus=1)
    with pytest.raises(KeyError):
        registry.require("agent-missing")


def test_broken_subscriber_does_not_block_others():
    registry = SessionRegistry()
    registry.open("ws1", "agent-a")
    seen = []

    def broken(tab):
        raise RuntimeError("boom")

    registry.subscribe("agent-a", broken)
    registry.subscribe("agent-a", lambda tab: seen.append(tab.draft))
    registry.update("agent-a", draft="x")
    assert seen == ["x"]


# ── CommandChannel ──


@pytest.mark.asyncio
async def test_commands_reach_only_the_addressed_agent():
    channel = CommandChannel()
    channel.open("agent-a")
    channel.open("agent-b")

    assert await channel.send("agent-a", "/run tests") is True
    assert await channel.send("agent-missing", "lost") is False
    assert channel.pending("agent-a") == 1
    assert channel.pending("agent-b") == 0

    consumer = channel.consume("agent-a")
    command = await consumer.__anext__()
    assert command.text == "/run tests"
    assert command.autosend is True
    await consumer.aclose()

    channel.close("agent-a")
    assert channel.is_open("agent-a") is False
    assert await channel.send("agent-a", "late") is False


# ── Controller ──


@pytest.mark.asyncio
async def test_send_echoes_and_rebuilds_assistant_message():
    client = FakeClient(turns=[[
        TurnStarted(message_id="msg_asst", model="claude"),
        ContentChunk(content="Hello "),
        ToolUseEvent(id="tu-1", name="Read", input={"file_path": "a.py"}),
        ContentChunk(content="world"),
        TurnComplete(message_id="msg_asst"),
    ]])
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a", "name": "Alpha"})

    result = await controller.send("agent-a", "  greet me  ")
    assert result.ok
    assert result.message_id == "msg_asst"

    tab = controller.registry.require("agent-a")
    user, assistant = tab.messages
    assert user.role == MessageRole.USER and user.content == "greet me"
    message, kwargs = client.stream_calls[0]
    assert message == "greet me"
    assert kwargs["message_id"] == user.id
    assert kwargs["model"] == "claude"

    assert assistant.id == "msg_asst"
    assert assistant.content == "Hello world"
    assert assistant.metadata["streaming"] is False
    assert assistant.metadata["tool_uses"][0]["name"] == "Read"
    assert tab.is_processing is False
    assert tab.command_history == ["greet me"]


@pytest.mark.asyncio
async def test_rejected_turn_removes_the_echo():
    client = FakeClient(turns=[[AgentDeckClientError(409, "Agent is busy")]])
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})

    result = await controller.send("agent-a", "hello")
    assert result.status == "rejected"
    tab = controller.registry.require("agent-a")
    assert tab.messages == []
    assert tab.last_error == "Agent is busy"
    assert tab.is_processing is False


@pytest.mark.asyncio
async def test_send_refused_while_processing():
    controller = _controller(FakeClient())
    await controller.open_agent({"id": "agent-a"})
    controller.registry.update("agent-a", is_processing=True)

    result = await controller.send("agent-a", "second")
    assert result.status == "rejected"
    assert "already running" in controller.registry.require("agent-a").last_notice


@pytest.mark.asyncio
async def test_abort_is_not_an_error():
    client = FakeClient(turns=[[
        TurnStarted(message_id="msg_asst"),
        ContentChunk(content="partial"),
        "wait-for-interrupt",
        ContentChunk(content=" more"),
    ]])
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})

    turn = asyncio.ensure_future(controller.send("agent-a", "long task"))
    for _ in range(100):
        if controller.is_streaming("agent-a"):
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)
    assert await controller.abort("agent-a") is True

    result = await turn
    assert result.status == "aborted"
    tab = controller.registry.require("agent-a")
    assert tab.last_error is None
    assert tab.find_message("msg_asst").content == "partial"
    assert await controller.abort("agent-a") is False


@pytest.mark.asyncio
async def test_turn_error_marks_message_and_appends_notice():
    client = FakeClient(turns=[[
        TurnStarted(message_id="msg_asst"),
        ContentChunk(content="half"),
        TurnError(error="exit status 1", message_id="msg_asst"),
    ]])
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})

    result = await controller.send("agent-a", "do it")
    assert result.status == "error"
    tab = controller.registry.require("agent-a")
    assert tab.find_message("msg_asst").metadata["error"] == "exit status 1"
    assert tab.messages[-1].role == MessageRole.SYSTEM
    assert tab.messages[-1].content == "Error: exit status 1"


@pytest.mark.asyncio
async def test_slow_history_still_finishes_loading():
    client = FakeClient()
    client.conversation_delay = 1.0
    controller = _controller(client, history_timeout=0.01)

    tab = await controller.open_agent({"id": "agent-a"}, resume=False)
    assert tab.history_loaded is True
    assert "too long" in tab.last_notice


@pytest.mark.asyncio
async def test_history_loads_messages_and_command_history():
    client = FakeClient(conversation={
        "messages": [
            {"id": "m1", "role": "user", "content": "first"},
            {"id": "m2", "role": "assistant", "content": "ok"},
            {"id": "m3", "role": "user", "content": "second"},
        ],
        "is_processing": False,
    })
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})

    assert controller.history_prev("agent-a") == "second"
    assert controller.history_prev("agent-a") == "first"
    assert controller.history_prev("agent-a") == "first"
    assert controller.history_next("agent-a") == "second"
    assert controller.history_next("agent-a") == ""
    assert controller.history_next("agent-a") is None


@pytest.mark.asyncio
async def test_approval_prompt_and_stale_resolution():
    client = FakeClient()
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})
    prompts = []

    async def on_approval(tab, pending):
        prompts.append(pending["toolName"])

    controller.on_approval_required(on_approval)
    controller.apply_event("agent-a", ApprovalRequired(
        message_id="msg_asst", tool_name="Bash", operation_summary="Bash: ls",
        timeout_seconds=300,
    ))
    await asyncio.sleep(0.01)
    assert prompts == ["Bash"]

    client.approval_error = AgentDeckClientError(409, "No pending approval")
    assert await controller.resolve_approval("agent-a", True) is False
    assert controller.registry.require("agent-a").pending_approval is None
    assert await controller.resolve_approval("agent-a", True) is False


@pytest.mark.asyncio
async def test_restore_checkpoint_replaces_tab_state():
    client = FakeClient()
    client.restore_payload = {
        "checkpoint": {"id": "cp_1", "name": "baseline"},
        "messages": [{"id": "m1", "role": "user", "content": "old question"}],
        "selectedModel": "gemini",
        "commandHistory": ["old question"],
    }
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"})

    checkpoint = await controller.restore_checkpoint("agent-a", "cp_1")
    assert checkpoint["name"] == "baseline"
    tab = controller.registry.require("agent-a")
    assert [m.content for m in tab.messages] == ["old question"]
    assert tab.model == "gemini"
    assert tab.command_history == ["old question"]

    controller.registry.update("agent-a", is_processing=True)
    with pytest.raises(RuntimeError):
        await controller.restore_checkpoint("agent-a", "cp_1")


@pytest.mark.asyncio
async def test_injected_draft_lands_on_addressed_tab():
    controller = _controller(FakeClient())
    await controller.open_agent({"id": "agent-a"}, resume=False)
    await controller.open_agent({"id": "agent-b"}, resume=False)

    assert await controller.inject("agent-b", "/explain", autosend=False)
    runner = asyncio.ensure_future(controller.run_injected("agent-b"))
    for _ in range(100):
        if controller.registry.require("agent-b").draft:
            break
        await asyncio.sleep(0.01)
    assert controller.registry.require("agent-b").draft == "/explain"
    controller.close_agent("agent-b")
    await asyncio.wait_for(runner, timeout=2.0)

    assert controller.registry.get("agent-b") is None
    assert controller.registry.require("agent-a").draft == ""


@pytest.mark.asyncio
async def test_waiting_indicator_clears_on_first_content():
    client = FakeClient(turns=[[
        TurnStarted(message_id="msg_asst"),
        ContentChunk(content="hi"),
        ContentChunk(content=" there"),
        TurnComplete(message_id="msg_asst"),
    ]])
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"}, resume=False)
    seen = []

    def snapshot(tab):
        message = tab.find_message(tab.streaming_message_id) if tab.streaming_message_id else None
        seen.append((tab.awaiting_first_token, message.content if message else ""))

    controller.registry.subscribe("agent-a", snapshot)
    await controller.send("agent-a", "hello")

    assert (True, "") in seen
    assert all(not waiting for waiting, content in seen if content)
    assert controller.registry.require("agent-a").awaiting_first_token is False


@pytest.mark.asyncio
async def test_approval_handler_task_is_kept_and_failures_logged(caplog):
    controller = _controller(FakeClient())
    await controller.open_agent({"id": "agent-a"}, resume=False)
    release = asyncio.Event()

    async def on_approval(tab, pending):
        await release.wait()
        raise RuntimeError("prompt crashed")

    controller.on_approval_required(on_approval)
    controller.apply_event("agent-a", ApprovalRequired(
        message_id="msg_asst", tool_name="Bash", operation_summary="Bash: ls",
    ))
    await asyncio.sleep(0.01)
    assert len(controller._approval_tasks) == 1

    with caplog.at_level("ERROR", logger="agentdeck.client.controller"):
        release.set()
        for _ in range(100):
            if not controller._approval_tasks:
                break
            await asyncio.sleep(0.01)
    assert not controller._approval_tasks
    assert "Approval handler failed" in caplog.text


@pytest.mark.asyncio
async def test_refocus_does_not_resume_twice():
    client = FakeClient()
    client.resumable = True
    controller = _controller(client)

    await controller.open_agent({"id": "agent-a"})
    await controller.open_agent({"id": "agent-a"})
    assert client.resume_calls == 1
    assert controller.registry.require("agent-a").session_resumed is True

    controller.close_agent("agent-a")
    await controller.open_agent({"id": "agent-a"})
    assert client.resume_calls == 2


@pytest.mark.asyncio
async def test_opening_a_busy_agent_picks_up_its_pending_approval():
    client = FakeClient(conversation={"messages": [], "is_processing": True})
    client.pending = {
        "messageId": "msg_asst", "toolName": "Write", "toolUseId": "tu-1",
        "operationSummary": "Write: notes.md",
    }
    controller = _controller(client)
    prompts = []

    async def on_approval(tab, pending):
        prompts.append(pending["operationSummary"])

    controller.on_approval_required(on_approval)
    tab = await controller.open_agent({"id": "agent-a"})
    await asyncio.sleep(0.01)

    assert tab.pending_approval["toolName"] == "Write"
    assert prompts == ["Write: notes.md"]
    assert client.resume_calls == 0


@pytest.mark.asyncio
async def test_checkpoint_show_rate_and_delete():
    client = FakeClient()
    client.checkpoints["cp_1"] = {"id": "cp_1", "name": "baseline", "rating": None}
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"}, resume=False)

    assert (await controller.show_checkpoint("agent-a", "cp_1"))["name"] == "baseline"
    await controller.rate_checkpoint("agent-a", "cp_1", 4)
    assert client.checkpoints["cp_1"]["rating"] == 4
    with pytest.raises(ValueError):
        await controller.rate_checkpoint("agent-a", "cp_1", 9)

    await controller.delete_checkpoint("agent-a", "cp_1")
    assert client.checkpoints == {}


@pytest.mark.asyncio
async def test_rename_and_delete_agent():
    client = FakeClient()
    controller = _controller(client)
    await controller.open_agent({"id": "agent-a"}, resume=False)

    agent = await controller.rename_agent("agent-a", "Reviewer")
    assert agent["title"] == "Reviewer"
    assert controller.registry.require("agent-a").last_notice == "Renamed to Reviewer"

    await controller.delete_agent("agent-a")
    assert client.deleted == ["agent-a"]
    assert controller.registry.get("agent-a") is None
