"""Shared fixtures: a scripted provider and an engine on a temp storage root."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from agentdeck.adapters.events import StreamEvent
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.conversation_engine import ConversationEngine
from agentdeck.engine.providers.base import (
    ApprovalCallback,
    Provider,
    TurnRequest,
    allow_all,
)
from agentdeck.engine.providers.registry import ProviderRegistry
from agentdeck.shared.models.message import ToolUse

WORKSPACE = "ws1"


class Approve:
    """Script step: ask the approval callback about *tool_use*."""

    def __init__(self, tool_use: ToolUse) -> None:
        self.tool_use = tool_use


class WaitFor:
    """Script step: block until *event* is set."""

    def __init__(self, event: asyncio.Event) -> None:
        self.event = event


class ScriptedProvider(Provider):
    """Replays one scripted list of steps per turn.

    A step is a StreamEvent (yielded), an Approve (the decision is
    recorded in ``decisions``), a WaitFor, or an exception (raised).
    """

    def __init__(
        self,
        name: str = "claude",
        scripts: list[list[Any]] | None = None,
        *,
        gates: bool = True,
        resumable: set[str] | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(history_window=4, turn_timeout_seconds=turn_timeout_seconds)
        self._name = name
        self._gates = gates
        self.scripts = list(scripts or [])
        self.requests: list[TurnRequest] = []
        self.decisions: list[bool] = []
        self.resumable = set(resumable or ())
        self.closed = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def gates_tool_execution(self) -> bool:
        return self._gates

    async def run_turn(
        self,
        request: TurnRequest,
        *,
        approve: ApprovalCallback = allow_all,
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        steps = self.scripts.pop(0) if self.scripts else []
        try:
            for step in steps:
                if isinstance(step, Approve):
                    self.decisions.append(await approve(step.tool_use))
                elif isinstance(step, WaitFor):
                    await step.event.wait()
                elif isinstance(step, BaseException):
                    raise step
                else:
                    yield step
        finally:
            self.closed += 1

    async def probe_session(self, session_id: str, *, cwd: str) -> bool:
        return session_id in self.resumable

    def is_available(self) -> bool:
        return True


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        storage_root=str(tmp_path / "storage"),
        approval_timeout_seconds=5.0,
        persist_every_chunks=2,
        persist_interval_seconds=60.0,
    )


@pytest.fixture
def engine(engine_config, provider) -> ConversationEngine:
    registry = ProviderRegistry()
    registry.register(provider.name, provider)
    deck = ConversationEngine(engine_config, registry)
    deck.init_workspace(WORKSPACE, name="Test Workspace")
    return deck


@pytest.fixture
def agent(engine):
    return engine.create_agent(WORKSPACE, "Alpha")
