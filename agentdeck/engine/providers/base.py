"""Abstract base for model back-ends.

Each provider wraps one agent CLI (Claude Code via the Claude Agent
SDK, the Gemini CLI). The process manager calls run_turn() once per
user turn and consumes the typed stream events it yields.
"""
from __future__ import annotations

import abc
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import AsyncIterator

from agentdeck.adapters.events import StreamEvent
from agentdeck.shared.models.message import ToolUse

logger = logging.getLogger(__name__)

# Asked before a tool runs (or, for back-ends that cannot pause, right
# after it is announced). Returns True when the tool may proceed.
ApprovalCallback = Callable[[ToolUse], Awaitable[bool]]


@dataclass
class TurnRequest:
    """Everything a provider needs to run one turn."""
    prompt: str
    cwd: str
    system_prompt: str | None = None
    model_id: str | None = None
    resume_session_id: str | None = None
    allowed_tools: list[str] = field(default_factory=list)


async def allow_all(tool_use: ToolUse) -> bool:
    return True


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific agent runtime:
    - ClaudeProvider: Claude Agent SDK (query() with can_use_tool)
    - GeminiProvider: Gemini CLI (--output-format stream-json)
    """

    # Conversation messages replayed into a fresh (non-resumed) prompt.
    default_history_window: int = 10
    # Max silence between events before the turn is failed.
    default_turn_timeout: float = 300.0

    def __init__(
        self,
        history_window: int | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        self.history_window = (
            history_window if history_window is not None
            else self.default_history_window
        )
        self.turn_timeout_seconds = (
            turn_timeout_seconds if turn_timeout_seconds is not None
            else self.default_turn_timeout
        )

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'gemini')."""

    @property
    def gates_tool_execution(self) -> bool:
        """Whether the CLI waits for the approval callback before a tool runs.

        Back-ends that cannot pause mid-turn only learn the decision
        through the workspace allow-list on their next turn.
        """
        return False

    @abc.abstractmethod
    async def run_turn(
        self,
        request: TurnRequest,
        *,
        approve: ApprovalCallback = allow_all,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn, yielding stream events as the CLI emits them.

        Failures (missing binary, non-zero exit) raise
        ProcessFailureError; errors the CLI reports in its own output
        are yielded as TurnError events.
        """
        yield  # pragma: no cover

    @abc.abstractmethod
    async def probe_session(self, session_id: str, *, cwd: str) -> bool:
        """Cheap check whether the CLI can still resume *session_id*."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's CLI is installed."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s",
                    command, fallback,
                )
                return fallback
            return command
        return fallback or command

    async def shutdown(self) -> None:
        """Clean up resources. Default no-op."""
        return None
