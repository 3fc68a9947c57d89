"""Streaming protocol adapter.

Turns the provider events of one turn into wire frames while keeping
the assistant message in the conversation log up to date:

- an empty placeholder is written when the turn starts,
- partial state is re-written every few chunks, or once the persist
  interval has passed since the last write (even while the stream is
  idle, e.g. waiting on an approval),
- the final message (with metadata) is written on completion,
- whatever arrived is written when the turn is aborted or fails.

Each event is applied to the message before its frame is yielded, so
an aborted turn persists exactly the content the client was handed.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator

from agentdeck.adapters.events import (
    ApprovalResolved,
    ContentChunk,
    FileChanged,
    NoticeEvent,
    ResultEvent,
    StreamEvent,
    SystemInfo,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
    TurnComplete,
    TurnError,
    TurnStarted,
    UsageEvent,
)
from agentdeck.shared.models.message import (
    ConversationMessage,
    MessageRole,
    ToolResult,
    ToolUse,
    system_notice,
    utcnow_iso,
)

if TYPE_CHECKING:
    from agentdeck.shared.services.agent_store import AgentStore
    from agentdeck.shared.services.conversation_store import ConversationStore

    from .config import EngineConfig
    from .process_manager import ProcessManager, TurnHandle

logger = logging.getLogger(__name__)

_PATH_KEYS = ("file_path", "notebook_path", "path")


@dataclass
class TurnState:
    """Assistant message under construction."""
    message_id: str
    backend: str
    model: str
    timestamp: str = field(default_factory=utcnow_iso)
    parts: list[str] = field(default_factory=list)
    session_id: str | None = None
    cli_model: str | None = None
    tools: list[str] = field(default_factory=list)
    tool_uses: list[ToolUse] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    denied_tool_use_ids: set[str] = field(default_factory=set)
    chunk_count: int = 0

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def tool_use(self, tool_use_id: str) -> ToolUse | None:
        for tool_use in self.tool_uses:
            if tool_use.id == tool_use_id:
                return tool_use
        return None

    def metadata(self, **extra: Any) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "backend": self.backend,
            "model": self.cli_model or self.model,
            "session_id": self.session_id,
            "tools": self.tools or None,
            "usage": self.usage,
            "tool_uses": [t.to_dict() for t in self.tool_uses] or None,
            "tool_results": [r.to_dict() for r in self.tool_results] or None,
            "thinking": "\n".join(self.thinking) if self.thinking else None,
            "result": self.result,
            "notices": list(self.notices) or None,
        }
        meta.update(extra)
        return {k: v for k, v in meta.items() if v is not None}

    def to_message(self, **extra: Any) -> ConversationMessage:
        return ConversationMessage(
            role=MessageRole.ASSISTANT,
            content=self.content,
            id=self.message_id,
            timestamp=self.timestamp,
            metadata=self.metadata(**extra),
        )


@dataclass
class TurnOutcome:
    """Result of a turn run without streaming."""
    message: ConversationMessage
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class StreamAdapter:
    """Drives one turn from provider events to frames and persistence."""

    def __init__(
        self,
        config: EngineConfig,
        manager: ProcessManager,
        conversations: ConversationStore,
        agents: AgentStore,
    ) -> None:
        self._config = config
        self._manager = manager
        self._conversations = conversations
        self._agents = agents

    async def stream(self, handle: TurnHandle) -> AsyncIterator[StreamEvent]:
        """Yield the frames of *handle*'s turn.

        Closing the iterator early (client went away) counts as an
        abort: the partial message is persisted and the agent released.
        """
        state = TurnState(
            message_id=handle.assistant_message_id,
            backend=handle.provider.name,
            model=handle.model,
        )
        finished = False
        failed = False
        interval = self._config.persist_interval_seconds
        last_persist = time.monotonic()
        pending_chunks = 0
        dirty = False
        try:
            self._persist(handle, state, streaming=True)
            yield TurnStarted(
                message_id=state.message_id,
                user_message_id=handle.user_message.id,
                model=handle.model,
            )

            while True:
                if dirty:
                    # Idle stream: flush once the interval runs out.
                    remaining = interval - (time.monotonic() - last_persist)
                    try:
                        event = await asyncio.wait_for(
                            handle.next_event(), timeout=max(remaining, 0.0),
                        )
                    except asyncio.TimeoutError:
                        self._persist(handle, state, streaming=True)
                        dirty, pending_chunks = False, 0
                        last_persist = time.monotonic()
                        continue
                else:
                    event = await handle.next_event()
                if event is None:
                    break

                if isinstance(event, TurnError):
                    failed = True
                    self._fail(handle, state, event.error)
                    finished = True
                    yield TurnError(error=event.error, message_id=state.message_id)
                    return

                extra = self._apply(handle, state, event)
                dirty = True
                if isinstance(event, ContentChunk):
                    pending_chunks += 1
                now = time.monotonic()
                if (
                    pending_chunks >= self._config.persist_every_chunks
                    or now - last_persist >= interval
                ):
                    self._persist(handle, state, streaming=True)
                    dirty, pending_chunks = False, 0
                    last_persist = now
                yield event
                for frame in extra:
                    yield frame

            if handle.interrupted:
                return

            self._persist(handle, state, success=True, streaming=False)
            finished = True
            logger.info(
                "Turn complete agent=%s message=%s chunks=%d tools=%d",
                handle.agent_id[:8], state.message_id[:16],
                state.chunk_count, len(state.tool_uses),
            )
            yield TurnComplete(message_id=state.message_id)
        finally:
            if not finished:
                self._abort(handle, state)
            self._release(handle, state, failed=failed)

    async def run(self, handle: TurnHandle) -> TurnOutcome:
        """Drive the turn to its end and return the final message."""
        error: str | None = None
        async for event in self.stream(handle):
            if isinstance(event, TurnError):
                error = event.error
        message = self._conversations.get(
            handle.workspace_id, handle.agent_id, handle.assistant_message_id,
        )
        if message is None:
            message = ConversationMessage(
                role=MessageRole.ASSISTANT, id=handle.assistant_message_id,
            )
        return TurnOutcome(message=message, error=error)

    # ── Event application ──

    def _apply(
        self, handle: TurnHandle, state: TurnState, event: StreamEvent,
    ) -> list[StreamEvent]:
        """Fold *event* into *state*; return side-channel frames to emit after it."""
        if isinstance(event, ContentChunk):
            state.parts.append(event.content)
            state.chunk_count += 1
        elif isinstance(event, SystemInfo):
            if event.session_id:
                self._record_session(handle, state, event.session_id)
            if event.model:
                state.cli_model = event.model
            if event.tools:
                state.tools = list(event.tools)
        elif isinstance(event, ToolUseEvent):
            state.tool_uses.append(ToolUse(
                id=event.id,
                name=event.name,
                input=event.input,
                timestamp=event.timestamp or utcnow_iso(),
            ))
        elif isinstance(event, ToolResultEvent):
            state.tool_results.append(ToolResult(
                tool_use_id=event.tool_use_id,
                content=event.content,
                is_error=event.is_error,
                timestamp=event.timestamp or utcnow_iso(),
            ))
            changed = self._file_change(state, event)
            if changed is not None:
                return [changed]
        elif isinstance(event, ThinkingEvent):
            if event.text:
                state.thinking.append(event.text)
        elif isinstance(event, UsageEvent):
            state.usage = dict(event.usage)
        elif isinstance(event, ResultEvent):
            if event.session_id:
                self._record_session(handle, state, event.session_id)
            state.result = {
                k: v for k, v in (
                    ("result", event.result),
                    ("duration_ms", event.duration_ms),
                    ("cost_usd", event.cost_usd),
                    ("num_turns", event.num_turns),
                    ("is_error", event.is_error),
                ) if v is not None
            }
        elif isinstance(event, NoticeEvent):
            logger.info("Turn notice agent=%s: %s", handle.agent_id[:8], event.text)
            state.notices.append(event.text)
        elif isinstance(event, ApprovalResolved):
            if not event.approved and event.tool_use_id:
                state.denied_tool_use_ids.add(event.tool_use_id)
        return []

    def _file_change(self, state: TurnState, event: ToolResultEvent) -> FileChanged | None:
        if event.is_error or event.tool_use_id in state.denied_tool_use_ids:
            return None
        tool_use = state.tool_use(event.tool_use_id)
        if tool_use is None or not self._config.is_file_mutating_tool(tool_use.name):
            return None
        data = tool_use.input if isinstance(tool_use.input, dict) else {}
        path = next((str(data[k]) for k in _PATH_KEYS if data.get(k)), "")
        return FileChanged(path=path, tool_name=tool_use.name, tool_use_id=tool_use.id)

    def _record_session(self, handle: TurnHandle, state: TurnState, session_id: str) -> None:
        state.session_id = session_id
        handle.session.session_id = session_id
        handle.session.resume_session_id = None

    # ── Persistence ──

    def _persist(self, handle: TurnHandle, state: TurnState, **extra: Any) -> None:
        self._conversations.upsert(
            handle.workspace_id, handle.agent_id, state.to_message(**extra),
        )

    def _fail(self, handle: TurnHandle, state: TurnState, error: str) -> None:
        logger.warning(
            "Turn failed agent=%s message=%s: %s",
            handle.agent_id[:8], state.message_id[:16], error[:300],
        )
        self._persist(handle, state, success=False, error=error, streaming=False)
        self._conversations.append(
            handle.workspace_id,
            handle.agent_id,
            system_notice(f"Error: {error}", error=True, message_id=state.message_id),
        )
        if handle.resumed:
            # The CLI may no longer know the session; start fresh next turn.
            handle.session.clear_session_ids()
            self._agents.clear_session(handle.workspace_id, handle.agent_id)

    def _abort(self, handle: TurnHandle, state: TurnState) -> None:
        logger.info(
            "Turn aborted agent=%s message=%s after %d chunks",
            handle.agent_id[:8], state.message_id[:16], state.chunk_count,
        )
        try:
            self._persist(
                handle, state, success=False, interrupted=True, streaming=False,
            )
        except OSError:
            logger.exception(
                "Could not persist partial message %s", state.message_id[:16],
            )

    def _release(self, handle: TurnHandle, state: TurnState, *, failed: bool) -> None:
        self._manager.finish_turn(handle)
        try:
            self._agents.mark_idle(
                handle.workspace_id,
                handle.agent_id,
                session_id=None if failed else state.session_id,
                failed=failed,
            )
        except OSError:
            logger.exception("Could not update state for agent %s", handle.agent_id[:8])
