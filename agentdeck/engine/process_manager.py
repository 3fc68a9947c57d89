"""Agent process manager: one CLI turn at a time per (workspace, agent).

Owns the in-memory AgentSession for every agent that has been talked
to since the server started, starts turns against the selected
provider, and routes tool approvals through the agent's ApprovalGate.

A turn runs in a background pump task that drains the provider's
event iterator into ``TurnHandle.events``. The stream adapter is the
only consumer of that queue.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentdeck.adapters.events import (
    ApprovalRequired,
    ApprovalResolved,
    StreamEvent,
    TurnError,
)
from agentdeck.adapters.permission_store import PermissionStore
from agentdeck.shared.models.message import (
    ConversationMessage,
    MessageRole,
    ToolUse,
    gen_message_id,
    utcnow_iso,
)

from .approval_gate import ApprovalDecision, ApprovalGate, GateState, PendingToolApproval
from .errors import (
    ApprovalNotPendingError,
    InvalidMessageError,
    ProcessFailureError,
    TurnInProgressError,
)
from .providers.base import Provider, TurnRequest
from .workspace_context import (
    build_system_prompt,
    build_turn_prompt,
    load_workspace_context,
)

if TYPE_CHECKING:
    from agentdeck.shared.services.agent_store import AgentStore
    from agentdeck.shared.services.conversation_store import ConversationStore
    from agentdeck.shared.services.workspace_paths import StorageLayout

    from .config import EngineConfig
    from .providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

_WATCHDOG_TICK = 1.0


@dataclass
class AgentSession:
    """Runtime state for one agent. Never persisted."""
    workspace_id: str
    agent_id: str
    model: str
    gate: ApprovalGate
    # CLI session id reported by the most recent turn.
    session_id: str | None = None
    # Session id restored from the log, used by the next turn only.
    resume_session_id: str | None = None
    is_processing: bool = False
    current_turn: TurnHandle | None = None
    last_activity: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str]:
        return (self.workspace_id, self.agent_id)

    def clear_session_ids(self) -> None:
        self.session_id = None
        self.resume_session_id = None


@dataclass
class TurnHandle:
    """Readable side of one in-flight turn."""
    session: AgentSession
    provider: Provider
    user_message: ConversationMessage
    assistant_message_id: str
    resumed: bool = False
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    interrupted: bool = False
    timed_out: bool = False
    finished: bool = False
    last_event_at: float = field(default_factory=time.monotonic)

    @property
    def workspace_id(self) -> str:
        return self.session.workspace_id

    @property
    def agent_id(self) -> str:
        return self.session.agent_id

    @property
    def model(self) -> str:
        return self.session.model

    def touch(self) -> None:
        self.last_event_at = time.monotonic()

    async def next_event(self) -> StreamEvent | None:
        """Next event from the turn, or None once it is over.

        After an interrupt nothing else is handed out, even if the
        provider had already queued more output.
        """
        if self.interrupted:
            return None
        event = await self.events.get()
        if self.interrupted:
            return None
        return event


def operation_summary(tool_use: ToolUse) -> str:
    """Short human-readable description of what a tool call will do."""
    data = tool_use.input if isinstance(tool_use.input, dict) else {}
    for key in ("command", "file_path", "path", "notebook_path", "url"):
        value = data.get(key)
        if value:
            return f"{tool_use.name}: {str(value)[:200]}"
    if tool_use.input in (None, {}, ""):
        return tool_use.name
    try:
        rendered = json.dumps(tool_use.input, ensure_ascii=False)
    except (TypeError, ValueError):
        rendered = str(tool_use.input)
    return f"{tool_use.name}: {rendered[:200]}"


class ProcessManager:
    """Starts, tracks and interrupts agent turns."""

    def __init__(
        self,
        config: EngineConfig,
        layout: StorageLayout,
        agents: AgentStore,
        conversations: ConversationStore,
        providers: ProviderRegistry,
    ) -> None:
        self._config = config
        self._layout = layout
        self._agents = agents
        self._conversations = conversations
        self._providers = providers
        self._sessions: dict[tuple[str, str], AgentSession] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    def get_session(self, workspace_id: str, agent_id: str) -> AgentSession | None:
        return self._sessions.get((workspace_id, agent_id))

    def is_processing(self, workspace_id: str, agent_id: str) -> bool:
        session = self.get_session(workspace_id, agent_id)
        return bool(session and session.is_processing)

    def resolve_model(self, workspace_id: str, agent_id: str, model: str | None) -> str:
        """Requested model, else the agent's preferred one, else the default."""
        if model:
            return model
        agent = self._agents.get_agent(workspace_id, agent_id)
        return agent.preferred_model or self._config.default_model

    def _session_for(self, workspace_id: str, agent_id: str, model: str) -> AgentSession:
        session = self._sessions.get((workspace_id, agent_id))
        if session is None:
            session = AgentSession(
                workspace_id=workspace_id,
                agent_id=agent_id,
                model=model,
                gate=ApprovalGate(agent_id, self._config.approval_timeout_seconds),
            )
            self._sessions[session.key] = session
        elif session.model != model and not session.is_processing:
            # A session id from one back-end means nothing to another.
            logger.info(
                "Agent %s switching model %s -> %s, dropping CLI session",
                agent_id[:8], session.model, model,
            )
            session.model = model
            session.clear_session_ids()
        return session

    # ── Turns ──

    def start_turn(
        self,
        workspace_id: str,
        agent_id: str,
        model: str | None,
        message: str,
        *,
        user_message_id: str | None = None,
        timestamp: str | None = None,
    ) -> TurnHandle:
        """Begin a turn and return its handle.

        Raises TurnInProgressError when the agent already has a turn in
        flight; the caller must interrupt it first.
        """
        if not message or not message.strip():
            raise InvalidMessageError("Message is required")
        workspace_dir = self._layout.require_workspace(workspace_id)
        agent = self._agents.get_agent(workspace_id, agent_id)
        model = model or agent.preferred_model or self._config.default_model
        provider = self._providers.get_or_raise(model)

        session = self._session_for(workspace_id, agent_id, model)
        if session.is_processing:
            logger.warning(
                "Rejecting turn for agent %s: a turn is already in flight",
                agent_id[:8],
            )
            raise TurnInProgressError(agent_id)
        session.is_processing = True

        try:
            history = self._conversations.read(workspace_id, agent_id)
            user_msg = ConversationMessage(
                role=MessageRole.USER,
                content=message,
                id=user_message_id or gen_message_id(),
                timestamp=timestamp or utcnow_iso(),
            )
            if not self._conversations.append_if_absent(workspace_id, agent_id, user_msg):
                logger.debug("User message %s already saved", user_msg.id)
            prior = [m for m in history if m.id != user_msg.id]

            resume_id = session.session_id or session.resume_session_id
            ctx = load_workspace_context(workspace_dir, workspace_id)
            permissions = PermissionStore(workspace_dir)
            request = TurnRequest(
                prompt=build_turn_prompt(
                    prior, message,
                    history_window=provider.history_window,
                    resumed=bool(resume_id),
                ),
                cwd=str(workspace_dir),
                system_prompt=build_system_prompt(ctx, agent_id),
                resume_session_id=resume_id,
                allowed_tools=sorted(permissions.load()),
            )
            self._agents.mark_active(workspace_id, agent_id, message)
        except BaseException:
            session.is_processing = False
            raise

        handle = TurnHandle(
            session=session,
            provider=provider,
            user_message=user_msg,
            assistant_message_id=gen_message_id(),
            resumed=bool(resume_id),
        )
        session.current_turn = handle
        session.last_activity = time.time()
        handle.task = asyncio.create_task(
            self._pump(handle, request),
            name=f"turn-{agent_id[:8]}",
        )
        logger.info(
            "Turn started agent=%s model=%s message=%s resumed=%s",
            agent_id[:8], model, handle.assistant_message_id[:16], handle.resumed,
        )
        return handle

    async def _pump(self, handle: TurnHandle, request: TurnRequest) -> None:
        provider = handle.provider
        watchdog = asyncio.create_task(
            self._watchdog(handle, provider.turn_timeout_seconds),
        )

        async def _approve(tool_use: ToolUse) -> bool:
            return await self._approve(handle, tool_use)

        stream = provider.run_turn(request, approve=_approve)
        try:
            async for event in stream:
                handle.touch()
                handle.events.put_nowait(event)
        except asyncio.CancelledError:
            if not handle.timed_out:
                raise
            logger.warning(
                "Turn timed out agent=%s after %.0fs without output",
                handle.agent_id[:8], provider.turn_timeout_seconds,
            )
            handle.events.put_nowait(TurnError(
                error=(
                    f"{provider.name} produced no output for "
                    f"{provider.turn_timeout_seconds:.0f}s"
                ),
            ))
        except ProcessFailureError as exc:
            logger.warning("Turn failed agent=%s: %s", handle.agent_id[:8], exc)
            handle.events.put_nowait(TurnError(error=str(exc)))
        except Exception as exc:
            logger.exception("Turn pump failed agent=%s", handle.agent_id[:8])
            handle.events.put_nowait(TurnError(error=f"{provider.name} turn failed: {exc}"))
        finally:
            watchdog.cancel()
            await stream.aclose()
            handle.events.put_nowait(None)

    async def _watchdog(self, handle: TurnHandle, timeout: float) -> None:
        """Cancel the pump when the provider stays silent too long.

        Time spent waiting on an approval does not count.
        """
        if not timeout or timeout <= 0:
            return
        tick = min(timeout, _WATCHDOG_TICK)
        while True:
            await asyncio.sleep(tick)
            if handle.session.gate.state is GateState.PENDING:
                handle.touch()
                continue
            if time.monotonic() - handle.last_event_at >= timeout:
                handle.timed_out = True
                if handle.task is not None:
                    handle.task.cancel()
                return

    async def _approve(self, handle: TurnHandle, tool_use: ToolUse) -> bool:
        if not self._config.is_dangerous_tool(tool_use.name):
            return True
        workspace_dir = self._layout.workspace_dir(handle.workspace_id)
        permissions = PermissionStore(workspace_dir)
        if permissions.is_allowed(tool_use.name):
            return True

        gate = handle.session.gate
        pending = PendingToolApproval(
            tool_name=tool_use.name,
            operation_summary=operation_summary(tool_use),
            message_id=handle.assistant_message_id,
            tool_use_id=tool_use.id,
        )

        async def _announce(p: PendingToolApproval) -> None:
            handle.touch()
            handle.events.put_nowait(ApprovalRequired(
                message_id=p.message_id,
                tool_name=p.tool_name,
                tool_use_id=p.tool_use_id,
                operation_summary=p.operation_summary,
                timeout_seconds=gate.timeout_seconds,
            ))

        decision = await gate.request(pending, on_pending=_announce)
        handle.touch()
        if decision is None:
            return False
        handle.events.put_nowait(ApprovalResolved(
            message_id=pending.message_id,
            tool_name=pending.tool_name,
            tool_use_id=pending.tool_use_id,
            approved=decision.approved,
            reason=decision.reason,
        ))
        gated = handle.provider.gates_tool_execution
        if decision.approved and (decision.remember or not gated):
            permissions.add(tool_use.name)
        elif not decision.approved and not gated:
            permissions.remove(tool_use.name)
        return decision.approved

    def finish_turn(self, handle: TurnHandle) -> None:
        """Release the agent for its next turn. Idempotent."""
        if handle.finished:
            return
        handle.finished = True
        session = handle.session
        session.gate.force_clear()
        if session.current_turn is handle:
            session.current_turn = None
            session.is_processing = False
        session.last_activity = time.time()
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()

    def interrupt_turn(self, workspace_id: str, agent_id: str) -> bool:
        """Best-effort cancellation of the agent's in-flight turn.

        Output the provider produced after this call is never handed to
        the consumer. Returns False when there was nothing to interrupt.
        """
        session = self.get_session(workspace_id, agent_id)
        if session is None:
            return False
        return self._interrupt(session)

    def _interrupt(self, session: AgentSession) -> bool:
        handle = session.current_turn
        if handle is None:
            return False
        handle.interrupted = True
        session.gate.force_clear()
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        # Wake a consumer blocked on the queue.
        handle.events.put_nowait(None)
        logger.info("Turn interrupted agent=%s", session.agent_id[:8])
        return True

    # ── Approvals ──

    def pending_approval(self, workspace_id: str, agent_id: str) -> PendingToolApproval | None:
        session = self.get_session(workspace_id, agent_id)
        return session.gate.pending if session else None

    def resolve_approval(
        self,
        workspace_id: str,
        agent_id: str,
        message_id: str,
        tool_name: str,
        approved: bool,
        *,
        remember: bool = False,
    ) -> ApprovalDecision:
        session = self.get_session(workspace_id, agent_id)
        if session is None:
            raise ApprovalNotPendingError(agent_id, message_id, tool_name)
        return session.gate.resolve(message_id, tool_name, approved, remember=remember)

    # ── Sessions ──

    async def probe_resume(
        self, workspace_id: str, agent_id: str, session_id: str, model: str,
    ) -> bool:
        """Ask the back-end whether *session_id* can still be resumed."""
        workspace_dir = self._layout.require_workspace(workspace_id)
        provider = self._providers.get_or_raise(model)
        return await provider.probe_session(session_id, cwd=str(workspace_dir))

    def set_resume(
        self, workspace_id: str, agent_id: str, model: str, session_id: str,
    ) -> AgentSession:
        session = self._session_for(workspace_id, agent_id, model)
        session.resume_session_id = session_id
        return session

    def reset_session(self, workspace_id: str, agent_id: str) -> None:
        """Forget any CLI session so the next turn starts fresh."""
        session = self.get_session(workspace_id, agent_id)
        if session is not None:
            session.clear_session_ids()

    async def terminate(self, workspace_id: str, agent_id: str) -> None:
        """Stop the agent's turn (if any) and drop its session."""
        session = self._sessions.pop((workspace_id, agent_id), None)
        if session is None:
            return
        handle = session.current_turn
        self._interrupt(session)
        if handle is not None and handle.task is not None:
            await asyncio.gather(handle.task, return_exceptions=True)
            self.finish_turn(handle)
        logger.info("Session terminated agent=%s", agent_id[:8])

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        tasks = []
        for session in sessions:
            handle = session.current_turn
            if handle is not None:
                self._interrupt(session)
                if handle.task is not None:
                    tasks.append(handle.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()
        await self._providers.shutdown_all()
        logger.info("Process manager shut down (%d sessions)", len(sessions))
