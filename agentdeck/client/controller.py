"""Terminal client controller.

Owns the per-agent tab state on the client side: loads history, echoes
user input optimistically, runs one streamed turn at a time per agent,
rebuilds messages from stream frames, and drives approvals, checkpoints
and session resumption through the REST API.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp

from agentdeck.adapters.events import (
    ApprovalRequired,
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
    utcnow_iso,
)

from .api import AgentDeckClient, AgentDeckClientError
from .registry import AgentTabState, CommandChannel, SessionRegistry

logger = logging.getLogger(__name__)

HISTORY_TIMEOUT = 15.0

ApprovalHandler = Callable[[AgentTabState, dict[str, Any]], Awaitable[None]]
FileChangeHandler = Callable[[AgentTabState, FileChanged], None]


@dataclass
class TurnResult:
    status: str  # "completed", "error", "aborted" or "rejected"
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class TerminalClientController:
    def __init__(
        self,
        client: AgentDeckClient,
        workspace_id: str,
        *,
        registry: SessionRegistry | None = None,
        commands: CommandChannel | None = None,
        default_model: str | None = None,
        history_timeout: float = HISTORY_TIMEOUT,
    ) -> None:
        self._client = client
        self._workspace_id = workspace_id
        self.registry = registry or SessionRegistry()
        self.commands = commands or CommandChannel()
        self._default_model = default_model
        self._history_timeout = history_timeout
        self._aborts: dict[str, asyncio.Event] = {}
        self._approval_handler: ApprovalHandler | None = None
        self._approval_tasks: set[asyncio.Task[None]] = set()
        self._file_change_handlers: list[FileChangeHandler] = []

    @property
    def workspace_id(self) -> str:
        return self._workspace_id

    def on_approval_required(self, handler: ApprovalHandler | None) -> None:
        self._approval_handler = handler

    def on_file_changed(self, handler: FileChangeHandler) -> None:
        self._file_change_handlers.append(handler)

    # ── Tabs ──

    async def open_agent(self, agent: dict[str, Any], *, resume: bool = True) -> AgentTabState:
        """Open (or refocus) the tab for *agent* and sync it with the server."""
        agent_id = agent["id"]
        refocus = agent_id in self.registry
        tab = self.registry.open(
            self._workspace_id,
            agent_id,
            name=agent.get("name") or "",
            model=agent.get("preferred_model") or self._default_model,
        )
        self.commands.open(agent_id)
        if refocus and tab.history_loaded and tab.session_resumed:
            return tab
        await self.load_history(agent_id)
        if resume and not tab.is_processing:
            await self.resume_session(agent_id)
        return tab

    def close_agent(self, agent_id: str) -> None:
        abort = self._aborts.get(agent_id)
        if abort is not None:
            abort.set()
        self.commands.close(agent_id)
        self.registry.close(agent_id)

    async def load_history(self, agent_id: str) -> AgentTabState:
        """Fetch the agent's log; a slow server never leaves the tab loading."""
        tab = self.registry.require(agent_id)
        try:
            data = await asyncio.wait_for(
                self._client.get_conversation(self._workspace_id, agent_id),
                timeout=self._history_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "History load for agent %s timed out after %.0fs; showing what we have",
                agent_id[:8], self._history_timeout,
            )
            tab.last_notice = "Conversation history is taking too long to load."
        except AgentDeckClientError as exc:
            logger.warning("History load failed for agent %s: %s", agent_id[:8], exc)
            tab.last_error = exc.message
        except aiohttp.ClientError as exc:
            logger.warning("History load failed for agent %s: %s", agent_id[:8], exc)
            tab.last_error = str(exc)
        else:
            if not self.is_streaming(agent_id):
                tab.messages = [
                    ConversationMessage.from_dict(m) for m in data.get("messages") or []
                ]
                tab.command_history = [
                    m.content for m in tab.messages if m.role == MessageRole.USER
                ]
                tab.history_index = -1
                tab.is_processing = bool(data.get("is_processing"))
        tab.history_loaded = True
        self.registry.notify(agent_id)
        if tab.is_processing and not self.is_streaming(agent_id):
            await self._sync_pending_approval(agent_id)
        return tab

    async def _sync_pending_approval(self, agent_id: str) -> None:
        """Pick up an approval a turn started elsewhere is waiting on."""
        try:
            pending = await self._client.pending_approval(self._workspace_id, agent_id)
        except (AgentDeckClientError, aiohttp.ClientError) as exc:
            logger.info("Pending approval check failed for agent %s: %s", agent_id[:8], exc)
            return
        if pending:
            self.apply_event(agent_id, ApprovalRequired(
                message_id=pending.get("messageId") or "",
                tool_name=pending.get("toolName") or "",
                tool_use_id=pending.get("toolUseId"),
                operation_summary=pending.get("operationSummary") or "",
            ))

    def is_streaming(self, agent_id: str) -> bool:
        abort = self._aborts.get(agent_id)
        return abort is not None and not abort.is_set()

    # ── Turns ──

    async def send(self, agent_id: str, text: str, *, model: str | None = None) -> TurnResult:
        """Stream one turn for *agent_id*.

        Refused while another turn of the same agent is running; the
        user has to abort it first.
        """
        tab = self.registry.require(agent_id)
        text = text.strip()
        if not text:
            return TurnResult("rejected", error="Message is empty")
        if tab.is_processing:
            tab.last_notice = "A command is already running. Press Ctrl+C to stop it first."
            self.registry.notify(agent_id)
            return TurnResult("rejected", error="turn in progress")

        echo = ConversationMessage(role=MessageRole.USER, content=text)
        tab.messages.append(echo)
        tab.command_history.append(text)
        tab.history_index = -1
        tab.is_processing = True
        tab.awaiting_first_token = True
        tab.last_error = None
        tab.last_notice = None
        abort = asyncio.Event()
        self._aborts[agent_id] = abort
        self.registry.notify(agent_id)

        result = TurnResult("completed")
        try:
            async for event in self._client.stream_turn(
                self._workspace_id,
                agent_id,
                text,
                model=model or tab.model,
                message_id=echo.id,
                timestamp=echo.timestamp,
            ):
                if abort.is_set():
                    break
                self.apply_event(agent_id, event)
                if isinstance(event, TurnStarted):
                    result.message_id = event.message_id
                elif isinstance(event, TurnError):
                    result = TurnResult("error", result.message_id, event.error)
            if abort.is_set():
                result = TurnResult("aborted", result.message_id)
        except AgentDeckClientError as exc:
            # The server refused the turn, so the echo was never saved.
            tab.messages = [m for m in tab.messages if m.id != echo.id]
            tab.last_error = exc.message
            result = TurnResult("rejected", error=exc.message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if abort.is_set():
                result = TurnResult("aborted", result.message_id)
            else:
                logger.warning("Stream for agent %s ended early: %s", agent_id[:8], exc)
                tab.last_error = f"Connection lost: {exc}"
                result = TurnResult("error", result.message_id, str(exc))
        finally:
            self._aborts.pop(agent_id, None)
            tab.is_processing = False
            tab.awaiting_first_token = False
            tab.streaming_message_id = None
            tab.pending_approval = None
            self.registry.notify(agent_id)
        if result.status == "aborted":
            logger.info("Turn aborted by user agent=%s", agent_id[:8])
        return result

    async def abort(self, agent_id: str) -> bool:
        """Stop the agent's in-flight turn. Never reported as an error."""
        abort = self._aborts.get(agent_id)
        if abort is None:
            return False
        abort.set()
        try:
            await self._client.interrupt(self._workspace_id, agent_id)
        except (AgentDeckClientError, aiohttp.ClientError) as exc:
            logger.info("Interrupt request for agent %s failed: %s", agent_id[:8], exc)
        return True

    def apply_event(self, agent_id: str, event: StreamEvent) -> None:
        """Fold one stream frame into the agent's tab."""
        tab = self.registry.require(agent_id)
        if isinstance(event, TurnStarted):
            tab.streaming_message_id = event.message_id
            if tab.find_message(event.message_id) is None:
                tab.messages.append(ConversationMessage(
                    role=MessageRole.ASSISTANT,
                    id=event.message_id,
                    metadata={"model": event.model, "streaming": True},
                ))
        elif isinstance(event, ApprovalRequired):
            tab.pending_approval = {
                "messageId": event.message_id,
                "toolName": event.tool_name,
                "toolUseId": event.tool_use_id,
                "operationSummary": event.operation_summary,
                "timeoutSeconds": event.timeout_seconds,
            }
            if self._approval_handler is not None:
                task = asyncio.create_task(
                    self._approval_handler(tab, dict(tab.pending_approval)),
                )
                self._approval_tasks.add(task)
                task.add_done_callback(self._approval_task_done)
        elif isinstance(event, ApprovalResolved):
            pending = tab.pending_approval
            if pending and pending.get("toolName") == event.tool_name:
                tab.pending_approval = None
            if event.reason == "timeout":
                tab.last_notice = f"Approval for {event.tool_name} timed out; denied."
        elif isinstance(event, FileChanged):
            for handler in self._file_change_handlers:
                try:
                    handler(tab, event)
                except Exception:
                    logger.exception("File change handler failed")
        elif isinstance(event, NoticeEvent):
            tab.last_notice = event.text
        elif isinstance(event, TurnError):
            tab.last_error = event.error
            failed = self._streaming_message(tab, create=False)
            if failed is not None:
                failed.metadata = {
                    **(failed.metadata or {}), "streaming": False, "error": event.error,
                }
            tab.messages.append(ConversationMessage(
                role=MessageRole.SYSTEM,
                content=f"Error: {event.error}",
                metadata={"error": True, "message_id": event.message_id},
            ))
        else:
            if isinstance(event, ContentChunk):
                tab.awaiting_first_token = False
            message = self._streaming_message(tab)
            if message is not None:
                _merge_into(message, event)
        self.registry.notify(agent_id)

    def _approval_task_done(self, task: asyncio.Task[None]) -> None:
        self._approval_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Approval handler failed", exc_info=exc)

    def _streaming_message(
        self, tab: AgentTabState, *, create: bool = True,
    ) -> ConversationMessage | None:
        if tab.streaming_message_id:
            message = tab.find_message(tab.streaming_message_id)
            if message is not None:
                return message
        if not create:
            return None
        message = ConversationMessage(role=MessageRole.ASSISTANT, metadata={"streaming": True})
        tab.messages.append(message)
        tab.streaming_message_id = message.id
        return message

    # ── Approvals ──

    async def resolve_approval(
        self, agent_id: str, approved: bool, *, remember: bool = False,
    ) -> bool:
        tab = self.registry.require(agent_id)
        pending = tab.pending_approval
        if pending is None:
            return False
        try:
            await self._client.resolve_approval(
                self._workspace_id,
                agent_id,
                pending["messageId"],
                pending["toolName"],
                approved,
                remember=remember,
            )
        except AgentDeckClientError as exc:
            if exc.status != 409:
                raise
            # Already resolved elsewhere or timed out.
            logger.info("Approval for agent %s no longer pending: %s", agent_id[:8], exc.message)
            return False
        finally:
            if tab.pending_approval is pending:
                tab.pending_approval = None
            self.registry.notify(agent_id)
        return True

    # ── Checkpoints ──

    async def save_checkpoint(
        self,
        agent_id: str,
        name: str,
        description: str = "",
        *,
        tags: list[str] | None = None,
    ) -> str:
        tab = self.registry.require(agent_id)
        payload: dict[str, Any] = {
            "name": name,
            "description": description,
            "messages": [m.to_dict() for m in tab.messages],
            "agentName": tab.name,
            "selectedModel": tab.model,
            "tags": list(tags or []),
        }
        checkpoint_id = await self._client.save_checkpoint(self._workspace_id, agent_id, payload)
        tab.last_notice = f'Checkpoint "{name}" saved ({len(tab.messages)} messages)'
        self.registry.notify(agent_id)
        return checkpoint_id

    async def restore_checkpoint(self, agent_id: str, checkpoint_id: str) -> dict[str, Any]:
        tab = self.registry.require(agent_id)
        if tab.is_processing:
            raise RuntimeError("Cannot restore a checkpoint while a command is running")
        data = await self._client.restore_checkpoint(self._workspace_id, agent_id, checkpoint_id)
        tab.messages = [ConversationMessage.from_dict(m) for m in data.get("messages") or []]
        tab.model = data.get("selectedModel") or tab.model
        tab.command_history = list(data.get("commandHistory") or [])
        tab.history_index = -1
        checkpoint = data.get("checkpoint") or {}
        tab.last_notice = f'Checkpoint "{checkpoint.get("name", checkpoint_id)}" restored'
        self.registry.notify(agent_id)
        return checkpoint

    async def list_checkpoints(self, agent_id: str) -> list[dict[str, Any]]:
        return await self._client.list_checkpoints(self._workspace_id, agent_id)

    async def search_checkpoints(self, agent_id: str, query: str) -> list[dict[str, Any]]:
        return await self._client.search_checkpoints(self._workspace_id, agent_id, query)

    async def show_checkpoint(self, agent_id: str, checkpoint_id: str) -> dict[str, Any]:
        return await self._client.load_checkpoint(self._workspace_id, agent_id, checkpoint_id)

    async def rate_checkpoint(self, agent_id: str, checkpoint_id: str, rating: int) -> None:
        if not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        await self._client.rate_checkpoint(self._workspace_id, agent_id, checkpoint_id, rating)

    async def delete_checkpoint(self, agent_id: str, checkpoint_id: str) -> None:
        await self._client.delete_checkpoint(self._workspace_id, agent_id, checkpoint_id)

    # ── Agents ──

    async def rename_agent(self, agent_id: str, title: str) -> dict[str, Any]:
        agent = await self._client.update_agent(self._workspace_id, agent_id, title=title)
        self.registry.update(agent_id, last_notice=f"Renamed to {title}")
        return agent

    async def delete_agent(self, agent_id: str) -> None:
        """Stop any running turn, close the tab and remove the agent."""
        if agent_id in self.registry:
            await self.abort(agent_id)
            self.close_agent(agent_id)
        await self._client.delete_agent(self._workspace_id, agent_id)

    # ── Sessions ──

    async def resume_session(self, agent_id: str) -> bool:
        """Ask the server to resume the agent's CLI session.

        Failure only means the next turn starts fresh; it is logged,
        never shown as an error.
        """
        tab = self.registry.require(agent_id)
        try:
            data = await self._client.restore_session(
                self._workspace_id, agent_id, model=tab.model,
            )
        except (AgentDeckClientError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.info("Session resume unavailable for agent %s: %s", agent_id[:8], exc)
            return False
        if not data.get("restored"):
            logger.info(
                "Session not resumed for agent %s: %s", agent_id[:8], data.get("reason"),
            )
            return False
        tab.session_resumed = True
        # The server logged a resume notice; pick it up.
        await self.load_history(agent_id)
        return True

    # ── Command history ──

    def history_prev(self, agent_id: str) -> str | None:
        tab = self.registry.require(agent_id)
        if not tab.command_history:
            return None
        if tab.history_index == -1:
            tab.history_index = len(tab.command_history) - 1
        elif tab.history_index > 0:
            tab.history_index -= 1
        return tab.command_history[tab.history_index]

    def history_next(self, agent_id: str) -> str | None:
        tab = self.registry.require(agent_id)
        if tab.history_index == -1:
            return None
        if tab.history_index < len(tab.command_history) - 1:
            tab.history_index += 1
            return tab.command_history[tab.history_index]
        tab.history_index = -1
        return ""

    # ── Injected commands ──

    async def inject(self, agent_id: str, text: str, *, autosend: bool = True) -> bool:
        return await self.commands.send(agent_id, text, autosend=autosend)

    async def run_injected(self, agent_id: str) -> None:
        """Execute commands addressed to *agent_id* until its tab closes."""
        async for command in self.commands.consume(agent_id):
            if agent_id not in self.registry:
                break
            if command.autosend:
                await self.send(agent_id, command.text)
            else:
                self.registry.update(agent_id, draft=command.text)


def _merge_into(message: ConversationMessage, event: StreamEvent) -> None:
    meta = message.metadata if message.metadata is not None else {}
    message.metadata = meta
    if isinstance(event, ContentChunk):
        message.content += event.content
    elif isinstance(event, SystemInfo):
        if event.session_id:
            meta["session_id"] = event.session_id
        if event.model:
            meta["model"] = event.model
        if event.tools:
            meta["tools"] = list(event.tools)
    elif isinstance(event, ToolUseEvent):
        meta.setdefault("tool_uses", []).append(ToolUse(
            id=event.id, name=event.name, input=event.input,
            timestamp=event.timestamp or utcnow_iso(),
        ).to_dict())
    elif isinstance(event, ToolResultEvent):
        meta.setdefault("tool_results", []).append(ToolResult(
            tool_use_id=event.tool_use_id, content=event.content,
            is_error=event.is_error, timestamp=event.timestamp or utcnow_iso(),
        ).to_dict())
    elif isinstance(event, ThinkingEvent):
        if event.text:
            previous = meta.get("thinking")
            meta["thinking"] = f"{previous}\n{event.text}" if previous else event.text
    elif isinstance(event, UsageEvent):
        meta["usage"] = dict(event.usage)
    elif isinstance(event, ResultEvent):
        if event.session_id:
            meta["session_id"] = event.session_id
        meta["result"] = {
            k: v for k, v in (
                ("result", event.result),
                ("duration_ms", event.duration_ms),
                ("cost_usd", event.cost_usd),
                ("num_turns", event.num_turns),
                ("is_error", event.is_error),
            ) if v is not None
        }
    elif isinstance(event, TurnComplete):
        meta["streaming"] = False
        meta["success"] = True
