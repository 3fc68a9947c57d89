"""Claude Agent SDK provider.

Wraps claude_agent_sdk.query() for one conversation turn. Tool
permission requests arrive through ``can_use_tool`` and are answered by
the approval callback, so the CLI genuinely waits for the user.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import Any, AsyncIterator

from agentdeck.adapters.events import (
    ContentChunk,
    ResultEvent,
    StreamEvent,
    SystemInfo,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
    TurnError,
    UsageEvent,
)
from agentdeck.shared.models.message import ToolUse

from ..errors import ProcessFailureError
from .base import ApprovalCallback, Provider, TurnRequest, allow_all

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth: Works with OAuth (Claude Max plan) by default. If
    api_key_env is set and the env var exists, the SDK will use it.
    """

    def __init__(
        self,
        command: str = "claude",
        api_key_env: str | None = None,
        default_model: str | None = None,
        history_window: int | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(history_window, turn_timeout_seconds)
        self._command = self.resolve_command(command, "claude")
        self._explicit_command = command not in ("", "claude")
        self._api_key_env = api_key_env
        self._default_model = default_model

    @property
    def name(self) -> str:
        return "claude"

    @property
    def gates_tool_execution(self) -> bool:
        return True

    def _build_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env["ANTHROPIC_API_KEY"] = key
        return env

    async def run_turn(
        self,
        request: TurnRequest,
        *,
        approve: ApprovalCallback = allow_all,
    ) -> AsyncIterator[StreamEvent]:
        """Run one Claude turn via the SDK."""
        from claude_agent_sdk import ClaudeAgentOptions, query
        from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

        # Tool uses seen in the stream but not yet matched to a
        # permission request.
        announced: list[ToolUse] = []
        stderr_lines: list[str] = []

        def _capture_stderr(line: str) -> None:
            stderr_lines.append(line)
            logger.debug("claude stderr: %s", line.rstrip())

        async def _can_use_tool(tool_name: str, tool_input: dict, context: Any):
            tool_use = _claim_tool_use(announced, tool_name, tool_input, context)
            if await approve(tool_use):
                return PermissionResultAllow()
            return PermissionResultDeny(
                message=f"User denied permission to use {tool_name}",
            )

        options_kwargs: dict[str, Any] = dict(
            system_prompt=request.system_prompt or "",
            allowed_tools=list(request.allowed_tools),
            permission_mode="default",
            cwd=request.cwd,
            can_use_tool=_can_use_tool,
            stderr=_capture_stderr,
            include_partial_messages=True,
        )
        model = request.model_id or self._default_model
        if model:
            options_kwargs["model"] = model
        if request.resume_session_id:
            options_kwargs["resume"] = request.resume_session_id
        if self._explicit_command:
            resolved_cli = shutil.which(self._command)
            if resolved_cli:
                options_kwargs["cli_path"] = resolved_cli
            else:
                logger.warning(
                    "Configured Claude CLI not found: %s; falling back to SDK default",
                    self._command,
                )
        env = self._build_env()
        if env:
            options_kwargs["env"] = env
        options = ClaudeAgentOptions(**options_kwargs)

        # can_use_tool needs streaming mode, so the prompt goes in as an
        # async iterable rather than a string.
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": request.prompt},
            }

        logger.info(
            "claude turn start model=%s resume=%s cwd=%s",
            model or "<cli-default>",
            (request.resume_session_id or "-")[:8],
            request.cwd,
        )
        mapper = _MessageMapper(announced)
        try:
            async for message in query(prompt=_prompt_stream(), options=options):
                for event in mapper.map(message):
                    yield event
        except Exception as exc:
            detail = "".join(stderr_lines[-20:]).strip()
            logger.exception("claude turn failed: %s", exc)
            raise ProcessFailureError(
                self.name, f"{exc}\n{detail}" if detail else str(exc),
            ) from exc

    async def probe_session(self, session_id: str, *, cwd: str) -> bool:
        """True if the CLI still has a transcript for *session_id*."""
        if not session_id or not _SESSION_ID_RE.match(session_id):
            return False
        config_dir = os.environ.get("CLAUDE_CONFIG_DIR")
        base = Path(config_dir) if config_dir else Path.home() / ".claude"
        projects = base / "projects"
        if not projects.is_dir():
            return False
        return any(projects.glob(f"*/{session_id}.jsonl"))

    def is_available(self) -> bool:
        """Check if claude CLI is installed."""
        return shutil.which(self._command) is not None


def _claim_tool_use(
    announced: list[ToolUse],
    tool_name: str,
    tool_input: dict,
    context: Any,
) -> ToolUse:
    tool_use_id = getattr(context, "tool_use_id", None)
    for idx, candidate in enumerate(announced):
        if tool_use_id and candidate.id == tool_use_id:
            return announced.pop(idx)
        if not tool_use_id and candidate.name == tool_name and candidate.input == tool_input:
            return announced.pop(idx)
    return ToolUse(
        id=tool_use_id or f"perm-{uuid.uuid4().hex[:12]}",
        name=tool_name,
        input=tool_input,
    )


class _MessageMapper:
    """Translate SDK messages into stream events.

    With partial messages enabled, text arrives as deltas and again in
    the completed AssistantMessage; the completed copy is dropped when
    deltas were already forwarded.
    """

    def __init__(self, announced: list[ToolUse]) -> None:
        self._announced = announced
        self._streamed_text = False

    def map(self, message: Any) -> list[StreamEvent]:
        if hasattr(message, "result") and hasattr(message, "num_turns"):
            return self._map_result(message)

        if hasattr(message, "subtype") and hasattr(message, "data"):
            if message.subtype != "init":
                return []
            data = message.data or {}
            return [SystemInfo(
                session_id=data.get("session_id"),
                model=data.get("model"),
                tools=list(data.get("tools") or []),
            )]

        event = getattr(message, "event", None)
        if isinstance(event, dict):
            delta = event.get("delta") or {}
            if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
                text = delta.get("text", "")
                if text:
                    self._streamed_text = True
                    return [ContentChunk(content=text)]
            return []

        content = getattr(message, "content", None)
        if not isinstance(content, list):
            return []
        from_assistant = hasattr(message, "model")
        events: list[StreamEvent] = []
        for block in content:
            if hasattr(block, "thinking"):
                events.append(ThinkingEvent(text=str(block.thinking or "")))
            elif hasattr(block, "tool_use_id"):
                events.append(ToolResultEvent(
                    tool_use_id=str(block.tool_use_id),
                    content=_tool_result_text(getattr(block, "content", "")),
                    is_error=bool(getattr(block, "is_error", False)),
                ))
            elif hasattr(block, "name") and hasattr(block, "input"):
                tool_use = ToolUse(
                    id=str(getattr(block, "id", "") or uuid.uuid4().hex[:12]),
                    name=block.name,
                    input=block.input,
                )
                self._announced.append(tool_use)
                events.append(ToolUseEvent(
                    id=tool_use.id,
                    name=tool_use.name,
                    input=tool_use.input,
                    timestamp=tool_use.timestamp,
                ))
            elif hasattr(block, "text") and from_assistant and not self._streamed_text:
                if block.text:
                    events.append(ContentChunk(content=block.text))
        if from_assistant:
            self._streamed_text = False
        return events

    def _map_result(self, message: Any) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        usage = getattr(message, "usage", None)
        if usage:
            events.append(UsageEvent(usage=dict(usage)))
        is_error = bool(getattr(message, "is_error", False))
        events.append(ResultEvent(
            result=getattr(message, "result", None),
            session_id=getattr(message, "session_id", None),
            duration_ms=getattr(message, "duration_ms", None),
            cost_usd=getattr(message, "total_cost_usd", None),
            num_turns=getattr(message, "num_turns", None),
            is_error=is_error,
        ))
        if is_error:
            events.append(TurnError(
                error=getattr(message, "result", None)
                or f"Claude turn ended with {getattr(message, 'subtype', 'error')}",
            ))
        return events


def _tool_result_text(payload: Any) -> str:
    """Best-effort plain text from a structured tool result."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, list):
        chunks = [_tool_result_text(item) for item in payload]
        return "\n".join(c for c in chunks if c)
    if isinstance(payload, dict):
        for key in ("text", "content", "output"):
            value = payload.get(key)
            if isinstance(value, (str, list, dict)):
                return _tool_result_text(value)
    return str(payload)
