"""Typed stream events for one conversation turn.

Providers produce these while parsing CLI output; the stream adapter
applies them to the conversation log and the HTTP layer serializes
them as ``data: {json}`` frames. Metadata (tool use, usage, session
info) always travels as its own frame type, never inside chunk text.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class StreamEvent:
    """Base event. ``event_type`` becomes the ``type`` key on the wire."""
    event_type: str = ""


@dataclass
class TurnStarted(StreamEvent):
    event_type: str = "start"
    status: str = "processing"
    message_id: str = ""
    user_message_id: str | None = None
    model: str | None = None


@dataclass
class ContentChunk(StreamEvent):
    event_type: str = "chunk"
    content: str = ""


@dataclass
class SystemInfo(StreamEvent):
    event_type: str = "system"
    session_id: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass
class ToolUseEvent(StreamEvent):
    event_type: str = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None
    timestamp: str | None = None


@dataclass
class ToolResultEvent(StreamEvent):
    event_type: str = "tool_result"
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False
    timestamp: str | None = None


@dataclass
class ThinkingEvent(StreamEvent):
    event_type: str = "thinking"
    text: str = ""


@dataclass
class UsageEvent(StreamEvent):
    event_type: str = "usage"
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResultEvent(StreamEvent):
    event_type: str = "result"
    result: str | None = None
    session_id: str | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None
    num_turns: int | None = None
    is_error: bool = False


@dataclass
class NoticeEvent(StreamEvent):
    """Informational, never fails the turn (e.g. back-end model switch)."""
    event_type: str = "notice"
    text: str = ""
    kind: str = "info"


@dataclass
class ApprovalRequired(StreamEvent):
    event_type: str = "approval_required"
    message_id: str = ""
    tool_name: str = ""
    tool_use_id: str | None = None
    operation_summary: str = ""
    timeout_seconds: float = 0.0


@dataclass
class ApprovalResolved(StreamEvent):
    event_type: str = "approval_resolved"
    message_id: str = ""
    tool_name: str = ""
    tool_use_id: str | None = None
    approved: bool = False
    reason: str = ""  # "user" or "timeout"


@dataclass
class FileChanged(StreamEvent):
    event_type: str = "file_changed"
    path: str = ""
    tool_name: str = ""
    tool_use_id: str = ""


@dataclass
class TurnComplete(StreamEvent):
    event_type: str = "complete"
    message_id: str = ""
    interrupted: bool = False


@dataclass
class TurnError(StreamEvent):
    event_type: str = "error"
    error: str = ""
    message_id: str | None = None


_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "start": TurnStarted,
    "chunk": ContentChunk,
    "system": SystemInfo,
    "tool_use": ToolUseEvent,
    "tool_result": ToolResultEvent,
    "thinking": ThinkingEvent,
    "usage": UsageEvent,
    "result": ResultEvent,
    "notice": NoticeEvent,
    "approval_required": ApprovalRequired,
    "approval_resolved": ApprovalResolved,
    "file_changed": FileChanged,
    "complete": TurnComplete,
    "error": TurnError,
}


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["type"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> StreamEvent:
    """Convert a wire frame dict back to a typed event dataclass."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, StreamEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "type" in data and "event_type" not in filtered:
        filtered["event_type"] = data["type"]
    return cls(**filtered)


def encode_frame(event: StreamEvent) -> bytes:
    """Serialize *event* as one ``text/event-stream`` data frame."""
    payload = json.dumps(event_to_dict(event), ensure_ascii=False)
    return f"data: {payload}\n\n".encode("utf-8")


def decode_frame(line: str) -> StreamEvent | None:
    """Parse one ``data: {...}`` line; ``None`` for comments/blank lines."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload:
        return None
    data = json.loads(payload)
    if not isinstance(data, dict):
        return None
    return dict_to_event(data)
