"""Line-level parsing of agent CLI output.

``LineBuffer`` reassembles newline-delimited records from arbitrary
byte chunks. ``parse_gemini_line`` turns one Gemini ``stream-json``
record into typed stream events. Malformed records are logged and
skipped once the stream has opened with a valid record; a stream
that opens with garbage is a failed handshake (see ``GeminiProvider``).
"""
from __future__ import annotations

import codecs
import json
import logging
import uuid
from typing import Any

from agentdeck.adapters.events import (
    ContentChunk,
    NoticeEvent,
    ResultEvent,
    StreamEvent,
    SystemInfo,
    ToolResultEvent,
    ToolUseEvent,
    TurnError,
    UsageEvent,
)

logger = logging.getLogger(__name__)

# Informational lines Gemini prints when it falls back to another model.
MODEL_SWITCH_MARKERS = (
    "slow response times",
    "generating with gemini-flash",
    "switching to",
)

GEMINI_TOOL_MAP = {
    "run_shell_command": "Bash",
    "read_file": "Read",
    "read_many_files": "Read",
    "write_file": "Write",
    "edit_file": "Edit",
    "replace": "Edit",
    "list_directory": "Glob",
    "glob": "Glob",
    "search_file_content": "Grep",
    "search_files": "Grep",
    "web_search": "WebSearch",
    "google_web_search": "WebSearch",
    "web_fetch": "WebFetch",
}


class LineBuffer:
    """Split a byte stream into complete text lines.

    Partial lines (and partial UTF-8 sequences) are held until the rest
    arrives, so records that straddle read boundaries are never lost.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        self._pending += self._decoder.decode(data)
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> list[str]:
        """Return whatever is left once the stream hits EOF."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        rest = rest.rstrip("\r")
        return [rest] if rest.strip() else []


def is_model_switch_notice(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in MODEL_SWITCH_MARKERS)


def is_stream_record(line: str) -> bool:
    """True when *line* is a typed ``stream-json`` record."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return False
    try:
        record = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return False
    return isinstance(record, dict) and bool(record.get("type"))


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def parse_gemini_line(line: str) -> list[StreamEvent]:
    """Parse a single line from ``gemini --output-format stream-json``.

    Gemini stream-json event types:
      init: session id and model
      message: text content (role=user or assistant)
      tool_use: tool call started
      tool_result: tool call completed
      error: warning or fatal error
      result: final status and stats
    """
    stripped = line.strip()
    if not stripped:
        return []

    if not stripped.startswith("{"):
        if is_model_switch_notice(stripped):
            return [NoticeEvent(text=stripped, kind="model_switch")]
        # Credential banners and similar chatter.
        logger.debug("gemini non-JSON line suppressed: %s", stripped[:120])
        return []

    try:
        event = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        logger.warning("Skipping malformed gemini record: %s", stripped[:200])
        return []
    if not isinstance(event, dict):
        return []

    etype = event.get("type", "")

    if etype == "init":
        return [SystemInfo(
            session_id=event.get("session_id"),
            model=event.get("model"),
        )]

    if etype == "message":
        if event.get("role") != "assistant":
            return []
        text = event.get("content", "")
        return [ContentChunk(content=text)] if text else []

    if etype == "tool_use":
        raw_name = str(event.get("tool_name", ""))
        return [ToolUseEvent(
            id=str(event.get("tool_id") or uuid.uuid4()),
            name=GEMINI_TOOL_MAP.get(raw_name, raw_name),
            input=event.get("parameters") or {},
        )]

    if etype == "tool_result":
        tool_id = event.get("tool_id", "")
        if not tool_id:
            return []
        is_error = event.get("status", "") != "success"
        output = event.get("output")
        if is_error and not output:
            error = event.get("error") or {}
            output = error.get("message") if isinstance(error, dict) else error
        return [ToolResultEvent(
            tool_use_id=str(tool_id),
            content=_stringify(output),
            is_error=is_error,
        )]

    if etype == "error":
        message = str(event.get("message", "") or "")
        if event.get("severity") == "warning" or is_model_switch_notice(message):
            return [NoticeEvent(text=message, kind="warning")]
        return [TurnError(error=message or "Gemini reported an error")]

    if etype == "result":
        stats = event.get("stats") or {}
        events: list[StreamEvent] = []
        if stats:
            events.append(UsageEvent(usage=dict(stats)))
        failed = event.get("status") not in (None, "success")
        error_detail = ""
        if failed:
            error = event.get("error") or {}
            error_detail = (
                error.get("message", "") if isinstance(error, dict) else str(error)
            )
        events.append(ResultEvent(
            result=error_detail or None,
            duration_ms=stats.get("duration_ms"),
            num_turns=stats.get("tool_calls"),
            is_error=failed,
        ))
        if failed:
            events.append(TurnError(error=error_detail or "Gemini turn failed"))
        return events

    return []
