"""Tests for CLI output line parsing."""
from __future__ import annotations

import json

from agentdeck.adapters.events import (
    ContentChunk,
    NoticeEvent,
    ResultEvent,
    SystemInfo,
    ToolResultEvent,
    ToolUseEvent,
    TurnError,
    UsageEvent,
)
from agentdeck.engine.stream_parser import LineBuffer, parse_gemini_line


def _line(**record) -> str:
    return json.dumps(record)


def test_line_buffer_reassembles_split_records():
    buffer = LineBuffer()
    assert buffer.feed(b'{"type": "mes') == []
    assert buffer.feed(b'sage"}\n{"a"') == ['{"type": "message"}']
    assert buffer.feed(b": 1}\r\n") == ['{"a": 1}']
    assert buffer.flush() == []


def test_line_buffer_keeps_split_utf8_sequences():
    data = "héllo\n".encode("utf-8")
    buffer = LineBuffer()
    split = data.index(b"\xc3") + 1
    assert buffer.feed(data[:split]) == []
    assert buffer.feed(data[split:]) == ["héllo"]


def test_line_buffer_flushes_unterminated_tail():
    buffer = LineBuffer()
    buffer.feed(b"last line without newline")
    assert buffer.flush() == ["last line without newline"]


def test_init_and_assistant_message():
    [info] = parse_gemini_line(_line(type="init", session_id="s-1", model="gemini-2.5-pro"))
    assert isinstance(info, SystemInfo)
    assert info.session_id == "s-1"

    [chunk] = parse_gemini_line(_line(type="message", role="assistant", content="Hi"))
    assert isinstance(chunk, ContentChunk) and chunk.content == "Hi"
    assert parse_gemini_line(_line(type="message", role="user", content="echo")) == []


def test_tool_use_names_are_normalized():
    [event] = parse_gemini_line(_line(
        type="tool_use", tool_name="write_file", tool_id="t1",
        parameters={"file_path": "a.txt"},
    ))
    assert isinstance(event, ToolUseEvent)
    assert event.name == "Write"
    assert event.input == {"file_path": "a.txt"}


def test_tool_result_error_uses_error_message():
    [event] = parse_gemini_line(_line(
        type="tool_result", tool_id="t1", status="error",
        error={"message": "permission denied"},
    ))
    assert isinstance(event, ToolResultEvent)
    assert event.is_error is True
    assert event.content == "permission denied"
    assert parse_gemini_line(_line(type="tool_result", status="success")) == []


def test_model_switch_lines_become_notices():
    [notice] = parse_gemini_line("Slow response times detected. Switching to flash")
    assert isinstance(notice, NoticeEvent)
    [warning] = parse_gemini_line(_line(type="error", severity="warning", message="quota low"))
    assert isinstance(warning, NoticeEvent)


def test_fatal_error_and_failed_result():
    [error] = parse_gemini_line(_line(type="error", message="boom"))
    assert isinstance(error, TurnError) and error.error == "boom"

    events = parse_gemini_line(_line(
        type="result", status="error", error={"message": "quota"},
        stats={"duration_ms": 10},
    ))
    assert [type(e) for e in events] == [UsageEvent, ResultEvent, TurnError]
    assert events[1].is_error is True
    assert events[2].error == "quota"


def test_successful_result():
    events = parse_gemini_line(_line(
        type="result", status="success", stats={"duration_ms": 42, "tool_calls": 2},
    ))
    assert [type(e) for e in events] == [UsageEvent, ResultEvent]
    assert events[1].duration_ms == 42
    assert events[1].num_turns == 2


def test_noise_and_malformed_records_are_skipped():
    assert parse_gemini_line("") == []
    assert parse_gemini_line("Loaded cached credentials.") == []
    assert parse_gemini_line('{"type": "message", "content": ') == []
    assert parse_gemini_line("[1, 2]") == []
    assert parse_gemini_line(_line(type="unknown")) == []
