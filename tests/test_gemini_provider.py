"""Tests for GeminiProvider."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentdeck.adapters.events import (
    ContentChunk,
    NoticeEvent,
    ResultEvent,
    SystemInfo,
    ToolUseEvent,
)
from agentdeck.engine.errors import ProcessFailureError
from agentdeck.engine.providers.base import TurnRequest
from agentdeck.engine.providers.gemini_provider import GeminiProvider, gemini_tool_names


class _FakeProc:
    def __init__(self, stdout_chunks, stderr_lines=(), returncode=0):
        self.stdin = MagicMock()
        self.stdin.drain = AsyncMock()
        self.stdout = MagicMock()
        self.stdout.read = AsyncMock(side_effect=[*stdout_chunks, b""])
        self.stderr = MagicMock()
        self.stderr.readline = AsyncMock(side_effect=[*stderr_lines, b""])
        self.pid = 4242
        self.returncode = None
        self._exit = returncode

    async def wait(self):
        self.returncode = self._exit
        return self._exit

    def terminate(self):
        self.returncode = -15


def _records(*records) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


async def _collect(provider, request, **kwargs):
    return [event async for event in provider.run_turn(request, **kwargs)]


def test_gemini_provider_name_and_availability():
    provider = GeminiProvider()
    assert provider.name == "gemini"
    assert provider.gates_tool_execution is False
    assert provider.history_window == 8
    with patch("shutil.which", return_value="/usr/bin/gemini"):
        assert provider.is_available() is True
    with patch("shutil.which", return_value=None):
        assert provider.is_available() is False


def test_build_command_includes_resume_and_allowed_tools():
    provider = GeminiProvider(command="gemini")
    cmd = provider.build_command(TurnRequest(
        prompt="hi", cwd="/tmp", resume_session_id="sess-9", allowed_tools=["Write", "Bash"],
    ))
    assert cmd[cmd.index("--output-format") + 1] == "stream-json"
    assert cmd[cmd.index("--resume") + 1] == "sess-9"
    assert cmd[cmd.index("--model") + 1] == "gemini-2.5-pro"
    allowed = cmd[cmd.index("--allowed-tools") + 1:]
    assert "write_file" in allowed and "run_shell_command" in allowed


def test_gemini_tool_names_maps_back_to_cli_names():
    assert gemini_tool_names(["Bash"]) == ["run_shell_command"]
    assert gemini_tool_names(["CustomTool"]) == ["CustomTool"]


@pytest.mark.asyncio
async def test_run_turn_streams_events_and_writes_prompt():
    provider = GeminiProvider(command="gemini")
    stdout = _records(
        {"type": "init", "session_id": "sess-1", "model": "gemini-2.5-pro"},
        {"type": "message", "role": "assistant", "content": "Hello "},
        {"type": "message", "role": "assistant", "content": "world"},
        {"type": "result", "status": "success", "stats": {"duration_ms": 7}},
    )
    # Split mid-record to exercise line reassembly.
    proc = _FakeProc([stdout[:30], stdout[30:]])

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
        events = await _collect(provider, TurnRequest(prompt="say hi", cwd="/tmp"))

    assert isinstance(events[0], SystemInfo) and events[0].session_id == "sess-1"
    text = "".join(e.content for e in events if isinstance(e, ContentChunk))
    assert text == "Hello world"
    assert isinstance(events[-1], ResultEvent)
    proc.stdin.write.assert_called_once_with(b"say hi")
    proc.stdin.close.assert_called_once()
    assert spawn.call_args.kwargs["cwd"] == "/tmp"


@pytest.mark.asyncio
async def test_tool_use_is_reported_to_approval_callback():
    provider = GeminiProvider(command="gemini")
    proc = _FakeProc([_records(
        {"type": "tool_use", "tool_name": "write_file", "tool_id": "t1",
         "parameters": {"file_path": "a.py"}},
        {"type": "tool_result", "tool_id": "t1", "status": "success", "output": "ok"},
    )])
    seen = []

    async def approve(tool_use):
        seen.append((tool_use.id, tool_use.name, tool_use.input))
        return False

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        events = await _collect(provider, TurnRequest(prompt="p", cwd="/tmp"), approve=approve)

    assert seen == [("t1", "Write", {"file_path": "a.py"})]
    assert any(isinstance(e, ToolUseEvent) for e in events)


@pytest.mark.asyncio
async def test_model_switch_on_stderr_becomes_notice():
    provider = GeminiProvider(command="gemini")
    proc = _FakeProc(
        [_records({"type": "message", "role": "assistant", "content": "ok"})],
        stderr_lines=[b"Slow response times detected, switching to gemini-flash\n"],
    )
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        events = await _collect(provider, TurnRequest(prompt="p", cwd="/tmp"))

    notices = [e for e in events if isinstance(e, NoticeEvent)]
    assert len(notices) == 1
    assert notices[0].kind == "model_switch"


@pytest.mark.asyncio
async def test_nonzero_exit_raises_process_failure():
    provider = GeminiProvider(command="gemini")
    proc = _FakeProc([], stderr_lines=[b"fatal: not authenticated\n"], returncode=2)

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        with pytest.raises(ProcessFailureError) as excinfo:
            await _collect(provider, TurnRequest(prompt="p", cwd="/tmp"))

    assert excinfo.value.returncode == 2
    assert "not authenticated" in str(excinfo.value)


@pytest.mark.asyncio
async def test_missing_binary_raises_process_failure():
    provider = GeminiProvider(command="gemini-missing")
    spawn = AsyncMock(side_effect=FileNotFoundError("gemini-missing"))
    with patch("asyncio.create_subprocess_exec", spawn):
        with pytest.raises(ProcessFailureError) as excinfo:
            await _collect(provider, TurnRequest(prompt="p", cwd="/tmp"))
    assert "not found" in excinfo.value.detail


@pytest.mark.asyncio
async def test_probe_session_checks_session_listing():
    provider = GeminiProvider(command="gemini")
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(b"1. sess-1 (2 hours ago)\n", b""))
    proc.returncode = 0
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        assert await provider.probe_session("sess-1", cwd="/tmp") is True
        assert await provider.probe_session("sess-2", cwd="/tmp") is False


def _fake_cli(tmp_path, body: str) -> str:
    script = tmp_path / "gemini"
    script.write_text("#!/bin/sh\ncat > /dev/null\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return str(script)


@pytest.mark.asyncio
async def test_garbage_first_line_is_a_malformed_handshake(tmp_path):
    command = _fake_cli(tmp_path, "echo 'this is not a stream-json handshake'\nexit 0\n")
    provider = GeminiProvider(command=command)

    with pytest.raises(ProcessFailureError) as excinfo:
        await _collect(provider, TurnRequest(prompt="hi", cwd=str(tmp_path)))

    assert "malformed handshake" in excinfo.value.detail
    assert "not a stream-json" in excinfo.value.detail


@pytest.mark.asyncio
async def test_silent_clean_exit_is_a_malformed_handshake(tmp_path):
    provider = GeminiProvider(command=_fake_cli(tmp_path, "exit 0\n"))

    with pytest.raises(ProcessFailureError) as excinfo:
        await _collect(provider, TurnRequest(prompt="hi", cwd=str(tmp_path)))

    assert excinfo.value.detail == "malformed handshake: no stream-json output"
    assert excinfo.value.returncode == 0


@pytest.mark.asyncio
async def test_chatter_after_a_valid_opening_is_skipped():
    provider = GeminiProvider(command="gemini")
    stdout = (
        b"Slow response times detected, switching to gemini-flash\n"
        + _records({"type": "init", "session_id": "sess-1", "model": "gemini-2.5-flash"})
        + b"Loaded cached credentials.\n"
        + _records({"type": "message", "role": "assistant", "content": "fine"})
    )
    proc = _FakeProc([stdout])

    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        events = await _collect(provider, TurnRequest(prompt="p", cwd="/tmp"))

    assert isinstance(events[0], NoticeEvent)
    assert [e.content for e in events if isinstance(e, ContentChunk)] == ["fine"]
