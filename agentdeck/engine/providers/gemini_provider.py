"""Gemini CLI provider.

Runs ``gemini --output-format stream-json`` once per turn with the
prompt written to stdin. Supports session resumption via
``--resume {session_id}``.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import AsyncIterator

from agentdeck.adapters.events import (
    NoticeEvent,
    StreamEvent,
    ToolUseEvent,
    TurnError,
)
from agentdeck.shared.models.message import ToolUse

from ..errors import ProcessFailureError
from ..stream_parser import (
    GEMINI_TOOL_MAP,
    LineBuffer,
    is_model_switch_notice,
    is_stream_record,
    parse_gemini_line,
)
from .base import ApprovalCallback, Provider, TurnRequest, allow_all

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_PROBE_TIMEOUT = 15.0
_TERMINATE_GRACE = 5.0


class GeminiProvider(Provider):
    """Provider backed by the Gemini CLI.

    The CLI cannot pause for an approval mid-turn, so tool decisions
    are reported back through the approval callback after the fact
    and take effect via ``--allowed-tools`` on the next turn.

    Auth: Uses the CLI's built-in auth (cached credentials).
    If api_key_env is set, it is passed to the environment.
    """

    default_history_window = 8
    default_turn_timeout = 120.0

    def __init__(
        self,
        command: str = "gemini",
        api_key_env: str | None = None,
        default_model: str | None = None,
        history_window: int | None = None,
        turn_timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(history_window, turn_timeout_seconds)
        self._command = self.resolve_command(command, "gemini")
        self._api_key_env = api_key_env
        self._default_model = default_model or "gemini-2.5-pro"
        self._procs: set[asyncio.subprocess.Process] = set()

    @property
    def name(self) -> str:
        return "gemini"

    def _build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with optional API key."""
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["GEMINI_API_KEY"] = key
                return env
        return None

    def build_command(self, request: TurnRequest) -> list[str]:
        cmd = [self._command]
        cmd.extend(["--model", request.model_id or self._default_model])
        cmd.extend(["--output-format", "stream-json"])
        if request.resume_session_id:
            cmd.extend(["--resume", request.resume_session_id])
        if request.allowed_tools:
            cmd.extend(["--allowed-tools"] + gemini_tool_names(request.allowed_tools))
        return cmd

    async def run_turn(
        self,
        request: TurnRequest,
        *,
        approve: ApprovalCallback = allow_all,
    ) -> AsyncIterator[StreamEvent]:
        cmd = self.build_command(request)
        logger.info(
            "gemini turn start model=%s resume=%s cwd=%s",
            request.model_id or self._default_model,
            (request.resume_session_id or "-")[:8],
            request.cwd,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=request.cwd,
            )
        except FileNotFoundError as exc:
            raise ProcessFailureError(
                self.name, f"'{self._command}' CLI not found",
            ) from exc

        self._procs.add(proc)
        notices: list[str] = []
        stderr_lines: list[str] = []
        stderr_task = asyncio.create_task(
            self._drain_stderr(proc, notices, stderr_lines)
        )
        failed = False
        try:
            if proc.stdin is not None:
                try:
                    proc.stdin.write(request.prompt.encode("utf-8"))
                    await proc.stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as exc:
                    logger.warning("gemini stdin closed early: %s", exc)
                finally:
                    proc.stdin.close()

            buffer = LineBuffer()
            handshake = False
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                lines = buffer.flush() if not chunk else buffer.feed(chunk)
                for line in lines:
                    if not handshake and line.strip():
                        handshake = self._check_handshake(line, proc)
                    for event in parse_gemini_line(line):
                        if isinstance(event, TurnError):
                            failed = True
                        yield event
                        if isinstance(event, ToolUseEvent):
                            await approve(ToolUse(
                                id=event.id, name=event.name, input=event.input,
                            ))
                for text in _take(notices):
                    yield NoticeEvent(text=text, kind="model_switch")
                if not chunk:
                    break

            await proc.wait()
            await stderr_task
            for text in _take(notices):
                yield NoticeEvent(text=text, kind="model_switch")

            if proc.returncode != 0 and not failed:
                detail = "\n".join(stderr_lines).strip()
                logger.warning(
                    "gemini exited rc=%s: %s", proc.returncode, detail[:300],
                )
                raise ProcessFailureError(
                    self.name, detail or "no error output", proc.returncode,
                )
            if not handshake:
                logger.warning("gemini produced no stream-json records")
                raise ProcessFailureError(
                    self.name, "malformed handshake: no stream-json output",
                    proc.returncode,
                )
        finally:
            self._procs.discard(proc)
            if not stderr_task.done():
                stderr_task.cancel()
            if proc.returncode is None:
                await _stop_process(proc)

    def _check_handshake(
        self, line: str, proc: asyncio.subprocess.Process,
    ) -> bool:
        """Whether *line* opens the stream; raise if it cannot."""
        text = line.strip()
        if is_stream_record(text):
            return True
        if is_model_switch_notice(text):
            return False
        logger.warning("gemini malformed handshake: %s", text[:200])
        raise ProcessFailureError(
            self.name, f"malformed handshake: {text[:120]}", proc.returncode,
        )

    async def _drain_stderr(
        self,
        proc: asyncio.subprocess.Process,
        notices: list[str],
        errors: list[str],
    ) -> None:
        if proc.stderr is None:
            return
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if is_model_switch_notice(text):
                logger.info("gemini model switch: %s", text)
                notices.append(text)
            else:
                logger.debug("gemini stderr: %s", text)
                errors.append(text)

    async def probe_session(self, session_id: str, *, cwd: str) -> bool:
        """Ask the CLI whether *session_id* is still listed for *cwd*."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "--list-sessions",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=cwd,
            )
        except (FileNotFoundError, OSError) as exc:
            logger.info("gemini session probe failed to start: %s", exc)
            return False
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=_PROBE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            logger.info("gemini session probe timed out")
            await _stop_process(proc)
            return False
        if proc.returncode != 0:
            return False
        return session_id in stdout.decode("utf-8", errors="replace")

    def is_available(self) -> bool:
        """Check if gemini CLI is installed."""
        return shutil.which(self._command) is not None

    async def shutdown(self) -> None:
        """Terminate any turn processes still running."""
        for proc in list(self._procs):
            if proc.returncode is None:
                await _stop_process(proc)
        self._procs.clear()


def gemini_tool_names(tools: list[str]) -> list[str]:
    """Map normalized tool names back to the CLI's own names."""
    names: list[str] = []
    for tool in tools:
        raw = sorted(k for k, v in GEMINI_TOOL_MAP.items() if v == tool)
        for name in raw or [tool]:
            if name not in names:
                names.append(name)
    return names


def _take(items: list[str]) -> list[str]:
    taken = list(items)
    items.clear()
    return taken


async def _stop_process(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
    except asyncio.TimeoutError:
        logger.warning("gemini pid=%s ignored SIGTERM, killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
