"""HTTP + streaming server for the conversation engine.

Thin adapter: all conversation state lives in ConversationEngine. This
module only maps routes to engine calls, engine errors to status codes,
and turn events to ``text/event-stream`` frames.

Usage:
    agentdeck serve [--port PORT] [--config PATH]

Prints ``{"port": N}`` to stdout once listening so a parent process can
discover the port.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from agentdeck.adapters.events import encode_frame
from agentdeck.engine.conversation_engine import ConversationEngine
from agentdeck.engine.errors import (
    AgentNotFoundError,
    ApprovalNotPendingError,
    CapacityExceededError,
    CheckpointNotFoundError,
    CheckpointStorageError,
    EngineError,
    InvalidMessageError,
    ProviderNotAvailableError,
    TurnInProgressError,
    WorkspaceNotFoundError,
)
from agentdeck.shared.models.message import (
    ConversationMessage,
    MessageRole,
    gen_message_id,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[EngineError], int], ...] = (
    (WorkspaceNotFoundError, 404),
    (AgentNotFoundError, 404),
    (CheckpointNotFoundError, 404),
    (CapacityExceededError, 400),
    (InvalidMessageError, 400),
    (ProviderNotAvailableError, 400),
    (TurnInProgressError, 409),
    (ApprovalNotPendingError, 409),
    (CheckpointStorageError, 500),
)

_STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}

AGENT_PATH = "/api/workspaces/{workspace_id}/agents/{agent_id}"


def _status_for(exc: EngineError) -> int:
    for exc_type, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc.msg}") from exc
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


class AgentDeckServer:
    """HTTP routes over one ConversationEngine."""

    def __init__(
        self,
        engine: ConversationEngine,
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        self._engine = engine
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware, self._error_middleware],
        )
        self._setup_routes()
        logger.info(
            "AgentDeckServer init host=%s port=%s storage=%s pid=%s",
            self._host, self._port, engine.layout.root, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def engine(self) -> ConversationEngine:
        return self._engine

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentdeck-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except EngineError as exc:
            status = _status_for(exc)
            body: dict[str, Any] = {"error": str(exc)}
            code = getattr(exc, "code", None)
            if code:
                body["code"] = code
            if status >= 500:
                logger.error("HTTP %s %s engine failure: %s", request.method, request.path, exc)
            else:
                logger.info("HTTP %s %s rejected (%d): %s", request.method, request.path, status, exc)
            return web.json_response(body, status=status)
        except ValueError as exc:
            logger.info("HTTP %s %s bad request: %s", request.method, request.path, exc)
            return web.json_response({"error": str(exc)}, status=400)
        except OSError as exc:
            logger.exception("HTTP %s %s storage failure", request.method, request.path)
            return web.json_response({"error": f"Storage failure: {exc}"}, status=500)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Agents
        r.add_get("/api/workspaces/{workspace_id}/agents", self._handle_list_agents)
        r.add_post("/api/workspaces/{workspace_id}/agents", self._handle_create_agent)
        r.add_get("/api/workspaces/{workspace_id}/agents/status", self._handle_agent_status)
        r.add_get(AGENT_PATH, self._handle_get_agent)
        r.add_patch(AGENT_PATH, self._handle_update_agent)
        r.add_delete(AGENT_PATH, self._handle_delete_agent)
        # Conversation
        r.add_get(AGENT_PATH + "/conversation", self._handle_get_conversation)
        r.add_post(AGENT_PATH + "/conversation", self._handle_post_conversation)
        r.add_post(AGENT_PATH + "/conversation/stream", self._handle_stream)
        r.add_post(AGENT_PATH + "/interrupt", self._handle_interrupt)
        # Approvals + sessions
        r.add_get(AGENT_PATH + "/tool-approval", self._handle_get_approval)
        r.add_post(AGENT_PATH + "/tool-approval", self._handle_resolve_approval)
        r.add_post(AGENT_PATH + "/session-restore", self._handle_session_restore)
        # Checkpoints
        r.add_get(AGENT_PATH + "/checkpoints", self._handle_get_checkpoints)
        r.add_post(AGENT_PATH + "/checkpoints", self._handle_create_checkpoint)
        r.add_patch(AGENT_PATH + "/checkpoints", self._handle_patch_checkpoint)
        r.add_delete(AGENT_PATH + "/checkpoints", self._handle_delete_checkpoint)
        # History
        r.add_get(AGENT_PATH + "/history", self._handle_history)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("agentdeck server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentdeck server listening on %s:%d", self._host, actual_port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._engine.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "storage_root": str(self._engine.layout.root),
            "providers": {
                "registered": self._engine.providers.list_names(),
                "available": self._engine.providers.list_available(),
            },
        })

    # Agents

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agents = self._engine.agents.list_agents(workspace_id)
        return web.json_response({
            "agents": [a.to_dict() for a in agents],
            "max_concurrent": self._engine.agents.max_agents,
        })

    async def _handle_create_agent(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        body = await _read_json(request)
        agent = self._engine.create_agent(
            workspace_id,
            str(body.get("name") or ""),
            title=body.get("title"),
            preferred_model=body.get("preferredModel") or body.get("model"),
        )
        return web.json_response({"agent": agent.to_dict()}, status=201)

    async def _handle_agent_status(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        return web.json_response(self._engine.agent_status(workspace_id))

    async def _handle_get_agent(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        agent = self._engine.agents.get_agent(workspace_id, agent_id)
        state = self._engine.agents.load_state(workspace_id, agent_id)
        return web.json_response({
            "agent": agent.to_dict(),
            "state": state.to_dict(),
            "is_processing": self._engine.manager.is_processing(workspace_id, agent_id),
        })

    async def _handle_update_agent(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        changes: dict[str, Any] = {}
        for key, field_name in (
            ("name", "name"),
            ("title", "title"),
            ("preferredModel", "preferred_model"),
            ("preferred_model", "preferred_model"),
        ):
            if key in body:
                changes[field_name] = body[key]
        if not changes:
            raise ValueError("Nothing to update")
        agent = self._engine.agents.update_agent(workspace_id, agent_id, **changes)
        return web.json_response({"agent": agent.to_dict()})

    async def _handle_delete_agent(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        agent = await self._engine.delete_agent(workspace_id, agent_id)
        return web.json_response({"status": "deleted", "agent": agent.to_dict()})

    # Conversation

    async def _handle_get_conversation(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        self._engine.agents.get_agent(workspace_id, agent_id)
        messages = self._engine.conversations.read(workspace_id, agent_id)
        return web.json_response({
            "messages": [m.to_dict() for m in messages],
            "is_processing": self._engine.manager.is_processing(workspace_id, agent_id),
        })

    async def _handle_post_conversation(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        if body.get("saveOnly"):
            return self._save_message(workspace_id, agent_id, body)

        handle = self._engine.manager.start_turn(
            workspace_id,
            agent_id,
            body.get("model"),
            str(body.get("message") or ""),
            user_message_id=body.get("messageId"),
            timestamp=body.get("timestamp"),
        )
        outcome = await self._engine.adapter.run(handle)
        payload: dict[str, Any] = {
            "success": outcome.success,
            "response": outcome.message.content,
            "message_id": outcome.message.id,
            "metadata": outcome.message.metadata or {},
        }
        if outcome.error:
            payload["error"] = outcome.error
        return web.json_response(payload)

    def _save_message(
        self, workspace_id: str, agent_id: str, body: dict[str, Any],
    ) -> web.Response:
        self._engine.agents.get_agent(workspace_id, agent_id)
        try:
            role = MessageRole(body.get("role") or "user")
        except ValueError as exc:
            raise InvalidMessageError(f"Unknown role: {body.get('role')}") from exc
        metadata = body.get("metadata")
        message = ConversationMessage(
            role=role,
            content=str(body.get("message") or ""),
            id=str(body.get("messageId") or gen_message_id()),
            timestamp=body.get("timestamp") or utcnow_iso(),
            metadata=dict(metadata) if isinstance(metadata, dict) else None,
        )
        session = self._engine.manager.get_session(workspace_id, agent_id)
        turn = session.current_turn if session else None
        if turn is not None and turn.assistant_message_id == message.id:
            raise TurnInProgressError(agent_id)
        updated = self._engine.conversations.upsert(workspace_id, agent_id, message)
        return web.json_response({
            "success": True,
            "message_id": message.id,
            "updated": updated,
        })

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        handle = self._engine.manager.start_turn(
            workspace_id,
            agent_id,
            body.get("model"),
            str(body.get("message") or ""),
            user_message_id=body.get("messageId"),
            timestamp=body.get("timestamp"),
        )
        req_id = request.get("req_id", "unknown")
        frames = self._engine.adapter.stream(handle)
        response = web.StreamResponse(status=200, headers=_STREAM_HEADERS)
        sent = 0
        try:
            await response.prepare(request)
            async for frame in frames:
                try:
                    await response.write(encode_frame(frame))
                except ConnectionResetError:
                    logger.info(
                        "Stream client disconnected req=%s agent=%s after %d frames",
                        req_id, agent_id[:8], sent,
                    )
                    break
                sent += 1
        finally:
            await frames.aclose()
            if not handle.finished:
                # The adapter never ran; release the agent ourselves.
                self._engine.manager.interrupt_turn(workspace_id, agent_id)
                self._engine.manager.finish_turn(handle)
        logger.info("Stream closed req=%s agent=%s frames=%d", req_id, agent_id[:8], sent)
        return response

    async def _handle_interrupt(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        self._engine.agents.get_agent(workspace_id, agent_id)
        interrupted = self._engine.manager.interrupt_turn(workspace_id, agent_id)
        return web.json_response({"interrupted": interrupted})

    # Approvals + sessions

    async def _handle_get_approval(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        pending = self._engine.manager.pending_approval(workspace_id, agent_id)
        return web.json_response({"pending": pending.to_dict() if pending else None})

    async def _handle_resolve_approval(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        approved = body.get("approved")
        if not isinstance(approved, bool):
            raise ValueError("approved must be a boolean")
        decision = self._engine.manager.resolve_approval(
            workspace_id,
            agent_id,
            str(body.get("messageId") or ""),
            str(body.get("toolName") or ""),
            approved,
            remember=bool(body.get("remember", False)),
        )
        return web.json_response({
            "success": True,
            "approved": decision.approved,
            "reason": decision.reason,
        })

    async def _handle_session_restore(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        self._engine.agents.get_agent(workspace_id, agent_id)
        outcome = await self._engine.resumer.resume(
            workspace_id, agent_id, body.get("sessionId"), body.get("model"),
        )
        return web.json_response(outcome.to_dict())

    # Checkpoints

    async def _handle_get_checkpoints(self, request: web.Request) -> web.Response:
        checkpoint_id = request.query.get("id")
        if checkpoint_id:
            checkpoint = self._engine.checkpoints.load(checkpoint_id)
            return web.json_response({"checkpoint": checkpoint.to_dict()})
        query = request.query.get("q")
        if query is not None:
            return web.json_response({"checkpoints": self._engine.checkpoints.search(query)})
        return web.json_response({"checkpoints": self._engine.checkpoints.list()})

    async def _handle_create_checkpoint(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        body = await _read_json(request)
        raw_messages = body.get("messages")
        messages = None
        if isinstance(raw_messages, list):
            messages = [ConversationMessage.from_dict(m) for m in raw_messages if isinstance(m, dict)]
        metadata = body.get("metadata")
        checkpoint_id = self._engine.checkpoints.save(
            workspace_id,
            agent_id,
            str(body.get("name") or ""),
            str(body.get("description") or ""),
            messages=messages,
            selected_model=body.get("selectedModel"),
            agent_name=body.get("agentName"),
            agent_title=body.get("agentTitle"),
            tags=[str(t) for t in body.get("tags") or []],
            metadata=metadata if isinstance(metadata, dict) else None,
        )
        return web.json_response({"success": True, "checkpointId": checkpoint_id}, status=201)

    async def _handle_patch_checkpoint(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        checkpoint_id = request.query.get("id")
        if not checkpoint_id:
            raise ValueError("Checkpoint id is required")
        body = await _read_json(request)
        if "rating" in body:
            self._engine.checkpoints.rate(checkpoint_id, int(body["rating"]))
            return web.json_response({"success": True})
        result = self._engine.checkpoints.restore(workspace_id, agent_id, checkpoint_id)
        return web.json_response({"success": True, **result.to_dict()})

    async def _handle_delete_checkpoint(self, request: web.Request) -> web.Response:
        checkpoint_id = request.query.get("id")
        if not checkpoint_id:
            raise ValueError("Checkpoint id is required")
        if not self._engine.checkpoints.delete(checkpoint_id):
            raise CheckpointNotFoundError(checkpoint_id)
        return web.json_response({"success": True})

    # History

    async def _handle_history(self, request: web.Request) -> web.Response:
        workspace_id = request.match_info["workspace_id"]
        agent_id = request.match_info["agent_id"]
        return web.json_response(self._engine.history(workspace_id, agent_id))
