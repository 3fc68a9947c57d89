"""Async HTTP client for the agentdeck server.

REST calls return decoded JSON dicts; ``stream_turn`` yields typed
events reconstructed from the ``data: {...}`` frames of a streaming turn.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from agentdeck.adapters.events import StreamEvent, decode_frame

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class AgentDeckClientError(Exception):
    """Non-2xx answer from the server."""

    def __init__(self, status: int, message: str, code: str | None = None):
        self.status = status
        self.message = message
        self.code = code
        super().__init__(f"HTTP {status}: {message}")

    @property
    def capacity_exceeded(self) -> bool:
        return self.code == "capacity_exceeded"

    @property
    def turn_in_progress(self) -> bool:
        return self.status == 409


class AgentDeckClient:
    """Thin REST + stream wrapper around one aiohttp ClientSession."""

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    async def __aenter__(self) -> AgentDeckClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def agent_path(workspace_id: str, agent_id: str) -> str:
        return f"/api/workspaces/{workspace_id}/agents/{agent_id}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        timeout: float | aiohttp.ClientTimeout | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body
        if params:
            kwargs["params"] = params
        if isinstance(timeout, aiohttp.ClientTimeout):
            kwargs["timeout"] = timeout
        elif timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        async with self._http().request(method, self._base_url + path, **kwargs) as resp:
            payload = await _json_or_text(resp)
            if resp.status >= 400:
                raise _error_from(resp.status, payload)
            return payload

    # ── Health / agents ──

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def list_agents(self, workspace_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/api/workspaces/{workspace_id}/agents")
        return data.get("agents", [])

    async def agent_status(self, workspace_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/workspaces/{workspace_id}/agents/status")

    async def create_agent(
        self,
        workspace_id: str,
        name: str,
        *,
        title: str | None = None,
        preferred_model: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        if title:
            body["title"] = title
        if preferred_model:
            body["preferredModel"] = preferred_model
        data = await self._request("POST", f"/api/workspaces/{workspace_id}/agents", body=body)
        return data["agent"]

    async def update_agent(self, workspace_id: str, agent_id: str, **changes: Any) -> dict[str, Any]:
        data = await self._request("PATCH", self.agent_path(workspace_id, agent_id), body=changes)
        return data["agent"]

    async def delete_agent(self, workspace_id: str, agent_id: str) -> dict[str, Any]:
        return await self._request("DELETE", self.agent_path(workspace_id, agent_id))

    # ── Conversation ──

    async def get_conversation(
        self, workspace_id: str, agent_id: str, *, timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET", self.agent_path(workspace_id, agent_id) + "/conversation",
            timeout=timeout,
        )

    async def stream_turn(
        self,
        workspace_id: str,
        agent_id: str,
        message: str,
        *,
        model: str | None = None,
        message_id: str | None = None,
        timestamp: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """POST a turn and yield its frames as typed events.

        A frame that cannot be decoded is logged and skipped.
        """
        body: dict[str, Any] = {"message": message}
        if model:
            body["model"] = model
        if message_id:
            body["messageId"] = message_id
        if timestamp:
            body["timestamp"] = timestamp
        url = self._base_url + self.agent_path(workspace_id, agent_id) + "/conversation/stream"
        # Turns can outlast any fixed total timeout.
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._timeout)
        async with self._http().post(url, json=body, timeout=timeout) as resp:
            if resp.status >= 400:
                raise _error_from(resp.status, await _json_or_text(resp))
            async for raw in resp.content:
                line = raw.decode("utf-8", errors="replace")
                try:
                    event = decode_frame(line)
                except (json.JSONDecodeError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed frame: %s (%s)", line[:120].strip(), exc)
                    continue
                if event is not None:
                    yield event

    async def interrupt(self, workspace_id: str, agent_id: str) -> bool:
        data = await self._request("POST", self.agent_path(workspace_id, agent_id) + "/interrupt")
        return bool(data.get("interrupted"))

    # ── Approvals / sessions ──

    async def pending_approval(self, workspace_id: str, agent_id: str) -> dict[str, Any] | None:
        data = await self._request("GET", self.agent_path(workspace_id, agent_id) + "/tool-approval")
        return data.get("pending")

    async def resolve_approval(
        self,
        workspace_id: str,
        agent_id: str,
        message_id: str,
        tool_name: str,
        approved: bool,
        *,
        remember: bool = False,
    ) -> dict[str, Any]:
        return await self._request(
            "POST", self.agent_path(workspace_id, agent_id) + "/tool-approval",
            body={
                "messageId": message_id,
                "toolName": tool_name,
                "approved": approved,
                "remember": remember,
            },
        )

    async def restore_session(
        self,
        workspace_id: str,
        agent_id: str,
        *,
        session_id: str | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if session_id:
            body["sessionId"] = session_id
        if model:
            body["model"] = model
        return await self._request(
            "POST", self.agent_path(workspace_id, agent_id) + "/session-restore", body=body,
        )

    # ── Checkpoints ──

    async def save_checkpoint(
        self, workspace_id: str, agent_id: str, payload: dict[str, Any],
    ) -> str:
        data = await self._request(
            "POST", self.agent_path(workspace_id, agent_id) + "/checkpoints", body=payload,
        )
        return data["checkpointId"]

    async def list_checkpoints(self, workspace_id: str, agent_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", self.agent_path(workspace_id, agent_id) + "/checkpoints")
        return data.get("checkpoints", [])

    async def search_checkpoints(
        self, workspace_id: str, agent_id: str, query: str,
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", self.agent_path(workspace_id, agent_id) + "/checkpoints",
            params={"q": query},
        )
        return data.get("checkpoints", [])

    async def load_checkpoint(
        self, workspace_id: str, agent_id: str, checkpoint_id: str,
    ) -> dict[str, Any]:
        data = await self._request(
            "GET", self.agent_path(workspace_id, agent_id) + "/checkpoints",
            params={"id": checkpoint_id},
        )
        return data["checkpoint"]

    async def restore_checkpoint(
        self, workspace_id: str, agent_id: str, checkpoint_id: str,
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH", self.agent_path(workspace_id, agent_id) + "/checkpoints",
            params={"id": checkpoint_id}, body={},
        )

    async def rate_checkpoint(
        self, workspace_id: str, agent_id: str, checkpoint_id: str, rating: int,
    ) -> None:
        await self._request(
            "PATCH", self.agent_path(workspace_id, agent_id) + "/checkpoints",
            params={"id": checkpoint_id}, body={"rating": rating},
        )

    async def delete_checkpoint(
        self, workspace_id: str, agent_id: str, checkpoint_id: str,
    ) -> None:
        await self._request(
            "DELETE", self.agent_path(workspace_id, agent_id) + "/checkpoints",
            params={"id": checkpoint_id},
        )

    async def history(self, workspace_id: str, agent_id: str) -> dict[str, Any]:
        return await self._request("GET", self.agent_path(workspace_id, agent_id) + "/history")


async def _json_or_text(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    try:
        data = await resp.json(content_type=None)
    except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError):
        return {"error": (await resp.text())[:500]}
    return data if isinstance(data, dict) else {"data": data}


def _error_from(status: int, payload: dict[str, Any]) -> AgentDeckClientError:
    return AgentDeckClientError(
        status,
        str(payload.get("error") or f"request failed with status {status}"),
        payload.get("code"),
    )
