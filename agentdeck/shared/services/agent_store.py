"""Agent deployment records and persisted agent state per workspace."""
from __future__ import annotations

import logging
import time
from typing import Any

from agentdeck.engine.errors import AgentNotFoundError, CapacityExceededError
from agentdeck.shared.models.agent import AgentRecord, AgentState, AgentStatus
from agentdeck.shared.models.message import _rand_suffix, utcnow_iso
from agentdeck.shared.services.durable_write import atomic_write_json, read_json
from agentdeck.shared.services.workspace_paths import StorageLayout

logger = logging.getLogger(__name__)

AGENT_COLORS = ["#3b82f6", "#ef4444", "#10b981", "#f59e0b"]

_UPDATABLE_FIELDS = ("name", "title", "preferred_model")


def gen_agent_id() -> str:
    return f"agent-{int(time.time() * 1000)}-{_rand_suffix()}"


class AgentStore:
    """Reads and writes ``active-agents.json`` and ``states/<id>.json``."""

    def __init__(self, layout: StorageLayout, max_agents: int = 4) -> None:
        self._layout = layout
        self._max_agents = max_agents

    @property
    def max_agents(self) -> int:
        return self._max_agents

    def ensure_workspace(self, workspace_id: str) -> None:
        """Create the workspace directory skeleton if missing."""
        base = self._layout.workspace_dir(workspace_id)
        for sub in ("agents/states", "agents/conversations", "context", "target"):
            (base / sub).mkdir(parents=True, exist_ok=True)

    def _load_index(self, workspace_id: str) -> dict[str, Any]:
        self._layout.require_workspace(workspace_id)
        data = read_json(self._layout.agents_index(workspace_id))
        if data is None:
            data = {
                "agents": [],
                "max_concurrent": self._max_agents,
                "colors": list(AGENT_COLORS),
                "next_color_index": 0,
            }
        data.setdefault("agents", [])
        data.setdefault("colors", list(AGENT_COLORS))
        data.setdefault("next_color_index", 0)
        # The configured cap always wins over a stale stored value.
        data["max_concurrent"] = self._max_agents
        return data

    def _save_index(self, workspace_id: str, data: dict[str, Any]) -> None:
        atomic_write_json(self._layout.agents_index(workspace_id), data)

    def list_agents(self, workspace_id: str) -> list[AgentRecord]:
        data = self._load_index(workspace_id)
        return [AgentRecord.from_dict(a) for a in data["agents"]]

    def get_agent(self, workspace_id: str, agent_id: str) -> AgentRecord:
        for agent in self.list_agents(workspace_id):
            if agent.id == agent_id:
                return agent
        raise AgentNotFoundError(workspace_id, agent_id)

    def create_agent(
        self,
        workspace_id: str,
        name: str,
        *,
        title: str | None = None,
        preferred_model: str | None = None,
    ) -> AgentRecord:
        """Deploy a new agent, enforcing the per-workspace cap.

        The count is read again right before the write so two racing
        creations cannot both slip under the limit.
        """
        if not name or not name.strip():
            raise ValueError("Agent name is required")
        data = self._load_index(workspace_id)
        if len(data["agents"]) >= self._max_agents:
            raise CapacityExceededError(workspace_id, self._max_agents)

        colors = data["colors"] or list(AGENT_COLORS)
        color_index = int(data["next_color_index"]) % len(colors)
        agent = AgentRecord(
            id=gen_agent_id(),
            name=name.strip(),
            title=title,
            color=colors[color_index],
            preferred_model=preferred_model,
        )

        latest = self._load_index(workspace_id)
        if len(latest["agents"]) >= self._max_agents:
            raise CapacityExceededError(workspace_id, self._max_agents)
        latest["agents"].append(agent.to_dict())
        latest["next_color_index"] = (color_index + 1) % len(colors)
        self._save_index(workspace_id, latest)
        self.save_state(workspace_id, AgentState(id=agent.id))
        logger.info(
            "Agent created workspace=%s agent=%s name=%s (%d/%d)",
            workspace_id, agent.id, agent.name,
            len(latest["agents"]), self._max_agents,
        )
        return agent

    def update_agent(
        self, workspace_id: str, agent_id: str, **changes: Any,
    ) -> AgentRecord:
        data = self._load_index(workspace_id)
        for index, raw in enumerate(data["agents"]):
            if raw.get("id") != agent_id:
                continue
            for key, value in changes.items():
                if key not in _UPDATABLE_FIELDS:
                    raise ValueError(f"Field cannot be updated: {key}")
                raw[key] = value
            data["agents"][index] = raw
            self._save_index(workspace_id, data)
            return AgentRecord.from_dict(raw)
        raise AgentNotFoundError(workspace_id, agent_id)

    def delete_agent(self, workspace_id: str, agent_id: str) -> AgentRecord:
        """Remove the agent record and state. The conversation log stays."""
        data = self._load_index(workspace_id)
        remaining = [a for a in data["agents"] if a.get("id") != agent_id]
        if len(remaining) == len(data["agents"]):
            raise AgentNotFoundError(workspace_id, agent_id)
        removed = next(a for a in data["agents"] if a.get("id") == agent_id)
        data["agents"] = remaining
        self._save_index(workspace_id, data)
        state_path = self._layout.agent_state(workspace_id, agent_id)
        if state_path.exists():
            state_path.unlink()
        logger.info("Agent deleted workspace=%s agent=%s", workspace_id, agent_id)
        return AgentRecord.from_dict(removed)

    # ── State ──

    def load_state(self, workspace_id: str, agent_id: str) -> AgentState:
        data = read_json(self._layout.agent_state(workspace_id, agent_id))
        if data is None:
            return AgentState(id=agent_id)
        return AgentState.from_dict(data)

    def save_state(self, workspace_id: str, state: AgentState) -> None:
        atomic_write_json(self._layout.agent_state(workspace_id, state.id), state.to_dict())

    def mark_active(self, workspace_id: str, agent_id: str, task: str) -> AgentState:
        state = self.load_state(workspace_id, agent_id)
        state.status = AgentStatus.ACTIVE
        state.last_activity = utcnow_iso()
        state.current_task = f"Processing: {task[:50]}{'...' if len(task) > 50 else ''}"
        self.save_state(workspace_id, state)
        return state

    def mark_idle(
        self,
        workspace_id: str,
        agent_id: str,
        *,
        session_id: str | None = None,
        failed: bool = False,
        count_interaction: bool = True,
    ) -> AgentState:
        state = self.load_state(workspace_id, agent_id)
        state.status = AgentStatus.ERROR if failed else AgentStatus.IDLE
        state.last_activity = utcnow_iso()
        state.current_task = None
        if count_interaction:
            state.interaction_count += 1
        if session_id:
            state.last_session_id = session_id
            state.last_session_time = utcnow_iso()
        self.save_state(workspace_id, state)
        return state

    def clear_session(self, workspace_id: str, agent_id: str) -> None:
        state = self.load_state(workspace_id, agent_id)
        if state.last_session_id is None and state.last_session_time is None:
            return
        state.last_session_id = None
        state.last_session_time = None
        self.save_state(workspace_id, state)

    def status_summary(self, workspace_id: str) -> dict[str, Any]:
        """Counts by status plus per-agent state."""
        agents = self.list_agents(workspace_id)
        counts = {"total": len(agents), "active": 0, "idle": 0, "error": 0}
        details = []
        for agent in agents:
            state = self.load_state(workspace_id, agent.id)
            counts[state.status.value] += 1
            details.append({**agent.to_dict(), "state": state.to_dict()})
        return {
            **counts,
            "max_concurrent": self._max_agents,
            "agents": details,
        }
