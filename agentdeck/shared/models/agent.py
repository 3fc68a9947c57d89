"""Agent deployment records and persisted runtime state."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentdeck.shared.models.message import utcnow_iso


class AgentStatus(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ERROR = "error"


@dataclass
class AgentRecord:
    """One deployed agent tab in a workspace."""

    id: str
    name: str
    title: str | None = None
    color: str = ""
    preferred_model: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "title": self.title,
            "color": self.color,
            "preferred_model": self.preferred_model,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRecord:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or "Agent"),
            title=data.get("title"),
            color=str(data.get("color") or ""),
            preferred_model=data.get("preferred_model"),
            created_at=data.get("created_at") or utcnow_iso(),
        )


@dataclass
class AgentState:
    """Persisted per-agent state (``agents/states/<id>.json``)."""

    id: str
    status: AgentStatus = AgentStatus.IDLE
    created_at: str = field(default_factory=utcnow_iso)
    last_activity: str | None = None
    interaction_count: int = 0
    current_task: str | None = None
    last_session_id: str | None = None
    last_session_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "interaction_count": self.interaction_count,
            "current_task": self.current_task,
            "last_session_id": self.last_session_id,
            "last_session_time": self.last_session_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentState:
        try:
            status = AgentStatus(data.get("status", "idle"))
        except ValueError:
            status = AgentStatus.IDLE
        return cls(
            id=str(data.get("id", "")),
            status=status,
            created_at=data.get("created_at") or utcnow_iso(),
            last_activity=data.get("last_activity"),
            interaction_count=int(data.get("interaction_count") or 0),
            current_task=data.get("current_task"),
            last_session_id=data.get("last_session_id"),
            last_session_time=data.get("last_session_time"),
        )
