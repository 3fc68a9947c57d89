"""Checkpoint model: an immutable snapshot of one agent's conversation."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from agentdeck.shared.models.message import (
    ConversationMessage,
    _rand_suffix,
    utcnow_iso,
)


def gen_checkpoint_id() -> str:
    return f"checkpoint_{int(time.time() * 1000)}_{_rand_suffix()}"


@dataclass
class Checkpoint:
    id: str
    name: str
    description: str = ""
    messages: list[ConversationMessage] = field(default_factory=list)
    agent_name: str | None = None
    agent_title: str | None = None
    selected_model: str | None = None
    source_agent_id: str | None = None
    source_workspace_id: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)
    usage_count: int = 0
    rating: int | None = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "messages": [m.to_dict() for m in self.messages],
            "agent_name": self.agent_name,
            "agent_title": self.agent_title,
            "selected_model": self.selected_model,
            "source_agent_id": self.source_agent_id,
            "source_workspace_id": self.source_workspace_id,
            "tags": list(self.tags),
            "metadata": self.metadata,
            "created_at": self.created_at,
            "usage_count": self.usage_count,
            "rating": self.rating,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            messages=[
                ConversationMessage.from_dict(m)
                for m in data.get("messages") or []
            ],
            agent_name=data.get("agent_name"),
            agent_title=data.get("agent_title"),
            selected_model=data.get("selected_model"),
            source_agent_id=data.get("source_agent_id"),
            source_workspace_id=data.get("source_workspace_id"),
            tags=[str(t) for t in data.get("tags") or []],
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or utcnow_iso(),
            usage_count=int(data.get("usage_count") or 0),
            rating=data.get("rating"),
        )

    def index_entry(self) -> dict[str, Any]:
        """Summary row stored in the checkpoint index."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "message_count": self.message_count,
            "model": self.selected_model,
            "agent_name": self.agent_name,
            "agent_title": self.agent_title,
            "source_agent_id": self.source_agent_id,
            "source_workspace_id": self.source_workspace_id,
            "tags": list(self.tags),
            "usage_count": self.usage_count,
            "rating": self.rating,
        }
