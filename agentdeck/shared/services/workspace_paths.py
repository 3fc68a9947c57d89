"""On-disk layout of the storage root.

    <root>/workspaces/<ws>/                       working directory for turns
    <root>/workspaces/<ws>/agents/active-agents.json
    <root>/workspaces/<ws>/agents/states/<agent>.json
    <root>/workspaces/<ws>/agents/conversations/<agent>.json
    <root>/checkpoints/<checkpoint>.json + index.json
"""
from __future__ import annotations

import re
from pathlib import Path

from agentdeck.engine.errors import WorkspaceNotFoundError

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_id(value: str, kind: str = "id") -> str:
    """Reject ids that could escape the storage root."""
    if not value or not _SAFE_ID.match(value) or ".." in value:
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


class StorageLayout:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def workspace_dir(self, workspace_id: str) -> Path:
        return self.root / "workspaces" / validate_id(workspace_id, "workspace id")

    def require_workspace(self, workspace_id: str) -> Path:
        path = self.workspace_dir(workspace_id)
        if not path.is_dir():
            raise WorkspaceNotFoundError(workspace_id)
        return path

    def agents_dir(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / "agents"

    def agents_index(self, workspace_id: str) -> Path:
        return self.agents_dir(workspace_id) / "active-agents.json"

    def agent_state(self, workspace_id: str, agent_id: str) -> Path:
        return (
            self.agents_dir(workspace_id) / "states"
            / f"{validate_id(agent_id, 'agent id')}.json"
        )

    def conversation(self, workspace_id: str, agent_id: str) -> Path:
        return (
            self.agents_dir(workspace_id) / "conversations"
            / f"{validate_id(agent_id, 'agent id')}.json"
        )

    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"
