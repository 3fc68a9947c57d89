"""Persistent allow-list of dangerous tools per workspace.

A tool approved with "remember" (or any approval for a back-end that
cannot pause mid-turn) is written here and handed to the CLI as its
allowed tools on the next turn. Denials remove the tool again.

Stored at ``<workspace>/.agentdeck/allowed_tools.json``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from agentdeck.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

DIRNAME = ".agentdeck"
FILENAME = "allowed_tools.json"


class PermissionStore:
    """Load and save workspace tool permission decisions."""

    def __init__(self, workspace_dir: Path) -> None:
        self._path = workspace_dir / DIRNAME / FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> set[str]:
        """Load the allowed tool names (empty when nothing is stored)."""
        if not self._path.exists():
            return set()
        try:
            data = json.loads(self._path.read_text())
            if isinstance(data, list):
                return {str(t) for t in data}
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", self._path)
        return set()

    def is_allowed(self, tool_name: str) -> bool:
        return tool_name in self.load()

    def add(self, tool_name: str) -> None:
        existing = self.load()
        if tool_name in existing:
            return
        existing.add(tool_name)
        self._write(existing)
        logger.info("Tool %s added to allow-list %s", tool_name, self._path)

    def remove(self, tool_name: str) -> None:
        existing = self.load()
        if tool_name not in existing:
            return
        existing.discard(tool_name)
        self._write(existing)
        logger.info("Tool %s removed from allow-list %s", tool_name, self._path)

    def _write(self, tools: set[str]) -> None:
        atomic_write_text(self._path, json.dumps(sorted(tools), indent=2) + "\n")
