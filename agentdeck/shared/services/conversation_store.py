"""Append-only per-agent conversation log.

Each (workspace, agent) log is one JSON document rewritten atomically on
every change, so a crash leaves either the previous or the new version
on disk. Concurrent writers are last-writer-wins.
"""
from __future__ import annotations

import logging
from typing import Any

from agentdeck.engine.errors import InvalidMessageError
from agentdeck.shared.models.message import (
    ConversationMessage,
    MessageRole,
    utcnow_iso,
)
from agentdeck.shared.services.durable_write import atomic_write_json, read_json
from agentdeck.shared.services.workspace_paths import StorageLayout

logger = logging.getLogger(__name__)


class ConversationStore:
    """Durable message log keyed by (workspace_id, agent_id)."""

    def __init__(self, layout: StorageLayout) -> None:
        self._layout = layout

    def _load_doc(self, workspace_id: str, agent_id: str) -> dict[str, Any]:
        path = self._layout.conversation(workspace_id, agent_id)
        doc = read_json(path)
        if doc is None:
            now = utcnow_iso()
            return {
                "agent_id": agent_id,
                "workspace_id": workspace_id,
                "created_at": now,
                "updated_at": now,
                "messages": [],
            }
        doc.setdefault("messages", [])
        return doc

    def _save_doc(
        self, workspace_id: str, agent_id: str, doc: dict[str, Any],
    ) -> None:
        doc["updated_at"] = utcnow_iso()
        atomic_write_json(self._layout.conversation(workspace_id, agent_id), doc)

    def exists(self, workspace_id: str, agent_id: str) -> bool:
        return self._layout.conversation(workspace_id, agent_id).exists()

    def read(self, workspace_id: str, agent_id: str) -> list[ConversationMessage]:
        """Return every message in arrival order."""
        doc = self._load_doc(workspace_id, agent_id)
        return [ConversationMessage.from_dict(m) for m in doc["messages"]]

    def get(
        self, workspace_id: str, agent_id: str, message_id: str,
    ) -> ConversationMessage | None:
        for message in self.read(workspace_id, agent_id):
            if message.id == message_id:
                return message
        return None

    def append(
        self, workspace_id: str, agent_id: str, message: ConversationMessage,
    ) -> ConversationMessage:
        """Append one message. Duplicate ids are rejected."""
        doc = self._load_doc(workspace_id, agent_id)
        if any(m.get("id") == message.id for m in doc["messages"]):
            raise InvalidMessageError(
                f"Message {message.id} already exists in conversation {agent_id}"
            )
        doc["messages"].append(message.to_dict())
        self._save_doc(workspace_id, agent_id, doc)
        logger.debug(
            "Appended %s message %s to %s/%s (total=%d)",
            message.role.value, message.id, workspace_id, agent_id[:8],
            len(doc["messages"]),
        )
        return message

    def append_if_absent(
        self, workspace_id: str, agent_id: str, message: ConversationMessage,
    ) -> bool:
        """Append unless a message with the same id was already saved."""
        doc = self._load_doc(workspace_id, agent_id)
        if any(m.get("id") == message.id for m in doc["messages"]):
            return False
        doc["messages"].append(message.to_dict())
        self._save_doc(workspace_id, agent_id, doc)
        return True

    def upsert(
        self, workspace_id: str, agent_id: str, message: ConversationMessage,
    ) -> bool:
        """Replace the message with the same id in place, or append it.

        Returns True when an existing message was updated. The position
        and role of an existing message never change.
        """
        doc = self._load_doc(workspace_id, agent_id)
        for index, existing in enumerate(doc["messages"]):
            if existing.get("id") != message.id:
                continue
            if existing.get("role") != message.role.value:
                raise InvalidMessageError(
                    f"Cannot change role of message {message.id} "
                    f"from {existing.get('role')} to {message.role.value}"
                )
            doc["messages"][index] = message.to_dict()
            self._save_doc(workspace_id, agent_id, doc)
            return True
        doc["messages"].append(message.to_dict())
        self._save_doc(workspace_id, agent_id, doc)
        return False

    def replace_all(
        self,
        workspace_id: str,
        agent_id: str,
        messages: list[ConversationMessage],
    ) -> None:
        """Atomically replace the whole log (checkpoint restore)."""
        doc = self._load_doc(workspace_id, agent_id)
        doc["messages"] = [m.to_dict() for m in messages]
        self._save_doc(workspace_id, agent_id, doc)
        logger.info(
            "Replaced conversation %s/%s with %d messages",
            workspace_id, agent_id[:8], len(messages),
        )

    def latest_session_id(self, workspace_id: str, agent_id: str) -> str | None:
        """CLI session id on the most recent message that carries one."""
        return latest_session_id(self.read(workspace_id, agent_id))

    def delete(self, workspace_id: str, agent_id: str) -> bool:
        path = self._layout.conversation(workspace_id, agent_id)
        if not path.exists():
            return False
        path.unlink()
        return True


def latest_session_id(messages: list[ConversationMessage]) -> str | None:
    for message in reversed(messages):
        if message.session_id:
            return message.session_id
    return None


def command_history(messages: list[ConversationMessage]) -> list[str]:
    """User inputs in order, as replayed by the terminal's history keys."""
    return [m.content for m in messages if m.role == MessageRole.USER]
