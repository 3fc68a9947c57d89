"""Checkpoint save / restore on top of the checkpoint and conversation stores."""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentdeck.shared.models.checkpoint import Checkpoint, gen_checkpoint_id
from agentdeck.shared.models.message import (
    ConversationMessage,
    system_notice,
    utcnow_iso,
)
from agentdeck.shared.services.conversation_store import (
    command_history,
    latest_session_id,
)

from .errors import InvalidMessageError, TurnInProgressError

if TYPE_CHECKING:
    from agentdeck.shared.services.agent_store import AgentStore
    from agentdeck.shared.services.checkpoint_store import CheckpointStore
    from agentdeck.shared.services.conversation_store import ConversationStore

    from .process_manager import ProcessManager

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    checkpoint: Checkpoint
    messages: list[ConversationMessage]
    command_history: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint": {
                k: v for k, v in self.checkpoint.to_dict().items() if k != "messages"
            },
            "messages": [m.to_dict() for m in self.messages],
            "selectedModel": self.checkpoint.selected_model,
            "commandHistory": list(self.command_history),
        }


class CheckpointManager:
    def __init__(
        self,
        store: CheckpointStore,
        conversations: ConversationStore,
        agents: AgentStore,
        manager: ProcessManager,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._agents = agents
        self._manager = manager

    @property
    def store(self) -> CheckpointStore:
        return self._store

    def save(
        self,
        workspace_id: str,
        agent_id: str,
        name: str,
        description: str = "",
        *,
        messages: list[ConversationMessage] | None = None,
        selected_model: str | None = None,
        agent_name: str | None = None,
        agent_title: str | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Snapshot the agent's conversation and return the new id.

        Without *messages* the live log is used. The live log is never
        modified.
        """
        if not name or not name.strip():
            raise InvalidMessageError("Checkpoint name is required")
        if messages is None:
            messages = self._conversations.read(workspace_id, agent_id)
        snapshot = copy.deepcopy(messages)
        if agent_name is None or selected_model is None:
            agent = self._agents.get_agent(workspace_id, agent_id)
            agent_name = agent_name or agent.name
            agent_title = agent_title or agent.title
            selected_model = selected_model or agent.preferred_model

        checkpoint = Checkpoint(
            id=gen_checkpoint_id(),
            name=name.strip(),
            description=description or "",
            messages=snapshot,
            agent_name=agent_name,
            agent_title=agent_title,
            selected_model=selected_model,
            source_agent_id=agent_id,
            source_workspace_id=workspace_id,
            tags=list(tags or []),
            metadata={
                **(metadata or {}),
                "createdAt": utcnow_iso(),
                "messageCount": len(snapshot),
                "lastSessionId": latest_session_id(snapshot),
            },
        )
        return self._store.save(checkpoint)

    def load(self, checkpoint_id: str) -> Checkpoint:
        return self._store.load(checkpoint_id)

    def restore(
        self, workspace_id: str, agent_id: str, checkpoint_id: str,
    ) -> RestoreResult:
        """Replace the agent's live log with the checkpoint's messages.

        The checkpoint is read first; if that fails nothing about the
        live conversation changes.
        """
        checkpoint = self._store.load(checkpoint_id)
        self._agents.get_agent(workspace_id, agent_id)
        if self._manager.is_processing(workspace_id, agent_id):
            raise TurnInProgressError(agent_id)

        messages = copy.deepcopy(checkpoint.messages)
        messages.append(system_notice(
            f'Checkpoint "{checkpoint.name}" restored ({checkpoint.message_count} messages)',
            checkpoint_restored=True,
            checkpoint_id=checkpoint.id,
        ))
        self._conversations.replace_all(workspace_id, agent_id, messages)

        if checkpoint.selected_model:
            self._agents.update_agent(
                workspace_id, agent_id, preferred_model=checkpoint.selected_model,
            )
        # The restored transcript is replayed as history; any live CLI
        # session belongs to the discarded conversation.
        self._manager.reset_session(workspace_id, agent_id)
        self._agents.clear_session(workspace_id, agent_id)
        self._store.record_usage(checkpoint.id)

        logger.info(
            "Checkpoint restored id=%s into agent=%s (%d messages)",
            checkpoint.id, agent_id[:8], checkpoint.message_count,
        )
        return RestoreResult(
            checkpoint=checkpoint,
            messages=messages,
            command_history=command_history(messages),
        )

    def search(self, query: str) -> list[dict[str, Any]]:
        return self._store.search(query)

    def list(self, agent_id: str | None = None) -> list[dict[str, Any]]:
        return self._store.list(agent_id)

    def delete(self, checkpoint_id: str) -> bool:
        return self._store.delete(checkpoint_id)

    def rate(self, checkpoint_id: str, rating: int) -> None:
        self._store.rate(checkpoint_id, rating)
