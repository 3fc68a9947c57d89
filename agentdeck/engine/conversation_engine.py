"""Conversation engine: wires stores, process manager and adapters together.

The HTTP server and the CLI talk to this object only; nothing below it
knows about HTTP.
"""
from __future__ import annotations

import logging
from typing import Any

from agentdeck.shared.models.agent import AgentRecord
from agentdeck.shared.services.agent_store import AgentStore
from agentdeck.shared.services.checkpoint_store import CheckpointStore
from agentdeck.shared.services.conversation_store import ConversationStore
from agentdeck.shared.services.durable_write import atomic_write_json
from agentdeck.shared.services.workspace_paths import StorageLayout

from .checkpoint_manager import CheckpointManager
from .config import EngineConfig
from .process_manager import ProcessManager
from .providers.registry import ProviderRegistry, build_provider_registry
from .session_resume import SessionResumer
from .stream_adapter import StreamAdapter
from .yaml_config import DeckConfig

logger = logging.getLogger(__name__)


class ConversationEngine:
    """Composition root for one storage root."""

    def __init__(self, config: EngineConfig, providers: ProviderRegistry) -> None:
        self.config = config
        self.layout = StorageLayout(config.storage_path)
        self.agents = AgentStore(self.layout, config.max_agents_per_workspace)
        self.conversations = ConversationStore(self.layout)
        self.manager = ProcessManager(
            config, self.layout, self.agents, self.conversations, providers,
        )
        self.adapter = StreamAdapter(config, self.manager, self.conversations, self.agents)
        self.resumer = SessionResumer(config, self.manager, self.conversations, self.agents)
        self.checkpoints = CheckpointManager(
            CheckpointStore(self.layout.checkpoints_dir()),
            self.conversations,
            self.agents,
            self.manager,
        )
        logger.info(
            "ConversationEngine ready storage=%s providers=%s",
            self.layout.root, ", ".join(providers.list_names()) or "<none>",
        )

    @classmethod
    def from_deck_config(cls, deck: DeckConfig) -> ConversationEngine:
        return cls(deck.engine, build_provider_registry(deck.providers))

    @property
    def providers(self) -> ProviderRegistry:
        return self.manager.providers

    def init_workspace(
        self, workspace_id: str, name: str | None = None, description: str = "",
    ) -> str:
        """Create the workspace skeleton and a context manifest if absent."""
        self.agents.ensure_workspace(workspace_id)
        workspace_dir = self.layout.workspace_dir(workspace_id)
        manifest = workspace_dir / "context" / "context-manifest.json"
        if not manifest.exists():
            atomic_write_json(manifest, {
                "name": name or workspace_id,
                "description": description,
                "context_items": [],
            })
            logger.info("Workspace initialized id=%s dir=%s", workspace_id, workspace_dir)
        return str(workspace_dir)

    def create_agent(
        self,
        workspace_id: str,
        name: str,
        *,
        title: str | None = None,
        preferred_model: str | None = None,
    ) -> AgentRecord:
        return self.agents.create_agent(
            workspace_id, name, title=title, preferred_model=preferred_model,
        )

    async def delete_agent(self, workspace_id: str, agent_id: str) -> AgentRecord:
        """Terminate the agent's session and remove its record; keep the log."""
        self.agents.get_agent(workspace_id, agent_id)
        await self.manager.terminate(workspace_id, agent_id)
        return self.agents.delete_agent(workspace_id, agent_id)

    def agent_status(self, workspace_id: str) -> dict[str, Any]:
        summary = self.agents.status_summary(workspace_id)
        for entry in summary["agents"]:
            entry["is_processing"] = self.manager.is_processing(workspace_id, entry["id"])
        return summary

    def history(self, workspace_id: str, agent_id: str) -> dict[str, Any]:
        """Interaction summary for one agent."""
        agent = self.agents.get_agent(workspace_id, agent_id)
        state = self.agents.load_state(workspace_id, agent_id)
        messages = self.conversations.read(workspace_id, agent_id)
        counts: dict[str, int] = {"user": 0, "assistant": 0, "system": 0}
        tool_uses = 0
        for message in messages:
            counts[message.role.value] += 1
            tool_uses += len((message.metadata or {}).get("tool_uses") or [])
        return {
            "agent": agent.to_dict(),
            "state": state.to_dict(),
            "message_count": len(messages),
            "by_role": counts,
            "tool_use_count": tool_uses,
            "last_message_at": messages[-1].timestamp if messages else None,
            "is_processing": self.manager.is_processing(workspace_id, agent_id),
        }

    async def shutdown(self) -> None:
        await self.manager.shutdown()
        logger.info("ConversationEngine shut down")
