"""Resumption of an agent's CLI session after a reconnect.

The CLI session id of the newest message that carries one is probed
against the back-end. A resumable id is handed to the next turn so it
continues the CLI-side context instead of replaying history. Every
failure simply means the next turn starts fresh; nothing here raises.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from agentdeck.shared.models.message import parse_iso, system_notice
from agentdeck.shared.services.conversation_store import latest_session_id

from .errors import EngineError

if TYPE_CHECKING:
    from agentdeck.shared.services.agent_store import AgentStore
    from agentdeck.shared.services.conversation_store import ConversationStore

    from .config import EngineConfig
    from .process_manager import ProcessManager

logger = logging.getLogger(__name__)


@dataclass
class ResumeOutcome:
    restored: bool
    reason: str
    session_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "restored": self.restored,
            "reason": self.reason,
            "sessionId": self.session_id,
        }


class SessionResumer:
    def __init__(
        self,
        config: EngineConfig,
        manager: ProcessManager,
        conversations: ConversationStore,
        agents: AgentStore,
    ) -> None:
        self._config = config
        self._manager = manager
        self._conversations = conversations
        self._agents = agents

    async def resume(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str | None = None,
        model: str | None = None,
    ) -> ResumeOutcome:
        """Try to resume the agent's most recent CLI session.

        A caller-supplied *session_id* is only honoured when it matches
        the newest one in the log.
        """
        try:
            outcome = await self._resume(workspace_id, agent_id, session_id, model)
        except EngineError as exc:
            outcome = ResumeOutcome(False, f"error: {exc}")
        except OSError as exc:
            logger.warning("Session resume I/O failure agent=%s: %s", agent_id[:8], exc)
            outcome = ResumeOutcome(False, "storage error")

        if not outcome.restored:
            logger.info(
                "Session not resumed agent=%s: %s (next turn starts fresh)",
                agent_id[:8], outcome.reason,
            )
            try:
                self._agents.clear_session(workspace_id, agent_id)
            except (EngineError, OSError):
                logger.debug("Could not clear session state for %s", agent_id[:8])
            self._manager.reset_session(workspace_id, agent_id)
        return outcome

    async def _resume(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str | None,
        model: str | None,
    ) -> ResumeOutcome:
        if self._manager.is_processing(workspace_id, agent_id):
            return ResumeOutcome(False, "turn in progress")

        messages = self._conversations.read(workspace_id, agent_id)
        latest = latest_session_id(messages)
        if latest is None:
            return ResumeOutcome(False, "no session recorded")
        if session_id and session_id != latest:
            return ResumeOutcome(False, "session id is not the latest")

        live = self._manager.get_session(workspace_id, agent_id)
        if live is not None and latest in (live.resume_session_id, live.session_id):
            # Already handed to the next turn; no second notice.
            return ResumeOutcome(True, "already resumed", latest)

        state = self._agents.load_state(workspace_id, agent_id)
        if state.last_session_id == latest and state.last_session_time:
            recorded = parse_iso(state.last_session_time)
            max_age = timedelta(hours=self._config.session_max_age_hours)
            if recorded and datetime.now(timezone.utc) - recorded > max_age:
                return ResumeOutcome(False, "session expired", latest)

        model = self._manager.resolve_model(workspace_id, agent_id, model)
        if not await self._manager.probe_resume(workspace_id, agent_id, latest, model):
            return ResumeOutcome(False, "session unknown to CLI", latest)

        self._manager.set_resume(workspace_id, agent_id, model, latest)
        self._conversations.append(
            workspace_id,
            agent_id,
            system_notice(
                f"Resumed session {latest[:8]}...",
                session_resumed=True,
                resumed_session_id=latest,
            ),
        )
        logger.info("Session resumed agent=%s session=%s", agent_id[:8], latest[:8])
        return ResumeOutcome(True, "resumed", latest)
