"""Client-side agent tab state and addressed command channels.

``SessionRegistry`` is the single source of truth for every open agent
tab; views subscribe to the agents they render. ``CommandChannel`` gives
each agent its own queue for inject-and-autosend commands, so a command
can only ever reach the tab it was addressed to.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from agentdeck.shared.models.message import ConversationMessage

logger = logging.getLogger(__name__)

Subscriber = Callable[["AgentTabState"], None]

_ANY = "*"


@dataclass
class AgentTabState:
    """Everything the terminal shows for one agent."""
    workspace_id: str
    agent_id: str
    name: str = ""
    model: str | None = None
    messages: list[ConversationMessage] = field(default_factory=list)
    history_loaded: bool = False
    is_processing: bool = False
    # Set on send, cleared by the first content delta.
    awaiting_first_token: bool = False
    session_resumed: bool = False
    streaming_message_id: str | None = None
    pending_approval: dict[str, Any] | None = None
    command_history: list[str] = field(default_factory=list)
    history_index: int = -1
    last_error: str | None = None
    last_notice: str | None = None
    draft: str = ""

    def find_message(self, message_id: str) -> ConversationMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class SessionRegistry:
    """Agent tab states keyed by agent id, with change subscriptions."""

    def __init__(self) -> None:
        self._tabs: dict[str, AgentTabState] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._tabs

    def get(self, agent_id: str) -> AgentTabState | None:
        return self._tabs.get(agent_id)

    def require(self, agent_id: str) -> AgentTabState:
        tab = self._tabs.get(agent_id)
        if tab is None:
            raise KeyError(f"No open tab for agent {agent_id}")
        return tab

    def tabs(self) -> list[AgentTabState]:
        return list(self._tabs.values())

    def open(self, workspace_id: str, agent_id: str, **fields: Any) -> AgentTabState:
        """Return the agent's tab, creating it on first use."""
        tab = self._tabs.get(agent_id)
        if tab is None:
            tab = AgentTabState(workspace_id=workspace_id, agent_id=agent_id, **fields)
            self._tabs[agent_id] = tab
            logger.debug("Tab opened agent=%s", agent_id[:8])
            self.notify(agent_id)
        return tab

    def close(self, agent_id: str) -> AgentTabState | None:
        tab = self._tabs.pop(agent_id, None)
        self._subscribers.pop(agent_id, None)
        return tab

    def update(self, agent_id: str, **changes: Any) -> AgentTabState:
        tab = self.require(agent_id)
        for key, value in changes.items():
            if not hasattr(tab, key):
                raise AttributeError(f"AgentTabState has no field {key!r}")
            setattr(tab, key, value)
        self.notify(agent_id)
        return tab

    def subscribe(self, agent_id: str, callback: Subscriber) -> Callable[[], None]:
        """Call *callback* on every change to *agent_id*'s tab.

        Returns a function that removes the subscription.
        """
        self._subscribers.setdefault(agent_id, []).append(callback)
        return lambda: self.unsubscribe(agent_id, callback)

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        return self.subscribe(_ANY, callback)

    def unsubscribe(self, agent_id: str, callback: Subscriber) -> None:
        callbacks = self._subscribers.get(agent_id)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            del self._subscribers[agent_id]

    def notify(self, agent_id: str) -> None:
        tab = self._tabs.get(agent_id)
        if tab is None:
            return
        for callback in [*self._subscribers.get(agent_id, ()), *self._subscribers.get(_ANY, ())]:
            try:
                callback(tab)
            except Exception:
                logger.exception("Tab subscriber failed for agent %s", agent_id[:8])


@dataclass
class InjectedCommand:
    text: str
    autosend: bool = True


class CommandChannel:
    """One bounded command queue per agent id."""

    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._queues: dict[str, asyncio.Queue[InjectedCommand]] = {}
        self._closed: set[str] = set()

    def open(self, agent_id: str) -> None:
        self._queues.setdefault(agent_id, asyncio.Queue(maxsize=self._maxsize))
        self._closed.discard(agent_id)

    def close(self, agent_id: str) -> None:
        """Stop the agent's consumer and drop anything still queued."""
        self._closed.add(agent_id)
        self._queues.pop(agent_id, None)

    def is_open(self, agent_id: str) -> bool:
        return agent_id in self._queues

    async def send(self, agent_id: str, text: str, *, autosend: bool = True) -> bool:
        """Queue *text* for *agent_id* only. False when no such channel is open."""
        queue = self._queues.get(agent_id)
        if queue is None:
            logger.warning("Dropping command for unknown agent %s", agent_id[:8])
            return False
        try:
            await asyncio.wait_for(
                queue.put(InjectedCommand(text=text, autosend=autosend)), timeout=30.0,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Command queue for agent %s blocked for 30s, dropping (size: %d)",
                agent_id[:8], queue.qsize(),
            )
            return False
        return True

    def pending(self, agent_id: str) -> int:
        queue = self._queues.get(agent_id)
        return queue.qsize() if queue else 0

    async def consume(self, agent_id: str) -> AsyncIterator[InjectedCommand]:
        """Yield commands addressed to *agent_id* until its channel closes."""
        self.open(agent_id)
        queue = self._queues[agent_id]
        while agent_id not in self._closed:
            try:
                command = await asyncio.wait_for(queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield command
