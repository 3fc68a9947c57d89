"""Human-in-the-loop approval for dangerous tool invocations.

One gate per agent session. At most one request is outstanding; a
second dangerous tool use waits behind the first and is only surfaced
after the first clears. An unanswered request auto-denies after the
configured timeout.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ApprovalNotPendingError

logger = logging.getLogger(__name__)


class GateState(Enum):
    IDLE = "idle"
    PENDING = "pending"


@dataclass
class PendingToolApproval:
    tool_name: str
    operation_summary: str
    message_id: str
    tool_use_id: str | None = None
    requires_approval: bool = True
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolName": self.tool_name,
            "operationSummary": self.operation_summary,
            "messageId": self.message_id,
            "toolUseId": self.tool_use_id,
            "requiresApproval": self.requires_approval,
            "createdAt": self.created_at,
        }


@dataclass
class ApprovalDecision:
    approved: bool
    reason: str  # "user" or "timeout"
    remember: bool = False


class ApprovalGate:
    """Idle -> Pending -> Idle state machine for one agent session."""

    def __init__(self, agent_id: str, timeout_seconds: float = 300.0) -> None:
        self._agent_id = agent_id
        self._timeout = timeout_seconds
        self._lock = asyncio.Lock()
        self._pending: PendingToolApproval | None = None
        self._future: asyncio.Future[ApprovalDecision | None] | None = None

    @property
    def state(self) -> GateState:
        return GateState.PENDING if self._pending is not None else GateState.IDLE

    @property
    def pending(self) -> PendingToolApproval | None:
        return self._pending

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    async def request(
        self,
        approval: PendingToolApproval,
        on_pending: Callable[[PendingToolApproval], Awaitable[None]] | None = None,
    ) -> ApprovalDecision | None:
        """Raise *approval* and wait for its resolution.

        ``on_pending`` (optional async callable) runs once the request
        has actually become the outstanding one, so callers can surface
        it only then. Returns None when the gate was force-cleared.
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            future: asyncio.Future[ApprovalDecision | None] = loop.create_future()
            self._pending = approval
            self._future = future
            logger.info(
                "Approval pending agent=%s message=%s tool=%s",
                self._agent_id[:8], approval.message_id[:12], approval.tool_name,
            )
            try:
                if on_pending is not None:
                    await on_pending(approval)
                if self._timeout > 0:
                    decision = await asyncio.wait_for(
                        asyncio.shield(future), timeout=self._timeout,
                    )
                else:
                    decision = await future
            except asyncio.TimeoutError:
                decision = ApprovalDecision(approved=False, reason="timeout")
                if not future.done():
                    future.set_result(decision)
                logger.info(
                    "Approval timed out after %.0fs, denying agent=%s tool=%s",
                    self._timeout, self._agent_id[:8], approval.tool_name,
                )
            finally:
                if self._future is future:
                    self._pending = None
                    self._future = None
            if decision is not None:
                logger.info(
                    "Approval resolved agent=%s tool=%s approved=%s reason=%s",
                    self._agent_id[:8], approval.tool_name,
                    decision.approved, decision.reason,
                )
            return decision

    def resolve(
        self,
        message_id: str,
        tool_name: str,
        approved: bool,
        *,
        remember: bool = False,
    ) -> ApprovalDecision:
        """Resolve the outstanding request from a user decision."""
        pending = self._pending
        future = self._future
        if (
            pending is None
            or future is None
            or future.done()
            or pending.message_id != message_id
            or pending.tool_name != tool_name
        ):
            logger.warning(
                "Approval resolve ignored agent=%s message=%s tool=%s (missing or mismatched)",
                self._agent_id[:8], message_id[:12], tool_name,
            )
            raise ApprovalNotPendingError(self._agent_id, message_id, tool_name)
        decision = ApprovalDecision(approved=approved, reason="user", remember=remember)
        future.set_result(decision)
        return decision

    def force_clear(self) -> bool:
        """Drop the outstanding request without issuing a decision."""
        future = self._future
        if future is None or future.done():
            return False
        future.set_result(None)
        logger.info(
            "Approval force-cleared agent=%s tool=%s",
            self._agent_id[:8],
            self._pending.tool_name if self._pending else "?",
        )
        return True
