"""Exception hierarchy for the conversation engine.

One exception per failure mode so callers (HTTP handlers, the CLI)
can map them to distinct responses.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""


class WorkspaceNotFoundError(EngineError):
    """The workspace directory does not exist."""
    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class AgentNotFoundError(EngineError):
    """No agent with this id is deployed in the workspace."""
    def __init__(self, workspace_id: str, agent_id: str):
        self.workspace_id = workspace_id
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class CapacityExceededError(EngineError):
    """Workspace already holds the maximum number of agents."""
    code = "capacity_exceeded"

    def __init__(self, workspace_id: str, limit: int):
        self.workspace_id = workspace_id
        self.limit = limit
        super().__init__(
            f"Maximum of {limit} agents allowed per workspace. "
            f"Close an agent before deploying a new one."
        )


class TurnInProgressError(EngineError):
    """A turn is already streaming for this agent."""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(
            f"Agent {agent_id} is already processing a message"
        )


class ProcessFailureError(EngineError):
    """The agent CLI failed to start or exited abnormally."""
    def __init__(
        self, provider: str, detail: str, returncode: int | None = None,
    ):
        self.provider = provider
        self.detail = detail
        self.returncode = returncode
        rc = f" (rc={returncode})" if returncode is not None else ""
        super().__init__(f"{provider} process failed{rc}: {detail}")


class ProviderNotAvailableError(EngineError):
    """Requested model back-end is not registered or not installed."""
    def __init__(self, provider_name: str):
        self.provider_name = provider_name
        super().__init__(f"Provider not available: {provider_name}")


class CheckpointNotFoundError(EngineError):
    def __init__(self, checkpoint_id: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint not found: {checkpoint_id}")


class CheckpointStorageError(EngineError):
    """A checkpoint could not be written; nothing was left behind."""
    def __init__(self, checkpoint_id: str, reason: str):
        self.checkpoint_id = checkpoint_id
        self.reason = reason
        super().__init__(
            f"Failed to store checkpoint {checkpoint_id}: {reason}"
        )


class ApprovalNotPendingError(EngineError):
    """No pending tool approval matches the resolve request."""
    def __init__(self, agent_id: str, message_id: str, tool_name: str):
        self.agent_id = agent_id
        self.message_id = message_id
        self.tool_name = tool_name
        super().__init__(
            f"No pending approval for tool {tool_name} on message {message_id}"
        )


class InvalidMessageError(EngineError):
    """A conversation write violates the log invariants."""
