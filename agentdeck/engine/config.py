"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTDECK_* env vars
or the ``engine:`` section of the YAML config.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Tools that mutate the workspace or execute commands. Compared
# case-insensitively against the bare tool name.
DEFAULT_DANGEROUS_TOOLS = [
    "bash",
    "str_replace_editor",
    "computer",
    "write",
    "edit",
    "multiedit",
    "notebookedit",
]

DEFAULT_FILE_MUTATING_TOOLS = [
    "write",
    "edit",
    "multiedit",
    "notebookedit",
    "str_replace_editor",
]


@dataclass
class ProviderConfig:
    """Configuration for a single model back-end."""
    type: str  # "claude" or "gemini"
    command: str | None = None
    model_id: str | None = None
    api_key_env: str | None = None
    history_window: int | None = None
    turn_timeout_seconds: float | None = None


@dataclass
class EngineConfig:
    """Conversation engine configuration."""

    storage_root: str = "storage"
    default_model: str = "claude"

    max_agents_per_workspace: int = 4
    # Single source for the approval timer and the UI countdown copy.
    approval_timeout_seconds: float = 300.0

    # Streaming persistence cadence (whichever comes first).
    persist_every_chunks: int = 5
    persist_interval_seconds: float = 2.0

    # A recorded CLI session older than this is not resumed.
    session_max_age_hours: float = 24.0

    dangerous_tools: list[str] = field(
        default_factory=lambda: list(DEFAULT_DANGEROUS_TOOLS),
    )
    file_mutating_tools: list[str] = field(
        default_factory=lambda: list(DEFAULT_FILE_MUTATING_TOOLS),
    )

    log_level: str = "INFO"

    @property
    def storage_path(self) -> Path:
        return Path(self.storage_root).expanduser()

    def is_dangerous_tool(self, tool_name: str) -> bool:
        return bare_tool_name(tool_name) in {
            t.lower() for t in self.dangerous_tools
        }

    def is_file_mutating_tool(self, tool_name: str) -> bool:
        return bare_tool_name(tool_name) in {
            t.lower() for t in self.file_mutating_tools
        }

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTDECK_* environment variables."""
        deck_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTDECK_")
        }
        if deck_vars:
            logger.info(
                "EngineConfig.from_env: AGENTDECK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(deck_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no AGENTDECK_* env vars set, using defaults")

        config = cls(
            storage_root=os.getenv(
                "AGENTDECK_STORAGE_ROOT", cls.storage_root
            ),
            default_model=os.getenv(
                "AGENTDECK_DEFAULT_MODEL", cls.default_model
            ),
            max_agents_per_workspace=int(os.getenv(
                "AGENTDECK_MAX_AGENTS", str(cls.max_agents_per_workspace)
            )),
            approval_timeout_seconds=float(os.getenv(
                "AGENTDECK_APPROVAL_TIMEOUT",
                str(cls.approval_timeout_seconds),
            )),
            persist_every_chunks=int(os.getenv(
                "AGENTDECK_PERSIST_CHUNKS", str(cls.persist_every_chunks)
            )),
            persist_interval_seconds=float(os.getenv(
                "AGENTDECK_PERSIST_INTERVAL",
                str(cls.persist_interval_seconds),
            )),
            session_max_age_hours=float(os.getenv(
                "AGENTDECK_SESSION_MAX_AGE_HOURS",
                str(cls.session_max_age_hours),
            )),
            log_level=os.getenv("AGENTDECK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: storage=%s model=%s max_agents=%d approval_timeout=%.0fs",
            config.storage_root, config.default_model,
            config.max_agents_per_workspace, config.approval_timeout_seconds,
        )
        return config


def bare_tool_name(tool_name: str) -> str:
    """Lowercased tool name without an MCP ``server__`` prefix."""
    return tool_name.lower().split("__")[-1]
