"""Conversation message and tool call models."""
from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _rand_suffix(length: int = 9) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choices(alphabet, k=length))


def gen_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{_rand_suffix()}"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ToolUse:
    id: str
    name: str
    input: Any = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolUse:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            input=data.get("input"),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


@dataclass
class ToolResult:
    tool_use_id: str
    content: str = ""
    is_error: bool = False
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_use_id": self.tool_use_id,
            "is_error": self.is_error,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolResult:
        return cls(
            tool_use_id=str(data.get("tool_use_id", "")),
            content=str(data.get("content") or ""),
            is_error=bool(data.get("is_error", False)),
            timestamp=data.get("timestamp") or utcnow_iso(),
        )


@dataclass
class ConversationMessage:
    """One entry in an agent's conversation log.

    ``metadata`` is an open bag. Keys written by the engine: ``model``,
    ``backend``, ``success``, ``session_id``, ``tools``, ``usage``,
    ``tool_uses``, ``tool_results``, ``thinking``, ``result``,
    ``notices``, ``streaming``, ``interrupted``, ``error`` and the
    bookkeeping flags ``checkpoint_restored`` / ``session_resumed``.
    """

    role: MessageRole
    content: str = ""
    id: str = field(default_factory=gen_message_id)
    timestamp: str = field(default_factory=utcnow_iso)
    metadata: dict[str, Any] | None = None

    @property
    def session_id(self) -> str | None:
        if not self.metadata:
            return None
        value = self.metadata.get("session_id")
        return str(value) if value else None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "role": self.role.value,
            "content": self.content,
        }
        if self.metadata is not None:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        metadata = data.get("metadata")
        return cls(
            role=MessageRole(data.get("role", "assistant")),
            content=str(data.get("content") or ""),
            id=str(data.get("id") or gen_message_id()),
            timestamp=data.get("timestamp") or utcnow_iso(),
            metadata=dict(metadata) if isinstance(metadata, dict) else None,
        )


def system_notice(content: str, **flags: Any) -> ConversationMessage:
    """Build a system-role notice message carrying bookkeeping *flags*."""
    return ConversationMessage(
        role=MessageRole.SYSTEM,
        content=content,
        metadata=dict(flags) if flags else None,
    )
