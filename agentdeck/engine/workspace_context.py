"""Workspace context loading and prompt assembly for agent turns."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentdeck.shared.models.message import ConversationMessage

logger = logging.getLogger(__name__)


@dataclass
class WorkspaceContext:
    workspace_id: str
    name: str
    description: str = "Development workspace"
    context_items: list[dict[str, Any]] = field(default_factory=list)
    target_summary: str = "No target summary available"
    has_git: bool = False
    permissions: str | None = None


def load_workspace_context(workspace_dir: Path, workspace_id: str) -> WorkspaceContext:
    """Read the manifest, target summary and permissions document.

    Every piece is optional; missing or unreadable files fall back to
    defaults.
    """
    ctx = WorkspaceContext(workspace_id=workspace_id, name=workspace_id)

    manifest_path = workspace_dir / "context" / "context-manifest.json"
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        if isinstance(manifest, dict):
            ctx.name = manifest.get("name") or workspace_id
            ctx.description = manifest.get("description") or ctx.description
            items = manifest.get("context_items") or []
            ctx.context_items = [i for i in items if isinstance(i, dict)]
    except FileNotFoundError:
        logger.debug("No context manifest at %s", manifest_path)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Could not read context manifest %s: %s", manifest_path, exc)

    summary_path = workspace_dir / "target" / "summary.md"
    try:
        ctx.target_summary = summary_path.read_text(encoding="utf-8")
    except OSError:
        pass

    ctx.has_git = (workspace_dir / "target" / ".git").exists()

    permissions_path = workspace_dir / "agents" / "permissions.md"
    try:
        ctx.permissions = permissions_path.read_text(encoding="utf-8").strip() or None
    except OSError:
        ctx.permissions = None

    return ctx


def build_system_prompt(ctx: WorkspaceContext, agent_id: str) -> str:
    items = "\n".join(
        f"{i}. {item.get('title', 'Untitled')} ({item.get('type', 'unknown')})"
        for i, item in enumerate(ctx.context_items, start=1)
    )
    sections = [
        f'You are an AI assistant helping with software development tasks '
        f'in a workspace called "{ctx.name}".',
        "IMPORTANT CONSTRAINTS:\n"
        "- You are ONLY allowed to work within the current workspace directory\n"
        "- The workspace has target/ (code), context/ (reference), "
        "feedback/ (user feedback) and agents/ (agent data)\n"
        "- NEVER attempt to access files outside the workspace\n"
        "- Always use relative paths from the workspace root",
        "WORKSPACE CONTEXT:\n"
        f"- Name: {ctx.name}\n"
        f"- Description: {ctx.description}\n"
        f"- Available Context Items: {len(ctx.context_items)}\n"
        f"- Git Repository: {'Yes' if ctx.has_git else 'No'}",
        f"TARGET SUMMARY:\n{ctx.target_summary.strip()}",
    ]
    if items:
        sections.append(f"AVAILABLE CONTEXT:\n{items}")
    if ctx.permissions:
        sections.append(f"WORKSPACE PERMISSIONS:\n{ctx.permissions}")
    sections.append(
        f"Your agent ID is: {agent_id}\n"
        f"You can save agent-specific data in: agents/{agent_id}/"
    )
    return "\n\n".join(sections)


def build_turn_prompt(
    history: list[ConversationMessage],
    user_message: str,
    *,
    history_window: int,
    resumed: bool,
) -> str:
    """Prompt text sent to the CLI for one turn.

    A resumed CLI session already holds the earlier context, so only the
    new message is sent. Otherwise the last *history_window* messages are
    replayed as a transcript.
    """
    if resumed or history_window <= 0 or not history:
        return user_message
    recent = history[-history_window:]
    transcript = "\n\n".join(
        f"{m.role.value}: {m.content}" for m in recent if m.content
    )
    if not transcript:
        return user_message
    return f"CONVERSATION HISTORY:\n{transcript}\n\nUSER: {user_message}"
