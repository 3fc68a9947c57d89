"""Interactive terminal chat (``agentdeck chat``).

Line-oriented REPL on top of ``TerminalClientController``. Turns run as
background tasks so ``/abort``, ``/approve`` and ``/deny`` stay usable
while an agent is streaming.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agentdeck.adapters.events import FileChanged
from agentdeck.shared.models.message import ConversationMessage, MessageRole

from .api import AgentDeckClient, AgentDeckClientError
from .controller import TerminalClientController, TurnResult
from .registry import AgentTabState

logger = logging.getLogger(__name__)

HELP = """\
/agents                     list agents in this workspace
/new NAME [MODEL]           create an agent and switch to it
/switch NAME|ID             switch to another agent
/close                      close the current tab
/abort                      stop the running turn
/approve [remember]         approve the pending tool call
/deny                       deny the pending tool call
/checkpoint save NAME [DESCRIPTION]
/checkpoint list | search QUERY | show ID | restore ID
/checkpoint rate ID 1-5 | delete ID
/rename TITLE               retitle the current agent
/delete                     stop and delete the current agent
/resume                     resume the agent's CLI session
/history                    interaction summary
/quit                       leave
"""

_ROLE_STYLE = {
    MessageRole.USER: "bold cyan",
    MessageRole.ASSISTANT: "bold green",
    MessageRole.SYSTEM: "yellow",
}


def _short(value: str | None, width: int = 8) -> str:
    return (value or "")[:width]


class TerminalChat:
    """rich-rendered chat loop for one workspace."""

    def __init__(
        self,
        controller: TerminalClientController,
        client: AgentDeckClient,
        console: Console | None = None,
    ) -> None:
        self._controller = controller
        self._client = client
        self.console = console or Console()
        self.current: str | None = None
        self._turns: dict[str, asyncio.Task[TurnResult]] = {}
        self._injectors: dict[str, asyncio.Task[None]] = {}
        self._printed: dict[str, int] = {}
        self._notices: dict[str, tuple[str | None, str | None]] = {}
        self._waiting: set[str] = set()
        self._running = True
        controller.registry.subscribe_all(self._on_tab_change)
        controller.on_approval_required(self._on_approval_required)
        controller.on_file_changed(self._on_file_changed)

    # ── Rendering ──

    def render_message(self, message: ConversationMessage) -> None:
        style = _ROLE_STYLE.get(message.role, "")
        meta = message.metadata or {}
        if message.role == MessageRole.ASSISTANT:
            self.console.print(Text("assistant", style=style))
            if message.content:
                self.console.print(Markdown(message.content))
            for tool in meta.get("tool_uses") or []:
                self.console.print(Text(f"  ⚙ {tool.get('name')}", style="dim"))
        elif message.role == MessageRole.USER:
            self.console.print(Text(f"> {message.content}", style=style))
        else:
            self.console.print(Text(message.content, style=style))

    def render_tab(self, tab: AgentTabState) -> None:
        self.console.rule(f"{tab.name or _short(tab.agent_id)} [{tab.model or 'default'}]")
        for message in tab.messages:
            self.render_message(message)
        self._printed = {
            m.id: len(m.content) for m in tab.messages if m.role == MessageRole.ASSISTANT
        }

    def _on_tab_change(self, tab: AgentTabState) -> None:
        if tab.agent_id != self.current:
            return
        if tab.awaiting_first_token:
            if tab.agent_id not in self._waiting:
                self._waiting.add(tab.agent_id)
                self.console.print(Text("waiting for the agent...", style="dim italic"))
        else:
            self._waiting.discard(tab.agent_id)
        if tab.streaming_message_id:
            message = tab.find_message(tab.streaming_message_id)
            if message is not None:
                shown = self._printed.get(message.id)
                if shown is None:
                    self.console.print(Text("assistant", style=_ROLE_STYLE[MessageRole.ASSISTANT]))
                    shown = 0
                if len(message.content) > shown:
                    self.console.print(message.content[shown:], end="", markup=False, highlight=False)
                self._printed[message.id] = len(message.content)
        notices = (tab.last_notice, tab.last_error)
        if notices != self._notices.get(tab.agent_id):
            self._notices[tab.agent_id] = notices
            if tab.last_notice:
                self.console.print(Text(tab.last_notice, style="dim italic"))
            if tab.last_error:
                self.console.print(Text(tab.last_error, style="bold red"))

    async def _on_approval_required(self, tab: AgentTabState, pending: dict[str, Any]) -> None:
        body = Text()
        body.append(f"{pending.get('toolName')}\n", style="bold")
        body.append(pending.get("operationSummary") or "")
        timeout = pending.get("timeoutSeconds") or 0
        hint = "\n\n/approve, /approve remember or /deny"
        if timeout:
            hint += f"  (auto-deny in {int(timeout)}s)"
        body.append(hint, style="dim")
        title = f"Approval needed: {tab.name or _short(tab.agent_id)}"
        self.console.print()
        self.console.print(Panel(body, title=title, border_style="magenta"))

    def _on_file_changed(self, tab: AgentTabState, event: FileChanged) -> None:
        if tab.agent_id == self.current:
            self.console.print(Text(f"\n  ✎ {event.path} ({event.tool_name})", style="dim"))

    # ── Agents ──

    async def _pick_initial_agent(self) -> None:
        agents = await self._client.list_agents(self._controller.workspace_id)
        if agents:
            await self._switch_to(agents[0])
        else:
            self.console.print("No agents yet. Create one with /new NAME.")

    async def _switch_to(self, agent: dict[str, Any]) -> None:
        self.current = agent["id"]
        tab = await self._controller.open_agent(agent)
        if agent["id"] not in self._injectors:
            self._injectors[agent["id"]] = asyncio.create_task(
                self._controller.run_injected(agent["id"]),
            )
        self.render_tab(tab)

    async def _find_agent(self, needle: str) -> dict[str, Any] | None:
        for agent in await self._client.list_agents(self._controller.workspace_id):
            if agent["id"] == needle or agent["id"].startswith(needle) or agent.get("name") == needle:
                return agent
        return None

    async def cmd_agents(self, args: list[str]) -> None:
        status = await self._client.agent_status(self._controller.workspace_id)
        table = Table(title=f"Agents ({status['total']}/{status['max_concurrent']})")
        table.add_column("id")
        table.add_column("name")
        table.add_column("model")
        table.add_column("status")
        for entry in status["agents"]:
            marker = "▶ " if entry["id"] == self.current else ""
            state = "processing" if entry.get("is_processing") else entry["state"]["status"]
            table.add_row(
                marker + _short(entry["id"]), entry.get("name") or "",
                entry.get("preferred_model") or "", state,
            )
        self.console.print(table)

    async def cmd_new(self, args: list[str]) -> None:
        if not args:
            self.console.print("usage: /new NAME [MODEL]")
            return
        try:
            agent = await self._client.create_agent(
                self._controller.workspace_id, args[0],
                preferred_model=args[1] if len(args) > 1 else None,
            )
        except AgentDeckClientError as exc:
            if exc.capacity_exceeded:
                self.console.print(Text(
                    f"{exc.message}. Close an agent first (/agents, then delete one).",
                    style="bold red",
                ))
                return
            raise
        await self._switch_to(agent)

    async def cmd_switch(self, args: list[str]) -> None:
        if not args:
            self.console.print("usage: /switch NAME|ID")
            return
        agent = await self._find_agent(args[0])
        if agent is None:
            self.console.print(Text(f"No agent matching {args[0]!r}", style="red"))
            return
        await self._switch_to(agent)

    async def cmd_close(self, args: list[str]) -> None:
        if self.current is None:
            return
        agent_id = self.current
        await self._controller.abort(agent_id)
        injector = self._injectors.pop(agent_id, None)
        self._controller.close_agent(agent_id)
        if injector is not None:
            injector.cancel()
        self.current = None
        self.console.print("Tab closed.")

    # ── Turn control ──

    async def cmd_abort(self, args: list[str]) -> None:
        if self.current is None or not await self._controller.abort(self.current):
            self.console.print("Nothing is running.")

    async def cmd_approve(self, args: list[str]) -> None:
        await self._resolve(True, remember="remember" in args)

    async def cmd_deny(self, args: list[str]) -> None:
        await self._resolve(False)

    async def _resolve(self, approved: bool, *, remember: bool = False) -> None:
        if self.current is None:
            return
        if not await self._controller.resolve_approval(self.current, approved, remember=remember):
            self.console.print("No approval is pending.")
            return
        self.console.print(Text("approved" if approved else "denied", style="magenta"))

    # ── Checkpoints / sessions ──

    async def cmd_checkpoint(self, args: list[str]) -> None:
        if self.current is None or not args:
            self.console.print("usage: /checkpoint save|list|search|restore ...")
            return
        action, rest = args[0], args[1:]
        if action == "save" and rest:
            checkpoint_id = await self._controller.save_checkpoint(
                self.current, rest[0], " ".join(rest[1:]),
            )
            self.console.print(f"saved {_short(checkpoint_id, 12)}")
        elif action in ("list", "search"):
            if action == "search":
                items = await self._controller.search_checkpoints(self.current, " ".join(rest))
            else:
                items = await self._controller.list_checkpoints(self.current)
            table = Table(title="Checkpoints")
            for column in ("id", "name", "messages", "model", "created"):
                table.add_column(column)
            for item in items:
                table.add_row(
                    item["id"], item.get("name", ""), str(item.get("message_count", "")),
                    item.get("model") or "", (item.get("created_at") or "")[:19],
                )
            self.console.print(table)
        elif action == "restore" and rest:
            try:
                await self._controller.restore_checkpoint(self.current, rest[0])
            except RuntimeError as exc:
                self.console.print(Text(str(exc), style="red"))
                return
            self.render_tab(self._controller.registry.require(self.current))
        elif action == "show" and rest:
            checkpoint = await self._controller.show_checkpoint(self.current, rest[0])
            self.console.print(Panel(
                f"{checkpoint.get('description') or ''}\n\n"
                f"{len(checkpoint.get('messages') or [])} messages, "
                f"model {checkpoint.get('selected_model') or '-'}, "
                f"rating {checkpoint.get('rating') or '-'}, "
                f"used {checkpoint.get('usage_count', 0)}x",
                title=checkpoint.get("name") or rest[0],
            ))
        elif action == "rate" and len(rest) == 2 and rest[1].isdigit():
            try:
                await self._controller.rate_checkpoint(self.current, rest[0], int(rest[1]))
            except ValueError as exc:
                self.console.print(Text(str(exc), style="red"))
                return
            self.console.print(f"rated {rest[1]}/5")
        elif action == "delete" and rest:
            await self._controller.delete_checkpoint(self.current, rest[0])
            self.console.print("deleted")
        else:
            self.console.print("usage: /checkpoint save|list|search|show|restore|rate|delete ...")

    async def cmd_rename(self, args: list[str]) -> None:
        if self.current is None or not args:
            self.console.print("usage: /rename TITLE")
            return
        await self._controller.rename_agent(self.current, " ".join(args))

    async def cmd_delete(self, args: list[str]) -> None:
        if self.current is None:
            return
        agent_id = self.current
        injector = self._injectors.pop(agent_id, None)
        await self._controller.delete_agent(agent_id)
        if injector is not None:
            injector.cancel()
        self.current = None
        self.console.print("Agent deleted.")

    async def cmd_resume(self, args: list[str]) -> None:
        if self.current is None:
            return
        if await self._controller.resume_session(self.current):
            self.console.print("Session resumed.")
        else:
            self.console.print("No resumable session; the next message starts fresh.")

    async def cmd_history(self, args: list[str]) -> None:
        if self.current is None:
            return
        data = await self._client.history(self._controller.workspace_id, self.current)
        roles = ", ".join(f"{k}={v}" for k, v in data["by_role"].items())
        self.console.print(
            f"{data['message_count']} messages ({roles}), "
            f"{data['tool_use_count']} tool calls, last at {data['last_message_at'] or '-'}"
        )

    async def cmd_help(self, args: list[str]) -> None:
        self.console.print(HELP)

    async def cmd_quit(self, args: list[str]) -> None:
        self._running = False

    # ── Loop ──

    async def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        if line.startswith("/"):
            parts = shlex.split(line[1:])
            if not parts:
                return
            handler = getattr(self, f"cmd_{parts[0]}", None)
            if handler is None:
                self.console.print(f"Unknown command /{parts[0]}. Try /help.")
                return
            try:
                await handler(parts[1:])
            except AgentDeckClientError as exc:
                self.console.print(Text(exc.message, style="bold red"))
            return
        if self.current is None:
            self.console.print("Open an agent first (/new or /switch).")
            return
        agent_id = self.current
        running = self._turns.get(agent_id)
        if running is not None and not running.done():
            self.console.print("A command is already running. Use /abort to stop it.")
            return
        self._turns[agent_id] = asyncio.create_task(self._run_turn(agent_id, line))

    async def _run_turn(self, agent_id: str, text: str) -> TurnResult:
        result = await self._controller.send(agent_id, text)
        if agent_id == self.current and result.status != "rejected":
            self.console.print()
            if result.status == "aborted":
                self.console.print(Text("(stopped)", style="dim"))
        return result

    async def run(self) -> None:
        health = await self._client.health()
        self.console.print(Panel(
            f"workspace [bold]{self._controller.workspace_id}[/bold]  "
            f"providers: {', '.join(health['providers']['available']) or 'none'}\n"
            "Type /help for commands.",
            title="agentdeck",
        ))
        await self._pick_initial_agent()
        while self._running:
            prompt = f"{self._prompt_name()}> "
            try:
                line = await asyncio.to_thread(self.console.input, prompt)
            except EOFError:
                break
            await self.handle_line(line)
        await self.shutdown()

    def _prompt_name(self) -> str:
        if self.current is None:
            return ""
        tab = self._controller.registry.get(self.current)
        return tab.name if tab and tab.name else _short(self.current)

    async def shutdown(self) -> None:
        for agent_id, task in list(self._turns.items()):
            if not task.done():
                await self._controller.abort(agent_id)
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except asyncio.TimeoutError:
                    logger.warning("Turn for agent %s did not stop in time", agent_id[:8])
        for task in self._injectors.values():
            task.cancel()
        self._injectors.clear()


async def run_chat(base_url: str, workspace_id: str, *, model: str | None = None) -> None:
    async with AgentDeckClient(base_url) as client:
        controller = TerminalClientController(client, workspace_id, default_model=model)
        await TerminalChat(controller, client).run()
