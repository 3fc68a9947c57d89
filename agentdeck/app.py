"""agentdeck command line entry point."""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_server_logging(level: str | None = None) -> Path:
    """Rotating file log plus stderr, shared by every process of a host."""
    log_level = (level or os.getenv("AGENTDECK_LOG_LEVEL", "INFO")).upper()
    log_dir = Path.home() / ".agentdeck" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentdeck-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _configure_client_logging() -> None:
    # Keep the chat screen clean; warnings still reach stderr.
    logging.basicConfig(
        level=getattr(
            logging, os.getenv("AGENTDECK_LOG_LEVEL", "WARNING").upper(), logging.WARNING,
        ),
        format="%(levelname)s %(name)s: %(message)s",
    )


def _build_engine(config_path: str | None):
    from agentdeck.engine.conversation_engine import ConversationEngine
    from agentdeck.engine.yaml_config import load_config

    return ConversationEngine.from_deck_config(load_config(config_path))


def _serve(args) -> None:
    from agentdeck.server.server import AgentDeckServer

    log_file = _configure_server_logging()
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting agentdeck server cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), args.host, args.port, args.config or "<none>", log_file,
    )
    engine = _build_engine(args.config)
    engine.providers.validate()
    server = AgentDeckServer(engine, host=args.host, port=args.port)
    asyncio.run(server.start())


def _init_workspace(args) -> None:
    engine = _build_engine(args.config)
    path = engine.init_workspace(
        args.workspace, name=args.name, description=args.description or "",
    )
    print(f"Workspace {args.workspace} ready at {path}")


def _agents(args) -> None:
    from agentdeck.engine.errors import EngineError

    engine = _build_engine(args.config)
    try:
        if args.action == "create":
            if not args.target:
                sys.exit("usage: agentdeck agents WORKSPACE create NAME")
            agent = engine.create_agent(
                args.workspace, args.target, preferred_model=args.model,
            )
            print(f"{agent.id}  {agent.name}")
        elif args.action == "delete":
            if not args.target:
                sys.exit("usage: agentdeck agents WORKSPACE delete AGENT_ID")
            agent = asyncio.run(engine.delete_agent(args.workspace, args.target))
            print(f"Deleted {agent.name} ({agent.id})")
        else:
            summary = engine.agent_status(args.workspace)
            if not summary["agents"]:
                print("No agents.")
            for entry in summary["agents"]:
                print(
                    f"  {entry['id']}  {entry['name']:<20} "
                    f"{entry.get('preferred_model') or '-':<8} {entry['state']['status']}"
                )
            print(f"{summary['total']}/{summary['max_concurrent']} agents")
    except EngineError as exc:
        sys.exit(f"error: {exc}")


def _chat(args) -> None:
    from agentdeck.client.terminal import run_chat

    _configure_client_logging()
    try:
        asyncio.run(run_chat(args.url, args.workspace, model=args.model))
    except KeyboardInterrupt:
        pass


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck: streaming conversations with CLI coding agents",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .agentdeck/agentdeck.yaml if present)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP + streaming server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    serve.set_defaults(func=_serve)

    init = sub.add_parser("init-workspace", help="Create a workspace skeleton")
    init.add_argument("workspace")
    init.add_argument("--name")
    init.add_argument("--description")
    init.set_defaults(func=_init_workspace)

    agents = sub.add_parser("agents", help="List, create or delete agents")
    agents.add_argument("workspace")
    agents.add_argument(
        "action", nargs="?", default="list", choices=["list", "create", "delete"],
    )
    agents.add_argument("target", nargs="?", help="agent name (create) or id (delete)")
    agents.add_argument("--model", help="preferred model for a new agent")
    agents.set_defaults(func=_agents)

    chat = sub.add_parser("chat", help="Interactive terminal chat against a server")
    chat.add_argument("workspace")
    chat.add_argument(
        "--url", default=os.getenv("AGENTDECK_URL", "http://127.0.0.1:8787"),
        help="server base URL (default: $AGENTDECK_URL)",
    )
    chat.add_argument("--model", help="model for new turns")
    chat.set_defaults(func=_chat)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
