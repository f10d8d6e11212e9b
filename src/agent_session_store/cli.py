"""
Command-line interface for the session store.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from agent_session_store.config import StoreConfig
from agent_session_store.logging import setup_logging
from agent_session_store.models import PermissionRequest
from agent_session_store.runtime import StoreContext, default_context
from agent_session_store.storage import CONTEXT_STORE_KEY, PERMISSION_STORE_KEY, StateStorage
from agent_session_store.usage import calculate_context_usage

console = Console()


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Agent session store CLI",
        prog="session-store",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="YAML config file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Usage command
    usage_parser = subparsers.add_parser("usage", help="Compute context usage")
    usage_parser.add_argument("-t", "--tokens", type=int, required=True, help="Tokens used")
    usage_parser.add_argument("-x", "--context", type=int, required=True, help="Context limit")
    usage_parser.add_argument("-o", "--output", type=int, default=0, help="Output limit")

    # State command
    state_parser = subparsers.add_parser("state", help="Show persisted selections and permissions")
    state_parser.add_argument("--db", type=Path, default=None, help="State database path")

    # Sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List backend sessions")
    sessions_parser.add_argument("-d", "--directory", default=None, help="Working directory")

    # Messages command
    messages_parser = subparsers.add_parser("messages", help="Show the latest messages of a session")
    messages_parser.add_argument("session_id", help="Session ID")
    messages_parser.add_argument("-n", "--limit", type=int, default=20, help="Messages to fetch")

    # Config command
    subparsers.add_parser("config", help="Show the effective configuration")

    args = parser.parse_args(argv)

    # Setup logging based on verbosity
    if args.verbose:
        setup_logging("DEBUG")
    else:
        setup_logging("WARNING")

    if args.command == "usage":
        cmd_usage(args)
    elif args.command == "state":
        cmd_state(args)
    elif args.command == "sessions":
        asyncio.run(cmd_sessions(args))
    elif args.command == "messages":
        asyncio.run(cmd_messages(args))
    elif args.command == "config":
        cmd_config(args)
    else:
        parser.print_help()


def _load_config(args: argparse.Namespace) -> StoreConfig:
    try:
        return StoreConfig.from_env(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


def _load_context(args: argparse.Namespace) -> StoreContext:
    try:
        return default_context(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


def cmd_usage(args: argparse.Namespace) -> None:
    """Compute context usage for a token count."""
    usage = calculate_context_usage(args.tokens, args.context, args.output)

    table = Table(title="Context Usage")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total tokens", str(usage.total_tokens))
    table.add_row("Context limit", str(usage.context_limit))
    table.add_row("Output limit", str(usage.output_limit))
    table.add_row("Reserved output", str(usage.normalized_output))
    table.add_row("Threshold", str(usage.threshold_limit))
    color = "red" if usage.percentage >= 90 else "yellow" if usage.percentage >= 70 else "green"
    table.add_row("Usage", f"[{color}]{usage.percentage:.2f}%[/{color}]")
    console.print(table)


def cmd_state(args: argparse.Namespace) -> None:
    """Show persisted selections, edit modes and pending permissions."""
    path = args.db or _load_config(args).storage.path
    if path is None:
        console.print("[yellow]No state database configured[/yellow]")
        return
    if not Path(path).expanduser().exists():
        console.print(f"[red]State database not found: {path}[/red]")
        sys.exit(1)

    storage = StateStorage(path)
    context_state = storage.get(CONTEXT_STORE_KEY) or {}
    permission_state = storage.get(PERMISSION_STORE_KEY) or {}

    table = Table(title="Session Selections")
    table.add_column("Session", style="cyan")
    table.add_column("Agent")
    table.add_column("Model", style="dim")
    agents = dict(_pairs(context_state.get("sessionAgentSelections")))
    models = dict(_pairs(context_state.get("sessionModelSelections")))
    for session_id in sorted(set(agents) | set(models)):
        model = models.get(session_id) or {}
        model_name = "/".join(
            str(v) for v in (model.get("providerId"), model.get("modelId")) if v
        )
        table.add_row(session_id, str(agents.get(session_id, "")), model_name)
    console.print(table)

    modes = Table(title="Edit Modes")
    modes.add_column("Session", style="cyan")
    modes.add_column("Agent")
    modes.add_column("Mode", style="bold")
    for session_id, agent_modes in _pairs(context_state.get("sessionAgentEditModes")):
        for agent_name, mode in _pairs(agent_modes):
            modes.add_row(str(session_id), str(agent_name), str(mode))
    console.print(modes)

    pending = Table(title="Pending Permissions")
    pending.add_column("Session", style="cyan")
    pending.add_column("ID", style="dim")
    pending.add_column("Type")
    pending.add_column("Title")
    count = 0
    for session_id, requests in _pairs(permission_state.get("permissions")):
        for raw in requests if isinstance(requests, list) else []:
            try:
                request = PermissionRequest.from_dict(raw)
            except (KeyError, TypeError, AttributeError):
                continue
            pending.add_row(str(session_id), request.id, request.type, request.title)
            count += 1
    console.print(pending)
    console.print(f"\n[dim]Total: {count} pending permissions[/dim]")


def _pairs(value: object) -> list[tuple[object, object]]:
    if not isinstance(value, list):
        return []
    return [
        (entry[0], entry[1])
        for entry in value
        if isinstance(entry, (list, tuple)) and len(entry) == 2
    ]


async def cmd_sessions(args: argparse.Namespace) -> None:
    """List sessions known to the backend."""
    context = _load_context(args)
    try:
        sessions = await context.backend.list_sessions(args.directory)
    finally:
        await context.backend.close()

    if sessions is None:
        console.print(f"[red]Could not reach backend at {context.config.backend.base_url}[/red]")
        sys.exit(1)

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Directory", style="dim")
    for session in sorted(sessions, key=lambda s: s.updated_at, reverse=True):
        table.add_row(session.id, session.title or "", session.directory or "")
    console.print(table)
    console.print(f"\n[dim]Total: {len(sessions)} sessions[/dim]")


async def cmd_messages(args: argparse.Namespace) -> None:
    """Show the latest messages of a session."""
    context = _load_context(args)
    try:
        page = await context.backend.fetch_messages(args.session_id, args.limit)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        await context.backend.close()

    table = Table(title=f"Messages in {args.session_id}")
    table.add_column("ID", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Text")
    for message in page.messages:
        text = " ".join(p.text for p in message.parts if p.type == "text" and p.text)
        table.add_row(message.id, message.role, text[:80])
    console.print(table)
    if page.has_more_above:
        console.print("[dim]... older messages not shown[/dim]")


def cmd_config(args: argparse.Namespace) -> None:
    """Print the effective configuration as YAML."""
    config = _load_config(args)
    console.print(yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False))


if __name__ == "__main__":
    main()
