"""CLI entry point for the remote orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

from remote_orchestrator import __version__
from remote_orchestrator.config import DRIVERS, OrchestratorConfig
from remote_orchestrator.drivers.registry import is_driver_available, resolve_driver_name
from remote_orchestrator.errors import OrchestratorError
from remote_orchestrator.parser import message_text
from remote_orchestrator.session import OrchestrationSessionManager
from remote_orchestrator.types import OrchestrationStatus, OrchestratorEvent

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Drive an AI coding-assistant CLI as a tracked orchestration"
    )
    parser.add_argument("task", nargs="*", help="Task to run (read from stdin if omitted)")
    parser.add_argument(
        "--mode",
        choices=["interactive", "extension"],
        default="interactive",
        help="Communication mode: interactive (terminal) or extension (JSON stdin/stdout)",
    )
    parser.add_argument("--project", default="", help="Project name (default: directory name)")
    parser.add_argument("--project-path", default="", help="Project directory (default: cwd)")
    parser.add_argument(
        "--driver",
        default="",
        help=f"Driving process ({', '.join(d.id for d in DRIVERS)})",
    )
    parser.add_argument("--data-dir", default="", help="Directory for orchestration snapshots")
    parser.add_argument(
        "--no-persist", action="store_true", help="Keep orchestrations in memory only"
    )
    parser.add_argument("--list", action="store_true", help="List saved orchestrations")
    parser.add_argument("--show", default="", metavar="ID", help="Show one saved orchestration")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    # Load .env file (if present) so devs don't need manual exports
    from dotenv import find_dotenv, load_dotenv

    load_dotenv(find_dotenv(usecwd=True))

    args = build_parser().parse_args(argv)

    # Configure logging -- always to stderr so stdout is clean for extension mode
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = _build_config(args)

    if args.list:
        _show_orchestrations(config, args.project or None)
        return

    if args.show:
        sys.exit(_show_orchestration(config, args.show))

    driver_id = resolve_driver_name(config.driver) or config.driver
    if not is_driver_available(driver_id):
        _emit_error(
            f"Driver '{config.driver}' is unknown or its command is not on PATH.",
            args.mode,
        )
        sys.exit(1)

    if args.mode == "extension":
        _run_extension_mode(config)
    else:
        _run_interactive_mode(config, args)


def _build_config(args: argparse.Namespace) -> OrchestratorConfig:
    config = OrchestratorConfig.from_env()
    if args.driver:
        config.driver = args.driver
    if args.data_dir:
        config.data_dir = Path(args.data_dir).expanduser()
    if args.no_persist:
        config.persist = False
    return config


def _emit_error(msg: str, mode: str = "interactive") -> None:
    """Emit an error message appropriate for the current mode."""
    if mode == "extension":
        sys.stdout.write(json.dumps({"type": "error", "code": "ConfigError", "message": msg}) + "\n")
        sys.stdout.flush()
    else:
        print(msg, file=sys.stderr)


def _run_extension_mode(config: OrchestratorConfig) -> None:
    """Run in extension mode: JSON over stdin/stdout."""
    from remote_orchestrator.protocol import ExtensionProtocol

    async def _serve() -> None:
        protocol = ExtensionProtocol(OrchestrationSessionManager(config))
        await protocol.run()

    asyncio.run(_serve())


def _read_task(args: argparse.Namespace) -> str:
    if args.task:
        return " ".join(args.task)

    print("\nEnter your task (press Enter twice to submit):")
    lines: list[str] = []
    while True:
        try:
            line = input()
        except EOFError:
            break
        if line == "":
            break
        lines.append(line)
    return "\n".join(lines)


def format_event(event: OrchestratorEvent) -> str | None:
    """Render an event for the terminal; None for events not worth printing."""
    data = event.data
    if event.type == "status-change":
        return f"[status] {data['status']}"
    if event.type == "message":
        message = data["message"]
        if message["role"] != "assistant":
            return None
        text = message_text(message["role"], message["content"])
        return text or None
    if event.type == "subtask-started":
        subtask = data["subtask"]
        return f"[subtask] started {subtask['type']}: {subtask['name']}"
    if event.type == "subtask-completed":
        subtask = data["subtask"]
        return f"[subtask] {subtask['status']} {subtask['type']}: {subtask['name']}"
    if event.type == "completed":
        return f"[done] total cost ${data['totalCostUsd']:.4f}"
    if event.type == "error":
        return f"[error] {data['error']}"
    return None


async def _interactive(
    manager: OrchestrationSessionManager, task: str, project: str, project_path: str
) -> OrchestrationStatus:
    subscription = manager.subscribe()
    orchestration_id = await manager.create(task, project, project_path)
    print(f"Orchestration {orchestration_id}")
    try:
        async for event in subscription:
            if event.orchestration_id != orchestration_id:
                continue
            line = format_event(event)
            if line:
                print(line)
            if event.is_terminal_status:
                break
    except asyncio.CancelledError:
        await manager.cancel(orchestration_id)
        raise
    finally:
        subscription.close()
    return manager.get(orchestration_id).status


def _run_interactive_mode(config: OrchestratorConfig, args: argparse.Namespace) -> None:
    """Run in interactive mode: terminal stdin/stdout."""
    project_path = str(Path(args.project_path or ".").expanduser().resolve())
    project = args.project or Path(project_path).name
    print(f"remote-orchestrator v{__version__} (project: {project}, driver: {config.driver})")

    task = _read_task(args)
    if not task.strip():
        print("No task provided. Exiting.")
        sys.exit(0)

    manager = OrchestrationSessionManager(config)
    try:
        status = asyncio.run(_interactive(manager, task, project, project_path))
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        sys.exit(130)
    except OrchestratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # Exit with non-zero unless the orchestration completed
    if status != OrchestrationStatus.COMPLETED:
        sys.exit(1)


def _show_orchestrations(config: OrchestratorConfig, project: str | None) -> None:
    """List saved orchestrations, newest first."""
    manager = OrchestrationSessionManager(config)
    records = manager.list(project)

    if not records:
        print("No orchestrations found.")
        return

    print(f"{'ID':<38} {'Name':<40} {'Status':<11} {'Cost':>9} {'When'}")
    print("-" * 118)

    for o in records:
        when = time.strftime("%Y-%m-%d %H:%M", time.localtime(o.created_at / 1000))
        name = o.name[:38] + ".." if len(o.name) > 40 else o.name
        print(f"{o.id:<38} {name:<40} {o.status.value:<11} ${o.total_cost_usd:>8.4f} {when}")


def _show_orchestration(config: OrchestratorConfig, orchestration_id: str) -> int:
    """Print one saved orchestration with its transcript and subtasks."""
    manager = OrchestrationSessionManager(config)
    try:
        record = manager.get(orchestration_id)
    except OrchestratorError as e:
        print(str(e), file=sys.stderr)
        return 1

    print(f"{record.name} [{record.status.value}] project={record.project}")
    print(f"  cost: ${record.total_cost_usd:.4f}  session: {record.session_id or '-'}")
    for subtask in manager.get_subtasks(orchestration_id):
        print(f"  subtask {subtask.id}: {subtask.type} {subtask.name} ({subtask.status.value})")
    print()
    for message in manager.get_messages(orchestration_id):
        text = message_text(message.role, message.content)
        if text:
            print(f"{message.role.value.title()}: {text}")
    return 0


if __name__ == "__main__":
    main()
