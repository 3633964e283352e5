"""Instance management CLI commands.

Every command prints JSON on stdout, except logs and env which print raw
text. On failure the error response is printed on stderr and the exit code is 1.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from pydantic import BaseModel

from basehub.config import Settings, get_settings
from basehub.errors import BaseHubError
from basehub.infra.docker import close_docker
from basehub.logging import setup_logging
from basehub.models import CreateResult
from basehub.orchestrator import LifecycleOrchestrator

logger = logging.getLogger(__name__)


def _emit(payload: BaseModel | dict[str, Any]) -> None:
    if isinstance(payload, BaseModel):
        print(payload.model_dump_json(indent=2))
    else:
        print(json.dumps(payload, indent=2))


async def create_bounded(
    orchestrator: LifecycleOrchestrator,
    name: str,
    config: dict[str, Any] | None = None,
    owner: str | None = None,
) -> CreateResult:
    """Run create under the caller deadline.

    The deadline never cancels creation: the subprocess timeouts inside
    are shorter, so an overrun means rollback is still in progress. The
    call then waits for it to settle instead of leaving partial state.
    """
    deadline = orchestrator.creation_deadline_s
    task = asyncio.create_task(orchestrator.create(name, config=config, owner=owner))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=deadline)
    except TimeoutError:
        logger.warning(
            "Creation exceeded %.0fs deadline, waiting for it to settle", deadline
        )
        return await task


async def run_command(args: argparse.Namespace, settings: Settings) -> None:
    """Dispatch one parsed command."""
    orchestrator = await LifecycleOrchestrator.build(settings)
    try:
        if args.command == "list":
            _emit(await orchestrator.list())

        elif args.command == "create":
            config: dict[str, Any] = {}
            if args.organization:
                config["organization"] = args.organization
            _emit(await create_bounded(orchestrator, args.name, config=config, owner=args.owner))

        elif args.command == "start":
            _emit(await orchestrator.start(args.instance_id))

        elif args.command == "stop":
            _emit(await orchestrator.stop(args.instance_id))

        elif args.command == "restart":
            _emit(await orchestrator.restart(args.instance_id))

        elif args.command == "delete":
            await orchestrator.delete(args.instance_id)
            _emit({"id": args.instance_id, "deleted": True})

        elif args.command == "show":
            _emit(await orchestrator.get(args.instance_id))

        elif args.command == "credentials":
            _emit(orchestrator.credentials(args.instance_id))

        elif args.command == "env":
            print(orchestrator.env_config(args.instance_id), end="")

        elif args.command == "check":
            _emit(await orchestrator.check(args.instance_id))

        elif args.command == "logs":
            print(await orchestrator.logs(args.instance_id, tail=args.tail), end="")

        elif args.command == "health":
            _emit(await orchestrator.health())
    finally:
        await close_docker()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Self-hosted instance management",
        prog="basehub",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # list command
    subparsers.add_parser("list", help="List all instances with live status")

    # create command
    create_parser = subparsers.add_parser("create", help="Create and start a new instance")
    create_parser.add_argument("name", help="Project name")
    create_parser.add_argument("--organization", "-o", help="Organization name")
    create_parser.add_argument("--owner", help="Owning user")

    # per-instance commands
    for command, help_text in (
        ("start", "Start a stopped instance"),
        ("stop", "Stop a running instance"),
        ("restart", "Stop and start an instance"),
        ("delete", "Delete an instance and all its data"),
        ("show", "Show one instance with live status"),
        ("credentials", "Show connection credentials"),
        ("env", "Print client settings in .env format"),
        ("check", "Check the HTTP services of one instance"),
    ):
        sub = subparsers.add_parser(command, help=help_text)
        sub.add_argument("instance_id", help="Instance id")

    # logs command
    logs_parser = subparsers.add_parser("logs", help="Show recent container logs")
    logs_parser.add_argument("instance_id", help="Instance id")
    logs_parser.add_argument("--tail", "-n", type=int, default=100, help="Lines per service")

    # health command
    subparsers.add_parser("health", help="Show manager health")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.logging)

    try:
        asyncio.run(run_command(args, settings))
    except BaseHubError as exc:
        print(exc.to_response().model_dump_json(indent=2), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
