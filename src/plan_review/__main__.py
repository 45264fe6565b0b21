"""Entry point for `python -m plan_review` and the `plan-review` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from plan_review import create_plan
from plan_review.models import PlanResult, PlanStatus
from plan_review.settings import RuntimeSettings
from plan_review.store import PlanStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="plan-review", description="Generate and review implementation plans")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Generate a plan and open it for review in the browser")
    create.add_argument("task", help="The task or feature to create a plan for")
    create.add_argument("--context", default=None, help="Additional context, requirements, or constraints")
    create.add_argument(
        "--context-file",
        dest="context_files",
        action="append",
        type=Path,
        default=[],
        help="File to include as context (repeatable)",
    )
    create.add_argument("--cwd", type=Path, default=None, help="Project directory shown on the review page (default: cwd)")

    commands.add_parser("list", help="List saved plans")
    return parser.parse_args(argv)


async def _run_create(args: argparse.Namespace, settings: RuntimeSettings) -> PlanResult:
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
    except NotImplementedError:
        logging.debug("Signal handlers unavailable; Ctrl+C will not abort gracefully")
    try:
        return await create_plan(
            args.task,
            context=args.context,
            context_files=args.context_files,
            abort=abort,
            settings=settings,
            cwd=(args.cwd or Path.cwd()).resolve(),
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


def exit_code_for(result: PlanResult) -> int:
    if result.status is PlanStatus.APPROVED:
        return 0
    if result.status is PlanStatus.FAILED:
        return 1
    return 2


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "list":
        plans = PlanStore(settings.plans_path).list_plans()
        if not plans:
            print("No saved plans found")
            return 0
        for path in plans:
            print(path)
        return 0

    try:
        result = asyncio.run(_run_create(args, settings))
    except Exception as exc:  # noqa: BLE001
        logging.exception("Plan creation failed: %s", exc)
        return 1

    print(result.message)
    return exit_code_for(result)


if __name__ == "__main__":
    raise SystemExit(main())
