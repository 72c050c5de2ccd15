"""CLI commands for automation tasks and the scheduler service.

Commands:
- task create: Register a task from a JSON definition file
- task list: Show registered tasks
- task run: Execute a task's actions once, now
- task enable / disable / delete: Manage a registered task
- scheduler serve: Run every enabled task and scheduled pipeline until interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from sitepipe.cli.runtime import EXIT_FAILED, EXIT_INVALID, EXIT_OK, build_runtime, load_definition

logger = logging.getLogger(__name__)


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add task and scheduler subcommands to the main CLI parser."""

    task_parser = subparsers.add_parser(
        "task",
        description="Manage and run scheduled browser automation tasks.",
        help="Create, list and run automation tasks.",
    )
    task_subparsers = task_parser.add_subparsers(dest="task_command", metavar="SUBCOMMAND")
    task_subparsers.required = True

    create_parser = task_subparsers.add_parser(
        "create",
        description="Register a task from a JSON definition.",
        help="Create a task.",
    )
    create_parser.add_argument(
        "--file",
        type=Path,
        required=True,
        help="Path to the JSON task definition.",
    )
    create_parser.set_defaults(func=task_create_cli, task_command="create")

    list_parser = task_subparsers.add_parser(
        "list",
        description="List registered tasks.",
        help="List tasks.",
    )
    list_parser.add_argument("--tag", help="Only show tasks carrying this tag.")
    list_parser.add_argument(
        "--json",
        action="store_true",
        dest="output_json",
        help="Output in JSON format.",
    )
    list_parser.set_defaults(func=task_list_cli, task_command="list")

    run_parser = task_subparsers.add_parser(
        "run",
        description="Execute a task's actions once.",
        help="Run a task now.",
    )
    run_parser.add_argument("task_id", help="Task identifier.")
    run_parser.set_defaults(func=task_run_cli, task_command="run")

    for name, handler, summary in (
        ("enable", task_enable_cli, "Enable a task and arm its schedule."),
        ("disable", task_disable_cli, "Disable a task."),
        ("delete", task_delete_cli, "Delete a task."),
    ):
        parser = task_subparsers.add_parser(name, description=summary, help=summary)
        parser.add_argument("task_id", help="Task identifier.")
        parser.set_defaults(func=handler, task_command=name)

    scheduler_parser = subparsers.add_parser(
        "scheduler",
        description="Run the automation scheduler service.",
        help="Run scheduled tasks and pipelines.",
    )
    scheduler_subparsers = scheduler_parser.add_subparsers(dest="scheduler_command", metavar="SUBCOMMAND")
    scheduler_subparsers.required = True
    serve_parser = scheduler_subparsers.add_parser(
        "serve",
        description="Arm every enabled task and scheduled pipeline and run until interrupted.",
        help="Run the scheduler loop.",
    )
    serve_parser.add_argument(
        "--poll-seconds",
        type=float,
        default=60.0,
        help="Longest time the loop sleeps between checks (default: 60).",
    )
    serve_parser.set_defaults(func=scheduler_serve_cli, scheduler_command="serve")


def task_create_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        task = runtime.scheduler.create_task(load_definition(args.file))
    except ValueError as exc:
        print(f"Invalid task definition: {exc}")
        return EXIT_INVALID
    next_run = task.next_run.isoformat() if task.next_run else "-"
    print(f"Created task {task.id} ({task.name}); next run {next_run}")
    return EXIT_OK


def task_list_cli(args: argparse.Namespace) -> int:
    tasks = build_runtime().scheduler.list_tasks(args.tag)

    if args.output_json:
        print(json.dumps([t.to_dict() for t in tasks], indent=2, default=str))
        return EXIT_OK

    if not tasks:
        print("No tasks registered.")
        return EXIT_OK
    for task in tasks:
        state = "enabled" if task.enabled else "disabled"
        runs = f"{task.run_count}/{task.max_runs}" if task.max_runs else str(task.run_count)
        next_run = task.next_run.isoformat() if task.next_run and task.enabled else "-"
        print(f"{task.id}  {task.name}  [{state}]  {task.type}")
        print(f"    actions: {len(task.actions)}  runs: {runs}  next run: {next_run}")
    return EXIT_OK


def task_run_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if runtime.scheduler.get_task(args.task_id) is None:
        print(f"Unknown task: {args.task_id}")
        return EXIT_FAILED

    async def _run():
        try:
            return await runtime.scheduler.execute_task(args.task_id)
        finally:
            await runtime.aclose()

    result = asyncio.run(_run())
    if result is None:
        print(f"Task {args.task_id} is disabled or has no runs left.")
        return EXIT_FAILED
    if result.succeeded:
        print(f"Task {args.task_id} completed {result.actions_completed} actions")
        return EXIT_OK
    print(f"Task {args.task_id} failed: {result.error}")
    return EXIT_FAILED


def task_enable_cli(args: argparse.Namespace) -> int:
    task = build_runtime().scheduler.enable_task(args.task_id)
    if task is None:
        print(f"Unknown task: {args.task_id}")
        return EXIT_FAILED
    print(f"Enabled task {task.id}; next run {task.next_run.isoformat() if task.next_run else '-'}")
    return EXIT_OK


def task_disable_cli(args: argparse.Namespace) -> int:
    task = build_runtime().scheduler.disable_task(args.task_id)
    if task is None:
        print(f"Unknown task: {args.task_id}")
        return EXIT_FAILED
    print(f"Disabled task {task.id}")
    return EXIT_OK


def task_delete_cli(args: argparse.Namespace) -> int:
    if not build_runtime().scheduler.delete_task(args.task_id):
        print(f"Unknown task: {args.task_id}")
        return EXIT_FAILED
    print(f"Deleted task {args.task_id}")
    return EXIT_OK


def scheduler_serve_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    scheduler = runtime.scheduler
    scheduler.poll_seconds = args.poll_seconds

    async def _serve() -> None:
        scheduler.start()
        try:
            await scheduler.run_forever()
        finally:
            await scheduler.drain()
            await runtime.aclose()

    print("Scheduler running; press Ctrl+C to stop.")
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted")
    return EXIT_OK
