"""CLI commands for data collection pipelines.

Commands:
- pipeline create: Register a pipeline from a JSON definition file
- pipeline list: Show registered pipelines
- pipeline run: Execute a pipeline once, now
- pipeline enable / disable / delete: Manage a registered pipeline
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from sitepipe.cli.runtime import EXIT_FAILED, EXIT_INVALID, EXIT_OK, build_runtime, load_definition


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add pipeline subcommands to the main CLI parser."""

    pipeline_parser = subparsers.add_parser(
        "pipeline",
        description="Manage and run data collection pipelines.",
        help="Create, list and run data collection pipelines.",
    )
    pipeline_subparsers = pipeline_parser.add_subparsers(
        dest="pipeline_command",
        metavar="SUBCOMMAND",
    )
    pipeline_subparsers.required = True

    create_parser = pipeline_subparsers.add_parser(
        "create",
        description="Register a pipeline from a JSON definition.",
        help="Create a pipeline.",
    )
    create_parser.add_argument(
        "--file",
        type=Path,
        required=True,
        help="Path to the JSON pipeline definition.",
    )
    create_parser.set_defaults(func=pipeline_create_cli, pipeline_command="create")

    list_parser = pipeline_subparsers.add_parser(
        "list",
        description="List registered pipelines.",
        help="List pipelines.",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        dest="output_json",
        help="Output in JSON format.",
    )
    list_parser.set_defaults(func=pipeline_list_cli, pipeline_command="list")

    run_parser = pipeline_subparsers.add_parser(
        "run",
        description="Execute a pipeline once.",
        help="Run a pipeline now.",
    )
    run_parser.add_argument("pipeline_id", help="Pipeline identifier.")
    run_parser.add_argument(
        "--json",
        action="store_true",
        dest="output_json",
        help="Output the run result in JSON format.",
    )
    run_parser.set_defaults(func=pipeline_run_cli, pipeline_command="run")

    for name, handler, summary in (
        ("enable", pipeline_enable_cli, "Enable a pipeline and arm its schedule."),
        ("disable", pipeline_disable_cli, "Disable a pipeline."),
        ("delete", pipeline_delete_cli, "Delete a pipeline."),
    ):
        parser = pipeline_subparsers.add_parser(name, description=summary, help=summary)
        parser.add_argument("pipeline_id", help="Pipeline identifier.")
        parser.set_defaults(func=handler, pipeline_command=name)


def pipeline_create_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    try:
        pipeline = runtime.scheduler.create_pipeline(load_definition(args.file))
    except ValueError as exc:
        print(f"Invalid pipeline definition: {exc}")
        return EXIT_INVALID
    print(f"Created pipeline {pipeline.id} ({pipeline.name})")
    return EXIT_OK


def pipeline_list_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    pipelines = runtime.scheduler.list_pipelines()

    if args.output_json:
        print(json.dumps([p.to_dict() for p in pipelines], indent=2, default=str))
        return EXIT_OK

    if not pipelines:
        print("No pipelines registered.")
        return EXIT_OK
    for pipeline in pipelines:
        state = "enabled" if pipeline.enabled else "disabled"
        last_run = pipeline.last_run.isoformat() if pipeline.last_run else "never"
        print(f"{pipeline.id}  {pipeline.name}  [{state}]")
        print(f"    sites: {len(pipeline.sites)}  records: {pipeline.total_records}  last run: {last_run}")
    return EXIT_OK


def pipeline_run_cli(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    if runtime.scheduler.get_pipeline(args.pipeline_id) is None:
        print(f"Unknown pipeline: {args.pipeline_id}")
        return EXIT_FAILED

    async def _run():
        try:
            return await runtime.scheduler.execute_pipeline(args.pipeline_id)
        finally:
            await runtime.aclose()

    result = asyncio.run(_run())
    if result is None:
        print(f"Pipeline {args.pipeline_id} is disabled; nothing to run.")
        return EXIT_FAILED

    if args.output_json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print(result.summary())
    return EXIT_OK if result.succeeded else EXIT_FAILED


def pipeline_enable_cli(args: argparse.Namespace) -> int:
    pipeline = build_runtime().scheduler.enable_pipeline(args.pipeline_id)
    if pipeline is None:
        print(f"Unknown pipeline: {args.pipeline_id}")
        return EXIT_FAILED
    print(f"Enabled pipeline {pipeline.id}")
    return EXIT_OK


def pipeline_disable_cli(args: argparse.Namespace) -> int:
    pipeline = build_runtime().scheduler.disable_pipeline(args.pipeline_id)
    if pipeline is None:
        print(f"Unknown pipeline: {args.pipeline_id}")
        return EXIT_FAILED
    print(f"Disabled pipeline {pipeline.id}")
    return EXIT_OK


def pipeline_delete_cli(args: argparse.Namespace) -> int:
    if not build_runtime().scheduler.delete_pipeline(args.pipeline_id):
        print(f"Unknown pipeline: {args.pipeline_id}")
        return EXIT_FAILED
    print(f"Deleted pipeline {args.pipeline_id}")
    return EXIT_OK
