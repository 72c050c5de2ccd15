#!/usr/bin/env python3

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
_env_file = Path(__file__).parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

from sitepipe.cli.commands.pipeline import (
    register_commands as register_pipeline_commands,
)
from sitepipe.cli.commands.tasks import (
    register_commands as register_task_commands,
)


def _build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m main",
        description="Scheduled web data collection pipelines and browser automation tasks.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    register_pipeline_commands(subparsers)
    register_task_commands(subparsers)
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _dispatch(args: argparse.Namespace) -> int:
    handler = getattr(args, "func", None)
    if handler is None:  # pragma: no cover - defensive guard
        raise ValueError("No handler registered for parsed arguments.")
    return handler(args)


def main(argv: Sequence[str] | None = None) -> int:
    raw_args = list(sys.argv[1:] if argv is None else argv)

    command_parser = _build_command_parser()
    args = command_parser.parse_args(raw_args)
    _configure_logging(args.verbose)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
