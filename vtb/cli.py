from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from vtb.config import Settings, get_settings
from vtb.exceptions import ConfigError
from vtb.services.orchestrator import run_workflow_file

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vtb", description="Boot system images in VMs and run test workflows against them.")
    sub = parser.add_subparsers(dest="command", required=True)

    test = sub.add_parser("test", help="Run a test workflow")
    test.add_argument("workflow", type=Path, help="Path to the workflow TOML file")
    test.add_argument("--project-dir", type=Path, default=Path.cwd(), help="Project directory (default: cwd)")
    test.add_argument("--keep-disks", action="store_true", default=None, help="Keep overlay disks after the run")
    test.add_argument("--max-parallel", type=int, default=None, help="Maximum number of systems run at once (0: all)")
    test.add_argument("--log-level", default=None, help="Logging level (default: VTB_LOG_LEVEL or INFO)")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # paramiko logs every transport failure while a guest reboots.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def run_test(args: argparse.Namespace, settings: Settings) -> int:
    settings = settings.with_overrides(
        keep_disks=args.keep_disks,
        max_parallel=args.max_parallel,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    configure_logging(settings.log_level)
    logger = logging.getLogger("vtb")
    project_dir = args.project_dir.resolve()
    workflow = args.workflow if args.workflow.is_absolute() else Path.cwd() / args.workflow

    try:
        result = asyncio.run(run_workflow_file(workflow, project_dir=project_dir, settings=settings))
    except ConfigError as e:
        logger.error("config_error message=%s", e.message)
        print(f"error: {e.message}", file=sys.stderr)
        return e.exit_status
    except KeyboardInterrupt:
        logger.warning("interrupted; all VMs stopped and overlay disks released")
        return EXIT_INTERRUPTED

    for line in result.summary_lines():
        print(line)
    return result.exit_status()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except ConfigError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return e.exit_status
    if args.command == "test":
        return run_test(args, settings)
    return 2


if __name__ == "__main__":
    sys.exit(main())
