"""variant-foundry CLI: run parallel UI-variant sessions.

Commands:
    run: Provision one workspace per variant, run the workers, compare and report.
    validate: Validate a variants file.
    cleanup: Remove workspaces and branches left behind by earlier sessions.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import OrchestratorConfig, load_config
from .errors import VariantFoundryError
from .orchestration.events import EventKind, TaskEvent
from .reporting import FileSessionReporter, build_session_report
from .session import VariantSession
from .variants import load_variants_file
from .workspaces.manager import WorkspaceManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_VARIANT_FAILURES = 3


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the variant-foundry CLI."""
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument("--config", type=Path, default=None, help="Orchestrator config file (YAML/JSON)")
    shared.add_argument("--repo", type=Path, default=Path("."), help="Repository root (default: cwd)")

    parser = argparse.ArgumentParser(
        prog="variant-foundry",
        description="Generate UI variants in parallel git worktrees and compare them",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a variant session", parents=[shared])
    run.add_argument("--variants", type=Path, required=True, help="Variants file (YAML/JSON)")
    run.add_argument("--capacity", type=int, default=None, help="Max concurrent workers")
    run.add_argument("--timeout", type=float, default=None, help="Per-task timeout in seconds")
    run.add_argument("--reports-dir", type=Path, default=None, help="Directory for session reports")
    run.add_argument("--keep-workspaces", action="store_true", help="Do not destroy workspaces at the end")
    run.add_argument("--json", action="store_true", help="Print the session report as JSON")
    run.add_argument(
        "--strict",
        action="store_true",
        help=f"Exit with code {EXIT_VARIANT_FAILURES} if any variant failed",
    )

    validate = subparsers.add_parser("validate", help="Validate a variants file")
    validate.add_argument("--variants", type=Path, required=True, help="Variants file (YAML/JSON)")

    subparsers.add_parser("cleanup", help="Prune stale workspaces and branches", parents=[shared])

    return parser


def _resolve_config(args: argparse.Namespace) -> OrchestratorConfig:
    config = load_config(args.config)
    overrides = {
        "pool.capacity": getattr(args, "capacity", None),
        "pool.task_timeout_s": getattr(args, "timeout", None),
        "reports_dir": getattr(args, "reports_dir", None),
    }
    if getattr(args, "keep_workspaces", False):
        overrides["cleanup_on_exit"] = False
    return config.with_overrides(**overrides)


def _log_event(event: TaskEvent) -> None:
    if event.kind is EventKind.STATE:
        logger.info("[%s] %s%s", event.task_id, event.status.value, f": {event.data}" if event.data else "")
    else:
        logger.debug("[%s] %s: %s", event.task_id, event.stream, event.data.rstrip())


def _cmd_run(args: argparse.Namespace) -> int:
    config = _resolve_config(args)
    specs = load_variants_file(args.variants)
    if not specs:
        logger.error("No variants in %s", args.variants)
        return EXIT_ERROR

    reports_dir = config.reports_dir if config.reports_dir.is_absolute() else args.repo / config.reports_dir
    session = VariantSession(
        args.repo,
        config,
        reporter=FileSessionReporter(reports_dir),
        on_event=_log_event,
    )
    summary = session.run(specs)

    if args.json:
        print(json.dumps(build_session_report(summary), indent=2, sort_keys=True))
    else:
        print(f"Session {summary.session_id}: {len(summary.successful)}/{len(summary.outcomes)} variants succeeded")
        for outcome in summary.outcomes:
            line = f"  {outcome.name}: {outcome.status}"
            if outcome.error:
                line += f" ({outcome.error.splitlines()[0]})"
            print(line)
        for rec in summary.comparison_recommendations:
            print(f"  - {rec}")
        for kind, path in summary.report_paths.items():
            print(f"Report ({kind}): {path}")

    if args.strict and summary.failed:
        return EXIT_VARIANT_FAILURES
    return EXIT_OK


def _cmd_validate(args: argparse.Namespace) -> int:
    specs = load_variants_file(args.variants)
    print(f"{args.variants}: {len(specs)} variant(s) OK")
    for spec in specs:
        print(f"  {spec.name} -> {spec.base_url}")
    return EXIT_OK


def _cmd_cleanup(args: argparse.Namespace) -> int:
    config = _resolve_config(args)
    manager = WorkspaceManager(args.repo, config.workspace)
    removed = manager.prune_stale()
    if removed:
        for item in removed:
            print(f"removed {item}")
    else:
        print("Nothing to clean up")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the variant-foundry CLI.

    Returns:
        0 on success, 1 on errors, 3 when ``run --strict`` saw failed
        variants. Usage errors exit with 2 from argparse.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if args.command == "run":
            return _cmd_run(args)
        elif args.command == "validate":
            return _cmd_validate(args)
        elif args.command == "cleanup":
            return _cmd_cleanup(args)
        else:
            parser.error(f"Unknown command: {args.command}")
            return EXIT_USAGE
    except VariantFoundryError as e:
        logger.error("Error: %s", e)
        if args.verbose >= 2:
            import traceback

            traceback.print_exc()
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
