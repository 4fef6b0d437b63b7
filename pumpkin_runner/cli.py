# pumpkin_runner/cli.py
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from . import __version__
from .config import parse_log_level
from .errors import EXIT_CODES, RunnerError
from .pipeline import PluginRunner

log = logging.getLogger(__name__)

# ----------------------------
# Logging
# ----------------------------
def configure_logging(level: Optional[str]) -> None:
    resolved = parse_log_level(level or os.getenv("PUMPKIN_RUNNER_LOG_LEVEL", "INFO"))
    logging.basicConfig(level=resolved, format="[%(levelname)s] %(message)s", force=True)


# ----------------------------
# Argument parsing
# ----------------------------
def _strip_cargo_subcommand(argv: List[str]) -> List[str]:
    # `cargo pumpkin run` execs `cargo-pumpkin pumpkin run`.
    if argv and argv[0] == "pumpkin":
        return argv[1:]
    return argv


def _add_run_flags(parser: argparse.ArgumentParser, suppress: bool) -> None:
    default = argparse.SUPPRESS if suppress else False
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        default=default,
        help="Rebuild the Pumpkin server even if a cached build matches.",
    )
    parser.add_argument(
        "--skip-self-build",
        action="store_true",
        default=default,
        help="Do not build the current project; reuse the plugin from the last build.",
    )


def build_parser() -> argparse.ArgumentParser:
    exit_codes = ", ".join(f"{code}={name}" for name, code in EXIT_CODES.items())
    parser = argparse.ArgumentParser(
        prog="cargo pumpkin",
        description="Build and run your Pumpkin plugin",
        epilog=(
            "Exit status is the server's own exit code once it has started. "
            f"Failures before that use: {exit_codes}."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--root",
        default=None,
        help="Directory to start looking for Cargo.toml (default: current directory).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show build commands and their output (same as --log-level DEBUG).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Overrides PUMPKIN_RUNNER_LOG_LEVEL.",
    )
    _add_run_flags(parser, suppress=False)

    sub = parser.add_subparsers(dest="command", metavar="{init,run,clean}")
    init_parser = sub.add_parser("init", help="Initialize and set up the environment.")
    init_parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Delete the Pumpkin checkout and clone it again.",
    )
    run_parser = sub.add_parser("run", help="Build and run the server (default).")
    _add_run_flags(run_parser, suppress=True)
    sub.add_parser("clean", help="Remove the .run directory.")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    args_list = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(_strip_cargo_subcommand(args_list))
    if args.command is None:
        args.command = "run"
    return args


# ----------------------------
# Commands
# ----------------------------
def cmd_init(runner: PluginRunner, args: argparse.Namespace) -> int:
    runner.init(force=args.force)
    return 0


def cmd_run(runner: PluginRunner, args: argparse.Namespace) -> int:
    return runner.run(force=args.force, skip_self_build=args.skip_self_build)


def cmd_clean(runner: PluginRunner, args: argparse.Namespace) -> int:
    runner.clean()
    return 0


HANDLERS = {"init": cmd_init, "run": cmd_run, "clean": cmd_clean}

INTERRUPTED = 130


def run_cli(argv: Optional[Sequence[str]] = None, runner: Optional[PluginRunner] = None) -> int:
    args = parse_args(argv)
    level = "DEBUG" if args.verbose else args.log_level

    try:
        configure_logging(level)
        if runner is None:
            start_dir = Path(args.root).expanduser() if args.root else Path.cwd()
            runner = PluginRunner(start_dir, log_level=level)
        return HANDLERS[args.command](runner, args)
    except RunnerError as e:
        log.error("%s", e)
        if e.detail:
            log.error("%s", e.detail)
        return e.exit_code
    except KeyboardInterrupt:
        # Ctrl+C before the server is up (git or cargo still running).
        log.error("Interrupted")
        return INTERRUPTED


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
