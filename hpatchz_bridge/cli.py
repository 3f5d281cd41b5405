#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
hpatchz-bridge - command line entry point

    hpatchz-bridge patch --variant kuro SRC DEST DIFF [--offset N --length N] [-- EXTRA...]

Everything after ``--`` is handed to hpatchz verbatim.
"""

import argparse
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from . import __version__
from .config import PatcherSettings, load_settings
from .exceptions import BaseError
from .logging_config import setup_logging
from .patching import open_patcher
from .variants import PatcherVariant

logger = logging.getLogger(__name__)


def _split_passthrough(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hpatchz-bridge",
        description="Apply hpatchz diffs to game asset files",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", metavar="PATH", help="JSON or YAML settings file")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Write log records as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    patch = sub.add_parser("patch", help="Apply a whole diff or one record of a combined diff")
    patch.add_argument(
        "--variant",
        required=True,
        choices=[variant.value for variant in PatcherVariant],
        help="Bundled hpatchz build to run",
    )
    patch.add_argument("source", help="Source file or directory")
    patch.add_argument("dest", help="Destination directory")
    patch.add_argument("diff", help="Diff file (combined diff when --offset is given)")
    patch.add_argument("--offset", type=int, help="Byte offset of the record in the combined diff")
    patch.add_argument("--length", type=int, help="Byte length of the record")
    patch.add_argument("--timeout", type=float, help="Kill hpatchz after this many seconds")
    patch.add_argument(
        "--keep-payload",
        action="store_true",
        help="Leave the materialized executable in the temp directory afterwards",
    )
    return parser


def _exit_status(code: int) -> int:
    return code if 0 <= code <= 255 else 1


def run_patch(args: argparse.Namespace, extra: List[str], settings: PatcherSettings) -> int:
    if (args.offset is None) != (args.length is None):
        logger.error("--offset and --length must be given together")
        return 2
    if args.timeout is not None and args.timeout <= 0:
        logger.error("--timeout must be positive")
        return 2

    patcher = open_patcher(args.variant, extra, settings=settings)
    try:
        if args.offset is not None:
            code = patcher.patch_offset(
                args.source, args.dest, args.diff, args.offset, args.length, timeout_sec=args.timeout
            )
        else:
            code = patcher.patch(args.source, args.dest, args.diff, timeout_sec=args.timeout)
    finally:
        if not args.keep_payload:
            patcher.close()

    if code == 0:
        logger.info("Patched %s", args.dest)
    else:
        logger.error("hpatchz failed with exit code %d", code)
    return _exit_status(code)


def main(argv: Optional[Sequence[str]] = None) -> int:
    own, extra = _split_passthrough(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(own)

    try:
        settings = load_settings(args.config)
    except BaseError as exc:
        print(f"hpatchz-bridge: {exc}", file=sys.stderr)
        return 2

    log_cfg = settings.logging
    setup_logging(
        level=args.log_level or log_cfg.level,
        log_dir=log_cfg.log_dir,
        structured_json=True if args.json_logs else log_cfg.structured_json,
        colors=log_cfg.colors,
    )

    try:
        if args.command == "patch":
            return run_patch(args, extra, settings)
    except (BaseError, ValueError) as exc:
        logger.error("%s", exc)
        return 2
    return 2


if __name__ == "__main__":
    sys.exit(main())
