#!/usr/bin/env python3
"""Single entry point for the blob attestation verifier.

    bav [-v | -q] [--version] <command> [options]

Global flags set up logging once for whichever subcommand runs; the
subcommand receives the remaining arguments unchanged. Exit codes are the
subcommand's own (see bav_errors), with 2 for a usage error here.
"""

from __future__ import annotations

import importlib
import logging
import sys
from importlib import metadata
from typing import Callable, Dict, List, NamedTuple, Optional

from bav_config import configure_logging
from bav_errors import EXIT_INPUT_ERROR, EXIT_SUCCESS, VerificationError

logger = logging.getLogger(__name__)

DISTRIBUTION = "blob-attest-verify"


class Command(NamedTuple):
    module: str
    summary: str


COMMANDS: Dict[str, Command] = {
    "verify": Command("bav_verify", "Verify an in-toto attestation covering a blob"),
    "digest": Command("bav_digest", "Print a blob digest, honouring the size ceiling"),
}

_GLOBAL_FLAGS = {
    "-v": "verbose",
    "--verbose": "verbose",
    "-q": "quiet",
    "--quiet": "quiet",
}


def usage() -> str:
    width = max(len(name) for name in COMMANDS)
    commands = "\n".join(f"  {name:<{width}}  {cmd.summary}" for name, cmd in COMMANDS.items())
    return (
        "bav - blob attestation verifier\n"
        "\n"
        "Usage:\n"
        "  bav [-v | -q] [--version] <command> [options]\n"
        "\n"
        f"Commands:\n{commands}\n"
        "\n"
        "Global flags:\n"
        "  -v, --verbose  log every pipeline step (DEBUG)\n"
        "  -q, --quiet    log errors only\n"
        "\n"
        "See 'bav <command> --help' for the options of each command."
    )


def version() -> str:
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "unknown (not installed)"


def _load(command: str) -> Callable[[List[str]], Optional[int]]:
    return importlib.import_module(COMMANDS[command].module).main


def run(command: str, argv: List[str]) -> int:
    """Run one subcommand and reduce however it ends to an exit code."""
    try:
        code = _load(command)(argv)
    except VerificationError as exc:
        logger.debug("%s escaped %s", exc.rule_id, command)
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except SystemExit as exc:
        code = exc.code
        if isinstance(code, str):
            print(code, file=sys.stderr)
            return EXIT_INPUT_ERROR
    return EXIT_SUCCESS if code is None else int(code)


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)

    flags = set()
    while args and args[0].startswith("-"):
        arg = args.pop(0)
        if arg in {"-h", "--help"}:
            print(usage())
            return EXIT_SUCCESS
        if arg == "--version":
            print(f"bav {version()}")
            return EXIT_SUCCESS
        if arg not in _GLOBAL_FLAGS:
            print(f"Unknown option: {arg}", file=sys.stderr)
            print(usage(), file=sys.stderr)
            return EXIT_INPUT_ERROR
        flags.add(_GLOBAL_FLAGS[arg])

    if not args:
        print(usage())
        return EXIT_SUCCESS

    command, *rest = args
    if command not in COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(usage(), file=sys.stderr)
        return EXIT_INPUT_ERROR

    if flags:
        configure_logging(verbose="verbose" in flags, quiet="quiet" in flags)
    return run(command, rest)


if __name__ == "__main__":
    sys.exit(main())
