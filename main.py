"""ChunkFerry entry point.

Parses the command line, configures logging on the shared rich console and
runs the transfer.  Exit codes: 0 on completion (verification differences
included), 1 on a fatal abort, 2 on a usage error, 130 on Ctrl-C.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.logging import RichHandler

from chunkferry import Ferry, __version__
from chunkferry.config import DEFAULT_WORK_DIR
from chunkferry.console import console
from chunkferry.errors import FerryError
from chunkferry.utils.path_helpers import format_duration

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130

_EPILOG = """\
Progress is kept in the work directory (config.json, state/, done/,
staging/).  Re-running the same command resumes after the last completed
chunk.  Running two instances against the same work directory at the same
time is not supported.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chunkferry",
        description=(
            "Move a file tree from one removable volume to another, one "
            "size-bounded chunk at a time, when both cannot be connected together."
        ),
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--noresume",
        action="store_true",
        help="Restart from scratch (discard the plan, progress and staging area).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress non-error messages (takes precedence over --verbose for log lines).",
    )
    parser.add_argument("--verbose", action="store_true", help="Show full copy output and debug messages.")
    parser.add_argument(
        "--verify",
        action="store_true",
        help="After all chunks are done, compare source and destination file sizes.",
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=DEFAULT_WORK_DIR,
        help="Directory holding config, ledger and staging area (default: %(default)s).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _configure_logging(quiet: bool = False, verbose: bool = False) -> None:
    """Route root logging to the shared console through RichHandler."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handler = RichHandler(
        level=level,
        console=console,
        show_path=False,
        show_time=True,
        rich_tracebacks=True,
        log_time_format="%H:%M:%S",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run ChunkFerry; return the process exit code."""
    args = build_parser().parse_args(argv)
    _configure_logging(quiet=args.quiet, verbose=args.verbose)
    log = logging.getLogger("chunkferry.main")

    try:
        ferry = Ferry(
            work_dir=args.work_dir,
            noresume=args.noresume,
            verify=args.verify,
            verbose=args.verbose,
            quiet=args.quiet,
        )
        report, _verify_report = ferry.run()
    except FerryError as exc:
        log.error("%s. Aborting.", exc)
        return EXIT_FATAL
    except KeyboardInterrupt:
        log.error("Interrupted; re-run the same command to resume.")
        return EXIT_INTERRUPTED

    log.info(
        "Finished: %d chunk(s) transferred, %d skipped, in %s",
        report.transferred,
        report.skipped,
        format_duration(report.elapsed),
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
