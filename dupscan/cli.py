"""Command-line interface for the duplicate function scanner."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .errors import FatalError
from .keys import KeyType
from .pipeline import DEFAULT_CHUNK_SIZE, DuplicateScanner, ScanOptions
from .report import ReportRenderer

logger = logging.getLogger(__name__)

DESCRIPTION = (
    "Report functions in an x86-64 ELF binary whose machine code is duplicated, "
    "and how many bytes the excess copies take up."
)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dupscan", description=DESCRIPTION)
    parser.add_argument("binary", type=Path, help="ELF executable, shared object or object file")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log progress and diagnostics to stderr",
    )
    parser.add_argument(
        "--demangle",
        action="store_true",
        help="Print demangled function names",
    )
    parser.add_argument(
        "--key",
        choices=KeyType.choices(),
        default=KeyType.INSTRUCTIONS.value,
        help="How functions are judged equal (default: %(default)s)",
    )
    parser.add_argument(
        "--jobs",
        type=_positive_int,
        default=None,
        help="Worker processes; defaults to the number of CPUs",
    )
    parser.add_argument(
        "--chunk-size",
        type=_positive_int,
        default=DEFAULT_CHUNK_SIZE,
        help="Functions handed to a worker at a time (default: %(default)s)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        dest="include_singletons",
        help="Also list functions that have a single copy",
    )
    parser.add_argument(
        "--annotate",
        action="store_true",
        help="Show how many distinct names (hash stripped) each group has",
    )
    parser.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default: %(default)s)",
    )
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    options = ScanOptions(
        key_type=KeyType(args.key),
        jobs=args.jobs,
        chunk_size=args.chunk_size,
    )
    try:
        result = DuplicateScanner(options).scan(args.binary)
    except FatalError as exc:
        logger.error("%s", exc)
        return 1

    renderer = ReportRenderer(
        demangle=args.demangle,
        annotate=args.annotate,
        include_singletons=args.include_singletons,
    )
    renderer.write(result, sys.stdout, fmt=args.format)
    return 0


if __name__ == "__main__":
    sys.exit(main())
