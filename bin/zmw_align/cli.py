"""CLI entry point for zmw-align."""
from __future__ import annotations

import argparse
import logging
import shlex
import sys
from pathlib import Path

import edlib
import numpy as np
import pysam

from zmw_align import __version__
from zmw_align.config import ActcSettings, load_engine_settings
from zmw_align.models import ChunkSpec, ZmwAlignError

log = logging.getLogger("zmw_align")

LOG_FORMAT = "| %(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s"
LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Configure the ``zmw_align`` logger with a stderr handler and an optional file."""
    name = {"TRACE": "DEBUG", "WARN": "WARNING"}.get(level.upper(), level.upper())
    log_level = getattr(logging, name, logging.INFO)

    logger = logging.getLogger("zmw_align")
    logger.setLevel(log_level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def version_text() -> str:
    return "\n".join([
        f"zmw-align {__version__}",
        "",
        "Using:",
        f"  zmw-align : {__version__}",
        f"  pysam     : {pysam.__version__}",
        f"  edlib     : {getattr(edlib, '__version__', 'unknown')}",
        f"  numpy     : {np.__version__}",
    ])


def _chunk(value: str) -> ChunkSpec:
    try:
        return ChunkSpec.parse(value)
    except ZmwAlignError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _threads(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid thread count: {value!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError("thread count must be at least 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zmw-align",
        description="Align subreads to the CCS read of their ZMW.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("subreads", type=Path, help="Subreads BAM or dataset XML (needs a .pbi)")
    parser.add_argument("ccs", type=Path, help="CCS BAM or dataset XML")
    parser.add_argument("output", type=Path, help="Output BAM of subreads aligned to CCS reads")
    parser.add_argument(
        "--chunk", type=_chunk, default=None,
        help="Operate on a single chunk. Format i/N, where i in [1,N]. Examples: 3/24 or 9/9",
    )
    parser.add_argument("-j", "--num-threads", type=_threads, default=1, help="Number of threads (default: 1)")
    parser.add_argument("--config", type=Path, default=None, help="TOML file with an [engine] table")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="INFO", help="Log level (default: INFO)")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write the log to this file")
    parser.add_argument("--ccs-query", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("--version", action="version", version=version_text())
    return parser


def settings_from_args(args: argparse.Namespace, argv: list[str] | None = None) -> ActcSettings:
    return ActcSettings(
        subread_file=args.subreads,
        ccs_file=args.ccs,
        output_file=args.output,
        num_threads=args.num_threads,
        chunk=args.chunk,
        ccs_query=args.ccs_query,
        engine=load_engine_settings(args.config),
        command_line=shlex.join(["zmw-align", *(argv if argv is not None else sys.argv[1:])]),
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    from zmw_align.pipeline import run

    try:
        settings = settings_from_args(args, argv)
        return run(settings)
    except ZmwAlignError as exc:
        log.critical("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
