"""Command line entry point: ``legend-run --config study.yaml``."""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from .config import load_study_config
from .logging_utils import get_study_logger
from .main import STAGE_NAMES, execute


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="legend-run",
        description="Run a LEGEND comparative-effectiveness study for one indication.",
    )
    parser.add_argument("--config", required=True, help="Path to the study configuration YAML")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (overrides LEGEND_LOG_LEVEL)",
    )
    parser.add_argument(
        "--skip",
        nargs="*",
        default=[],
        metavar="STAGE",
        help=f"Stages to skip: {', '.join(STAGE_NAMES)}",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logger = get_study_logger()
    if args.log_level:
        for handler in logger.handlers:
            if getattr(handler, "_legend_stream", False):
                handler.setLevel(getattr(logging, args.log_level))

    config = load_study_config(args.config)
    execute(config, skip=args.skip)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
