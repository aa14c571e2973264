"""Main entry point for the remote write compliance tester."""
import argparse
import logging
import sys

import structlog

from rwcompliance.cases import build_cases, case_names
from rwcompliance.config import Config, load_config
from rwcompliance.runner import log_summary, run_suite
from rwcompliance.targets import build_targets


def json_formatter() -> logging.Formatter:
    """Formatter rendering each stdlib log record as one JSON object."""
    return structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
        ],
    )


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(json_formatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    logging.basicConfig(level=level, handlers=[handler])

    # Reduce noise from the HTTP server
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


def main(argv=None):
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Remote Write Compliance Tester - Check senders against the remote write protocol"
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to configuration YAML file"
    )
    parser.add_argument(
        "--case",
        action="append",
        dest="cases",
        help="Run only this case (repeatable)"
    )
    parser.add_argument(
        "--target",
        action="append",
        dest="targets",
        help="Run only this configured target (repeatable)"
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List available test cases and exit"
    )

    args = parser.parse_args(argv)

    if args.list:
        for case in build_cases():
            print(f"{case.name:16} {case.description}")
        return 0

    try:
        config = load_config(args.config) if args.config else Config()
    except (FileNotFoundError, ValueError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.global_.log_level, config.global_.log_format)
    logger = logging.getLogger(__name__)

    try:
        targets = build_targets(config.targets, args.targets)
        build_cases(args.cases or config.run.cases)
    except KeyError as e:
        logger.error(str(e))
        return 1

    if not targets:
        logger.error("No targets configured; add at least one under 'targets:'")
        return 1

    logger.info("=" * 60)
    logger.info("Remote Write Compliance Tester")
    logger.info("=" * 60)
    logger.info(f"Targets: {', '.join(targets)}")
    logger.info(f"Cases available: {len(case_names())}")

    results = run_suite(targets, config, args.cases)
    return 0 if log_summary(results) else 1


if __name__ == "__main__":
    sys.exit(main())
