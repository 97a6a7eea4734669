"""
Main entry point for the end-to-end harness.

Usage: e2e-harness [WORKDIR]

WORKDIR holds the build artifacts (defaults to the current directory).
Exit code is 0 when the whole scenario passed.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog
from dotenv import load_dotenv

from harness.config import ConfigLoader, HarnessConfig
from harness.errors import ConfigError
from cluster.scenario import ScenarioRunner


EXIT_CONFIG_ERROR = 2


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="e2e-harness",
        description="Run the end-to-end cluster scenario.",
    )
    parser.add_argument(
        "workdir",
        nargs="?",
        default=os.getcwd(),
        help="directory containing build artifacts (default: current directory)",
    )
    return parser.parse_args(argv)


def load_config(workdir: str) -> HarnessConfig:
    """
    Read configuration once, up front.

    `.env` in the working directory is loaded first, then CONFIG_PATH or a
    default e2e.yaml in the working directory. The CLI working directory
    always wins over the file's.
    """
    load_dotenv(Path(workdir) / ".env")
    loader = ConfigLoader(workdir)
    return loader.load_harness_config(
        os.getenv("CONFIG_PATH"),
        overrides={"workdir": workdir},
    )


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.workdir)
        runner = ScenarioRunner(config)
    except ConfigError as e:
        logger.error("config_error", error=e.message, path=e.context.get("config_path"))
        return EXIT_CONFIG_ERROR

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        runner.interrupt()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        result = await runner.run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    for name, path in sorted(result.log_paths.items()):
        logger.info("process_log", process=name, path=path)
    return result.exit_code


def run() -> None:
    # LOG_LEVEL and LOG_FORMAT may come from .env
    load_dotenv(Path(parse_args().workdir) / ".env")
    configure_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
