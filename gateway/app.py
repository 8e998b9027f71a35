"""Command-line entry point for the Remote Session Gateway."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from gateway.server import Gateway
from shared.config import ConfigError, GatewayConfig
from shared.logging_config import setup_logging_from_env
from shared.version import __version__

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote Session Gateway")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to YAML config file (default: ~/.rsgateway/config.yaml)",
    )
    parser.add_argument("--host", default=None, help="Listen address (default: 127.0.0.1)")
    parser.add_argument(
        "--port", "-p", type=int, default=None, help="Listen port (default: 8080)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level (or set RSGATEWAY_LOG_LEVEL)",
    )
    parser.add_argument("--log-file", default=None, help="Also log to this file, with rotation")
    parser.add_argument("--version", action="version", version=f"rsgateway {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> GatewayConfig:
    """Config file, then environment, then command-line flags."""
    config = GatewayConfig.load(args.config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    return config.validate()


async def run_gateway(config: GatewayConfig) -> None:
    """Run the gateway until SIGINT or SIGTERM."""
    gateway = Gateway(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await gateway.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await gateway.stop()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging_from_env(level=config.log_level, log_file=config.log_file)
    asyncio.run(run_gateway(config))
    return 0


if __name__ == "__main__":
    sys.exit(main())
