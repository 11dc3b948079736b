from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import Optional, Sequence

import httpx
import structlog

from stack_alarms.config import AlarmsConfig, ConfigError, load_config
from stack_alarms.discovery import DiscoveryManager
from stack_alarms.log import configure_logging
from stack_alarms.notifications.targets import validate_targets
from stack_alarms.platform import RancherClient

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


async def run_daemon(config: AlarmsConfig, *, once: bool = False) -> int:
    async with httpx.AsyncClient() as http_client:
        client = RancherClient(http_client, config.rancher)
        manager = DiscoveryManager(client, config, http_client=http_client)
        try:
            if once:
                await manager.start()
            else:
                await manager.run()
        finally:
            await manager.aclose()
    return EXIT_OK


def _terminate(signum, frame) -> None:
    raise KeyboardInterrupt


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Service health alarms for Rancher stacks")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $STACK_ALARMS_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--log-format", choices=("console", "json"), default=os.getenv("LOG_FORMAT", "console"))
    parser.add_argument("--once", action="store_true", help="Run one discovery pass and one poll per service, then exit")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"), args.log_format)

    try:
        config = load_config(args.config)
        validate_targets(config)
    except ConfigError as exc:
        logger.error("Invalid configuration", error=str(exc))
        return EXIT_CONFIG

    if args.log_level is None:
        configure_logging(config.log_level, args.log_format)

    logger.info(
        "Starting stack-alarms",
        rancher_url=config.rancher.url,
        poll_services_interval=config.poll_services_interval,
        filter=config.filter,
    )
    previous_handler = signal.signal(signal.SIGTERM, _terminate)
    try:
        return asyncio.run(run_daemon(config, once=args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
        return EXIT_OK
    except Exception:
        logger.exception("Fatal error; exiting")
        return EXIT_FATAL
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
