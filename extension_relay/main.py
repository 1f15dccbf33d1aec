"""
Background relay for a multi-surface browser extension.

Runs the websocket gateway that carries content-script, popout, tracking and
menu channels plus the browser control connection.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging

from .config import RelayConfig
from .gateway import RelayGateway

logger = logging.getLogger("extension_relay")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="extension-relay", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--host", help="interface to bind (env RELAY_HOST)")
    parser.add_argument("--port", type=int, help="port to bind, 0 picks a free one (env RELAY_PORT)")
    parser.add_argument("--mode", help="multi-tab or paired (env RELAY_MODE)")
    parser.add_argument("--ping-interval", type=float, help="keep-alive interval in seconds (env RELAY_PING_INTERVAL)")
    parser.add_argument("--log-level", help="logging level (env RELAY_LOG_LEVEL)")
    return parser


def config_from_args(args: argparse.Namespace) -> RelayConfig:
    config = RelayConfig.from_env()
    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = max(0, min(int(args.port), 65535))
    if args.mode:
        overrides["mode"] = RelayConfig.normalize_mode(args.mode)
    if args.ping_interval is not None:
        overrides["ping_interval_s"] = max(0.05, float(args.ping_interval))
    if args.log_level:
        overrides["log_level"] = str(args.log_level).strip().upper()
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the relay."""
    args = build_parser().parse_args(argv)
    config = config_from_args(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    gateway = RelayGateway(config)
    try:
        asyncio.run(gateway.serve())
    except KeyboardInterrupt:
        logger.info("relay stopped")
    if gateway.status().get("bindError"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
