#!/usr/bin/env python3
"""
Webhook Relay server.

Receives webhooks on any path and broadcasts them to every connected
subscriber over WebSocket.

Usage:
    python -m src.relay.main
    python -m src.relay.main --host 127.0.0.1 --port 8787

Environment variables:
    WEBSOCKET_TOKEN: Shared secret for subscribers (required)
    RELAY_HOST / RELAY_PORT: Bind address
    RELAY_WEBSOCKET_SUFFIX: Channel-open path suffix (default: /_websocket)
    RELAY_SEND_TIMEOUT: Per-subscriber send timeout in seconds
    RELAY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR
"""

import argparse
import logging
import sys
from typing import Optional

import uvicorn

from src.relay.api import create_app
from src.relay.config import RelayConfig
from src.relay.registry import SubscriberRegistry

logger = logging.getLogger(__name__)


class RelayServer(uvicorn.Server):
    """
    uvicorn server that closes subscriber channels before shutting down.

    uvicorn closes open WebSockets itself (code 1012) and waits for them
    before the lifespan shutdown runs, so the relay's own close has to
    happen first.
    """

    def __init__(
        self,
        config: uvicorn.Config,
        registry: SubscriberRegistry,
        relay_config: RelayConfig,
    ):
        super().__init__(config)
        self.registry = registry
        self.relay_config = relay_config

    async def shutdown(self, sockets=None) -> None:
        closed = await self.registry.close_all(
            self.relay_config.shutdown_close_code,
            self.relay_config.shutdown_close_reason,
        )
        if closed:
            logger.info(f"Closed {closed} subscriber channel(s) before shutdown")
        await super().shutdown(sockets=sockets)


def setup_logging(level: str = "INFO", format_str: Optional[str] = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    log_format = format_str or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level, format=log_format, handlers=[logging.StreamHandler(sys.stdout)]
    )


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Webhook Relay server")

    parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")

    parser.add_argument("--port", type=int, help="Bind port (default: 8787)")

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RelayConfig:
    """Build configuration from environment and arguments."""
    config = RelayConfig.from_env()

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level

    return config


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    config = build_config(args)

    setup_logging(level=config.log_level, format_str=config.log_format)

    errors = config.validate()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    banner = (
        "\n" + "=" * 60 + "\n"
        "    Webhook Relay\n"
        + "=" * 60 + "\n"
        f"  Listening: {config.host}:{config.port}\n"
        f"  Channel:   *{config.websocket_suffix}?token=...\n"
        + "=" * 60 + "\n"
    )
    logger.info(banner)

    app = create_app(config)
    server = RelayServer(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            log_config=None,
        ),
        app.state.broadcaster.registry,
        config,
    )

    try:
        server.run()
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
