#!/usr/bin/env python3
"""
Relay Subscriber.

Keeps a WebSocket channel open to the relay and forwards every relayed
webhook to a local HTTP service.

Usage:
    python -m src.subscriber.main
    python -m src.subscriber.main --config subscriber.yaml
    python -m src.subscriber.main --relay-url wss://relay.example.com/_websocket --token secret --api-url http://localhost:8787

Environment variables:
    RELAY_URL: Relay channel URL
    WEBSOCKET_TOKEN: Shared secret
    API_SERVICE_URL: Local "api" service URL
    AI_SERVICE_URL: Local "ai" service URL (optional)
    RELAY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from src.relay.models import EnvelopeDecodeError, decode_envelope
from src.subscriber.config import SubscriberConfig, TargetConfig
from src.subscriber.dispatcher import ForwardingDispatcher
from src.subscriber.stream_client import RelayStreamClient, ConnectionState

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT")


class RelaySubscriber:
    """
    Relay Subscriber service.

    Orchestrates the stream client and forwarding dispatcher: every message
    received from the relay is decoded and handed to the dispatcher.
    """

    def __init__(self, config: SubscriberConfig):
        """
        Initialize the subscriber.

        Args:
            config: Subscriber configuration
        """
        self.config = config
        self.client = RelayStreamClient(config)
        self.dispatcher = ForwardingDispatcher(config)
        self.messages_received = 0
        self.messages_dropped = 0
        self._running = False
        self._start_time: Optional[datetime] = None

    async def start(self) -> None:
        """Start the subscriber. Runs until stop() is called."""
        if self._running:
            return

        self._running = True
        self._start_time = datetime.now(timezone.utc)

        target = self.config.get_target()
        logger.info("Starting Relay Subscriber...")
        logger.info(f"  Relay URL: {self.config.relay_url}")
        logger.info(f"  Target: {self.config.forward_target} ({target.base_url if target else '-'})")
        logger.info(f"  Ordered delivery: {self.config.ordered_delivery}")

        await self.dispatcher.start()

        async for raw in self.client.messages():
            await self._handle_message(raw)

        logger.info("Relay Subscriber stopped")

    async def stop(self) -> None:
        """Stop the subscriber gracefully."""
        if not self._running:
            return

        logger.info("Stopping Relay Subscriber...")
        self._running = False

        await self.client.stop()
        await self.dispatcher.stop()

        logger.info("Relay Subscriber shutdown complete")

    async def _handle_message(self, raw: str) -> None:
        """Decode one relayed message and forward it."""
        self.messages_received += 1

        try:
            envelope = decode_envelope(raw)
        except EnvelopeDecodeError as e:
            self.messages_dropped += 1
            logger.error(f"Dropping malformed message: {e}")
            return

        logger.debug(f"Received {envelope.method} {envelope.source_url}")
        await self.dispatcher.submit(envelope)

    def get_status(self) -> Dict[str, Any]:
        """Get subscriber status."""
        return {
            "running": self._running,
            "connected": self.client.state == ConnectionState.CONNECTED,
            "connections_established": self.client.connections_established,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
            "uptime_seconds": (
                (datetime.now(timezone.utc) - self._start_time).total_seconds()
                if self._start_time
                else 0
            ),
            "dispatcher_stats": self.dispatcher.get_stats(),
            "config": self.config.to_dict(),
        }


def setup_logging(level: str = "INFO", format_str: Optional[str] = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    log_format = format_str or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level, format=log_format, handlers=[logging.StreamHandler(sys.stdout)]
    )

    # Set aiohttp logging level
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Relay Subscriber: forwards relayed webhooks to a local service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # With environment variables (or a .env file)
    export RELAY_URL=wss://relay.example.com/_websocket
    export WEBSOCKET_TOKEN=secret123
    export API_SERVICE_URL=http://localhost:8787
    %(prog)s

    # Using command line arguments
    %(prog)s --relay-url wss://relay.example.com/_websocket \\
             --token secret123 \\
             --api-url http://localhost:8787
        """,
    )

    parser.add_argument(
        "--config", "-c", help="Path to configuration file (JSON or YAML)"
    )

    parser.add_argument("--relay-url", help="Relay channel URL")

    parser.add_argument("--token", help="Relay shared secret")

    parser.add_argument("--api-url", help="Local api service URL")

    parser.add_argument("--ai-url", help="Local ai service URL")

    parser.add_argument(
        "--target",
        choices=["api", "ai"],
        help="Target that webhooks are forwarded to (default: api)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--no-verify-ssl",
        action="store_true",
        help="Disable SSL certificate verification",
    )

    parser.add_argument(
        "--ordered",
        action="store_true",
        help="Forward one webhook at a time, in the order received",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SubscriberConfig:
    """Build configuration from file, environment and arguments."""
    config = SubscriberConfig.load(args.config)

    # Override with command line arguments
    if args.relay_url:
        config.relay_url = args.relay_url
        _satisfy(config, "RELAY_URL")
    if args.token:
        config.token = args.token
        _satisfy(config, "WEBSOCKET_TOKEN")
    if args.api_url:
        config.targets["api"] = TargetConfig.from_url("api", args.api_url)
        _satisfy(config, "API_SERVICE_URL")
    if args.ai_url:
        config.targets["ai"] = TargetConfig.from_url("ai", args.ai_url)
    if args.target:
        config.forward_target = args.target
    if args.log_level:
        config.log_level = args.log_level
    if args.no_verify_ssl:
        config.verify_ssl = False
    if args.ordered:
        config.ordered_delivery = True

    return config


def _satisfy(config: SubscriberConfig, env_var: str) -> None:
    if env_var in config.missing:
        config.missing.remove(env_var)


async def main_async(subscriber: RelaySubscriber) -> None:
    """Async main function."""
    # Setup signal handlers
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for name in SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is not None:
            loop.add_signal_handler(sig, signal_handler)

    # Start subscriber in background
    subscriber_task = asyncio.create_task(subscriber.start())

    # Wait for shutdown signal, or for the subscriber to end on its own
    stop_waiter = asyncio.create_task(stop_event.wait())
    await asyncio.wait(
        {subscriber_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
    )
    stop_waiter.cancel()

    await subscriber.stop()

    # Cancel subscriber task if still running
    if not subscriber_task.done():
        subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = build_config(args)
    except (ValueError, TypeError, FileNotFoundError) as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(level=config.log_level, format_str=config.log_format)

    # Validate configuration
    errors = config.validate()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    # Log startup banner
    target = config.get_target()
    banner = (
        "\n" + "=" * 60 + "\n"
        "    Webhook Relay - Subscriber\n"
        + "=" * 60 + "\n"
        f"  Relay URL: {config.relay_url}\n"
        f"  Target:    {config.forward_target} -> {target.base_url}\n"
        + "=" * 60 + "\n"
    )
    logger.info(banner)

    subscriber = RelaySubscriber(config)

    try:
        asyncio.run(main_async(subscriber))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
