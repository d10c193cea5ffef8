"""
Stream Client for the relay Subscriber.

Maintains the WebSocket channel to the relay and exposes the relayed
messages as one async sequence that survives reconnects.
Provides automatic reconnection with exponential backoff.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import AsyncIterator, Optional

import aiohttp
from aiohttp import WSMsgType

from src.subscriber.config import SubscriberConfig

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class RelayStreamClient:
    """
    WebSocket client for the relay channel.

    Usage:
        client = RelayStreamClient(config)
        async for raw in client.messages():
            ...
        # another task: await client.stop()
    """

    def __init__(self, config: SubscriberConfig):
        """
        Initialize stream client.

        Args:
            config: Subscriber configuration
        """
        self.config = config

        self.state = ConnectionState.DISCONNECTED
        self.connections_established = 0
        self.close_code: Optional[int] = None
        self._reconnect_delay = config.reconnect_delay
        self._stop_event = asyncio.Event()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def messages(self) -> AsyncIterator[str]:
        """
        Yield every text frame received from the relay.

        Connection loss is handled internally: the sequence pauses while the
        client reconnects and resumes on the new channel. It ends only after
        stop() is called.
        """
        self._reconnect_delay = self.config.reconnect_delay
        url = self.config.get_stream_url()

        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self.config.connection_timeout
        )

        async with aiohttp.ClientSession(timeout=timeout) as session:
            while not self._stop_event.is_set():
                self.state = ConnectionState.CONNECTING
                try:
                    async with session.ws_connect(
                        url,
                        ssl=self.config.verify_ssl,
                        heartbeat=self.config.heartbeat_interval,
                    ) as ws:
                        if self._stop_event.is_set():
                            # stop() ran during the handshake and had nothing to close
                            await ws.close(
                                code=aiohttp.WSCloseCode.OK,
                                message=b"Subscriber shutting down",
                            )
                            break

                        self._ws = ws
                        self.state = ConnectionState.CONNECTED
                        self.connections_established += 1
                        self._reconnect_delay = self.config.reconnect_delay
                        logger.info(f"Connected to relay at {self.config.relay_url}")

                        async for msg in ws:
                            if msg.type == WSMsgType.TEXT:
                                yield msg.data
                            elif msg.type == WSMsgType.BINARY:
                                yield msg.data.decode("utf-8", errors="replace")
                            elif msg.type == WSMsgType.ERROR:
                                logger.error(f"WebSocket error: {ws.exception()}")
                                break

                        self.close_code = ws.close_code
                        if not self._stop_event.is_set():
                            logger.warning(
                                f"Disconnected from relay (code: {ws.close_code})"
                            )

                except asyncio.CancelledError:
                    raise
                except aiohttp.WSServerHandshakeError as e:
                    logger.error(f"WebSocket handshake failed: {e.status} {e.message}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.error(f"Connection error: {e!r}")
                finally:
                    self._ws = None

                if self._stop_event.is_set():
                    break

                self.state = ConnectionState.DISCONNECTED
                await self._wait_before_reconnect()

        self.state = ConnectionState.CLOSED
        logger.info("Relay stream closed")

    async def _wait_before_reconnect(self) -> None:
        """Sleep for the backoff delay, waking early on stop()."""
        jitter = random.uniform(0, self._reconnect_delay * 0.3)
        delay = self._reconnect_delay + jitter
        logger.info(f"Reconnecting in {delay:.1f} seconds...")

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # backoff elapsed

        self._reconnect_delay = min(
            self._reconnect_delay * self.config.reconnect_backoff_multiplier,
            self.config.max_reconnect_delay,
        )

    async def stop(self) -> None:
        """Close the channel and stop reconnecting. Safe to call repeatedly."""
        if self._stop_event.is_set():
            return

        self.state = ConnectionState.SHUTTING_DOWN
        self._stop_event.set()

        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close(code=aiohttp.WSCloseCode.OK, message=b"Subscriber shutting down")
