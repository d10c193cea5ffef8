"""
Relay Broadcast Service.

Converts accepted inbound callbacks into envelopes and fans them out
to every subscriber channel registered at the time of the broadcast.
"""

import asyncio
import hmac
import logging
from typing import Optional

from starlette.requests import Request

from src.relay.config import RelayConfig
from src.relay.models import (
    BroadcastResult,
    Envelope,
    SubscriberConnection,
    encode_envelope,
)
from src.relay.registry import SubscriberRegistry

logger = logging.getLogger(__name__)


def _source_url(request: Request) -> str:
    """
    Rebuild the URL exactly as received.

    request.url carries the percent-decoded path, so %20 and %2F would not
    survive; the undecoded bytes are in the ASGI raw_path.
    """
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return str(request.url)
    # Some servers include the query string in raw_path
    path = raw_path.split(b"?", 1)[0].decode("latin-1")
    return str(request.url.replace(path=path))


class RelayBroadcaster:
    """
    Fan-out point shared by all request handlers of one relay process.

    Delivery is best-effort: each channel gets its own send timeout, and a
    channel whose send fails is unregistered without affecting the others.
    """

    def __init__(self, config: RelayConfig, registry: Optional[SubscriberRegistry] = None):
        self.config = config
        self.registry = registry if registry is not None else SubscriberRegistry()

    def is_channel_path(self, path: str) -> bool:
        """Check whether a request path targets the channel-open endpoint."""
        return path.endswith(self.config.websocket_suffix)

    def validate_token(self, token: Optional[str]) -> bool:
        """
        Validate a subscriber token.

        Uses constant-time comparison to prevent timing attacks.
        """
        if not token or not self.config.token:
            return False
        return hmac.compare_digest(
            token.encode("utf-8"), self.config.token.encode("utf-8")
        )

    async def build_envelope(self, request: Request) -> Envelope:
        """Capture an inbound request verbatim."""
        raw_body = await request.body()

        body: Optional[bytes] = raw_body
        if not raw_body and not (
            "content-length" in request.headers
            or "transfer-encoding" in request.headers
        ):
            body = None

        return Envelope(
            source_url=_source_url(request),
            method=request.method,
            headers=dict(request.headers.items()),
            body=body,
        )

    async def broadcast(self, envelope: Envelope) -> BroadcastResult:
        """
        Send an envelope to every registered subscriber.

        Args:
            envelope: Envelope to deliver

        Returns:
            BroadcastResult with delivered and failed connection IDs
        """
        result = BroadcastResult()
        connections = await self.registry.snapshot()
        if not connections:
            logger.info(f"No subscribers connected, dropping {envelope.method} {envelope.source_url}")
            return result

        message = encode_envelope(envelope)
        outcomes = await asyncio.gather(
            *(self._send(connection, message) for connection in connections)
        )

        for connection, delivered in zip(connections, outcomes):
            if delivered:
                result.delivered.append(connection.connection_id)
            else:
                result.failed.append(connection.connection_id)

        logger.info(
            f"Broadcast {envelope.method} {envelope.source_url} to "
            f"{len(result.delivered)}/{result.attempted} subscriber(s)"
        )
        return result

    async def _send(self, connection: SubscriberConnection, message: str) -> bool:
        """Send to one channel; a failure removes the channel from the registry."""
        try:
            await asyncio.wait_for(
                connection.send(message), timeout=self.config.send_timeout
            )
            logger.debug(f"Sent message to {connection.connection_id}")
            return True
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                f"Send to {connection.connection_id} timed out after "
                f"{self.config.send_timeout}s"
            )
        except Exception as e:
            logger.warning(f"Delivery failed to {connection.connection_id}: {e}")

        await self.registry.unregister(connection)
        await self._close_quietly(connection)
        return False

    async def _close_quietly(self, connection: SubscriberConnection) -> None:
        try:
            await asyncio.wait_for(
                connection.close(1011, "Send failed"),
                timeout=self.config.send_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Error closing failed connection {connection.connection_id}: {e}")
