"""
Forwarding Dispatcher for the relay Subscriber.

Turns each relayed envelope into an HTTP request against a local target:
- Destination rewrite (scheme/host/port only)
- Body pass-through with an empty-JSON shim
- Best-effort delivery: one attempt, outcome logged
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Set
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from yarl import URL

from src.relay.models import Envelope
from src.subscriber.config import SubscriberConfig, TargetConfig

logger = logging.getLogger(__name__)

# Connection-scoped headers that must not be replayed on a new connection.
# Content-Length is recomputed from the forwarded body.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "content-length",
    }
)

EMPTY_JSON_BODY = b"{}"


def rewrite_url(source_url: str, target: TargetConfig) -> str:
    """
    Point a relayed URL at a local target.

    Only scheme, host and port change; path and query are kept as received.
    """
    original = urlsplit(source_url)
    path = original.path or "/"
    return urlunsplit((target.scheme, target.netloc, path, original.query, ""))


def build_body(envelope: Envelope) -> Optional[bytes]:
    """Body to forward; an absent JSON body becomes an empty JSON object."""
    if envelope.body is not None:
        return envelope.body
    if "application/json" in envelope.content_type.lower():
        return EMPTY_JSON_BODY
    return None


def build_headers(envelope: Envelope, host_header_mode: str = "rewrite") -> Dict[str, str]:
    """
    Headers to forward.

    In "rewrite" mode the original Host is replaced by the target's and
    exposed as X-Forwarded-Host / X-Forwarded-Proto. In "preserve" mode the
    original Host header is sent unchanged.
    """
    headers = {
        name: value
        for name, value in envelope.headers.items()
        if name not in HOP_BY_HOP_HEADERS
    }

    if host_header_mode == "rewrite":
        original = urlsplit(envelope.source_url)
        original_host = headers.pop("host", None) or original.netloc
        headers.setdefault("x-forwarded-host", original_host)
        headers.setdefault("x-forwarded-proto", original.scheme)

    return headers


@dataclass
class DispatchResult:
    """Result of forwarding one envelope."""

    success: bool
    method: str
    url: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


@dataclass
class DispatchStats:
    """Statistics for forwarding."""

    messages_forwarded: int = 0
    messages_failed: int = 0


class ForwardingDispatcher:
    """
    Forwards envelopes to the configured local target.

    Features:
    - Concurrent forwarding with configurable limit
    - Optional strict ordering (one request at a time, in receipt order)
    - Timeout handling
    - No retries: failures are logged and dropped
    """

    def __init__(self, config: SubscriberConfig):
        """
        Initialize dispatcher.

        Args:
            config: Subscriber configuration
        """
        self.config = config

        self._tasks: Set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_requests)
        self._session: Optional[aiohttp.ClientSession] = None
        self._stats = DispatchStats()
        self._running = False

    async def start(self) -> None:
        """Start the dispatcher."""
        if self._running:
            return

        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.forward_timeout)
        )
        self._running = True
        logger.info("Forwarding dispatcher started")

    async def stop(self) -> None:
        """Stop the dispatcher and cleanup."""
        self._running = False

        # Cancel all in-flight tasks
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

        logger.info("Forwarding dispatcher stopped")

    async def submit(self, envelope: Envelope) -> None:
        """
        Hand an envelope over for forwarding.

        Returns once the request is scheduled, or, with ordered delivery,
        once it has completed.
        """
        if not self._running:
            logger.warning("Dispatcher not running, dropping message")
            return

        if self.config.ordered_delivery:
            await self._dispatch_limited(envelope)
            return

        task = asyncio.create_task(self._dispatch_limited(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_limited(self, envelope: Envelope) -> None:
        async with self._semaphore:
            await self.dispatch(envelope)

    async def dispatch(
        self, envelope: Envelope, target: Optional[TargetConfig] = None
    ) -> DispatchResult:
        """
        Forward one envelope. Never raises for delivery failures.

        Args:
            envelope: Envelope received from the relay
            target: Local target (defaults to the configured forward target)

        Returns:
            DispatchResult describing the outcome
        """
        target = target or self.config.get_target()
        if target is None:
            result = DispatchResult(
                success=False,
                method=envelope.method,
                error=f"No target configured for '{self.config.forward_target}'",
            )
            self._record(result)
            return result

        url = rewrite_url(envelope.source_url, target)
        headers = build_headers(envelope, self.config.host_header_mode)
        body = build_body(envelope)

        logger.info(f"Forwarding {envelope.method} {url}")

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        status_code = None
        error = None

        try:
            async with self._session.request(
                method=envelope.method,
                url=URL(url, encoded=True),
                headers=headers,
                data=body,
                allow_redirects=False,
            ) as response:
                await response.read()
                status_code = response.status
                if not 200 <= status_code < 300:
                    error = f"HTTP {status_code} {response.reason or ''}".strip()

        except asyncio.TimeoutError:
            error = "Request timeout"
        except aiohttp.ClientError as e:
            error = str(e) or e.__class__.__name__
        except Exception as e:
            # aiohttp rejects methods and header values it cannot put on the wire
            error = f"{e.__class__.__name__}: {e}"

        result = DispatchResult(
            success=error is None,
            method=envelope.method,
            url=url,
            status_code=status_code,
            error=error,
            duration_ms=(loop.time() - start_time) * 1000,
        )
        self._record(result)
        return result

    def _record(self, result: DispatchResult) -> None:
        if result.success:
            self._stats.messages_forwarded += 1
            logger.info(
                f"{result.status_code} {result.method} {result.url} "
                f"({result.duration_ms:.0f}ms)"
            )
        else:
            self._stats.messages_failed += 1
            logger.error(
                f"Failed to forward {result.method} {result.url}: {result.error}"
            )

    def get_stats(self) -> Dict[str, Any]:
        """Get forwarding statistics."""
        return {
            "messages_forwarded": self._stats.messages_forwarded,
            "messages_failed": self._stats.messages_failed,
            "in_flight_count": len(self._tasks),
            "running": self._running,
        }

    @property
    def in_flight_count(self) -> int:
        """Number of forwards currently scheduled or running."""
        return len(self._tasks)
