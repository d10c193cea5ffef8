"""
Data models for the webhook relay.

This module defines the core data structures shared by the relay and its subscribers:
- Envelope: One relayed HTTP callback (URL, method, headers, optional body)
- SubscriberConnection: An open subscriber channel inside the relay
- BroadcastResult: Outcome of one fan-out

It also contains the wire codec (encode_envelope / decode_envelope).
"""

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union


class EnvelopeDecodeError(ValueError):
    """Raised when a relayed payload does not have the envelope structure."""


@dataclass(frozen=True)
class Envelope:
    """An inbound HTTP callback, captured verbatim by the relay."""

    source_url: str
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None  # None = no body, b"" = empty body

    def __post_init__(self):
        # Header names are case-insensitive; the last duplicate wins.
        normalized: Dict[str, str] = {}
        for name, value in dict(self.headers).items():
            normalized[name.lower()] = value
        object.__setattr__(self, "headers", MappingProxyType(normalized))
        if self.body is not None:
            object.__setattr__(self, "body", bytes(self.body))

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def to_wire_format(self) -> Dict[str, Any]:
        """Format for WebSocket transmission to subscribers."""
        return {
            "url": self.source_url,
            "method": self.method,
            "headers": dict(self.headers),
            "body": (
                base64.b64encode(self.body).decode("ascii")
                if self.body is not None
                else None
            ),
        }

    @classmethod
    def from_wire_format(cls, data: Any) -> "Envelope":
        """
        Create an envelope from its wire format.

        Raises:
            EnvelopeDecodeError: If the structure or any field type is wrong
        """
        if not isinstance(data, dict):
            raise EnvelopeDecodeError(
                f"Envelope must be a JSON object, got {type(data).__name__}"
            )

        for key in ("url", "method"):
            if not isinstance(data.get(key), str):
                raise EnvelopeDecodeError(f"Envelope field '{key}' must be a string")

        headers = data.get("headers")
        if not isinstance(headers, dict):
            raise EnvelopeDecodeError("Envelope field 'headers' must be an object")
        for name, value in headers.items():
            if not isinstance(value, str):
                raise EnvelopeDecodeError(f"Header '{name}' must have a string value")

        raw_body = data.get("body")
        if raw_body is None:
            body = None
        elif isinstance(raw_body, str):
            try:
                body = base64.b64decode(raw_body, validate=True)
            except (binascii.Error, ValueError) as e:
                raise EnvelopeDecodeError(f"Envelope body is not valid base64: {e}")
        else:
            raise EnvelopeDecodeError("Envelope field 'body' must be base64 or null")

        return cls(
            source_url=data["url"],
            method=data["method"],
            headers=headers,
            body=body,
        )


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope to the text frame sent to subscribers."""
    return json.dumps(envelope.to_wire_format())


def decode_envelope(payload: Union[str, bytes]) -> Envelope:
    """
    Parse a text frame received from the relay.

    Raises:
        EnvelopeDecodeError: On malformed JSON or envelope structure
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EnvelopeDecodeError(f"Payload is not valid JSON: {e}")
    return Envelope.from_wire_format(data)


@dataclass(eq=False)
class SubscriberConnection:
    """An open subscriber channel."""

    connection_id: str
    send_fn: Callable[[str], Awaitable[None]]
    close_fn: Optional[Callable[[int, str], Awaitable[None]]] = None

    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_message_at: Optional[datetime] = None
    messages_sent: int = 0

    # Client info
    remote_ip: Optional[str] = None
    user_agent: Optional[str] = None

    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def send(self, message: str) -> None:
        """Send one text frame; concurrent callers are serialized per channel."""
        async with self._send_lock:
            await self.send_fn(message)
            self.messages_sent += 1
            self.last_message_at = datetime.now(timezone.utc)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_fn is not None:
            await self.close_fn(code, reason)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and stats."""
        return {
            "connection_id": self.connection_id,
            "connected_at": self.connected_at.isoformat(),
            "last_message_at": (
                self.last_message_at.isoformat() if self.last_message_at else None
            ),
            "messages_sent": self.messages_sent,
            "remote_ip": self.remote_ip,
            "user_agent": self.user_agent,
        }


@dataclass
class BroadcastResult:
    """Outcome of broadcasting one envelope."""

    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "delivered": len(self.delivered),
            "failed": len(self.failed),
        }
