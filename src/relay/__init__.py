# Webhook Relay - broadcast inbound webhooks to connected subscribers
#
# This module provides the relay server: it receives webhooks on any path
# and streams them verbatim to every subscriber connected over WebSocket.

from src.relay.models import (
    Envelope,
    EnvelopeDecodeError,
    SubscriberConnection,
    BroadcastResult,
    encode_envelope,
    decode_envelope,
)
from src.relay.registry import SubscriberRegistry
from src.relay.config import RelayConfig

__all__ = [
    "Envelope",
    "EnvelopeDecodeError",
    "SubscriberConnection",
    "BroadcastResult",
    "encode_envelope",
    "decode_envelope",
    "SubscriberRegistry",
    "RelayConfig",
]
