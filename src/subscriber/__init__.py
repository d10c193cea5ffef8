"""
Relay Subscriber.

The Subscriber runs next to a local service, keeps a WebSocket channel open
to the relay and forwards every relayed webhook to that service.

Usage:
    # As a module
    python -m src.subscriber.main

    # Programmatically
    from src.subscriber import RelaySubscriber, SubscriberConfig

    config = SubscriberConfig.load()
    subscriber = RelaySubscriber(config)
    await subscriber.start()
"""

# Only import config (no aiohttp dependency)
from src.subscriber.config import SubscriberConfig, TargetConfig


# Lazy imports for components with external dependencies
def __getattr__(name):
    """Lazy import for components that require aiohttp."""
    if name in ("RelayStreamClient", "ConnectionState"):
        from src.subscriber.stream_client import RelayStreamClient, ConnectionState

        return {
            "RelayStreamClient": RelayStreamClient,
            "ConnectionState": ConnectionState,
        }[name]
    elif name in ("ForwardingDispatcher", "DispatchResult"):
        from src.subscriber.dispatcher import ForwardingDispatcher, DispatchResult

        return {
            "ForwardingDispatcher": ForwardingDispatcher,
            "DispatchResult": DispatchResult,
        }[name]
    elif name == "RelaySubscriber":
        from src.subscriber.main import RelaySubscriber

        return RelaySubscriber
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "SubscriberConfig",
    "TargetConfig",
    "RelayStreamClient",
    "ConnectionState",
    "ForwardingDispatcher",
    "DispatchResult",
    "RelaySubscriber",
]
