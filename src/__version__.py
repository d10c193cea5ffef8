"""Version information for Webhook Relay."""

__version__ = "1.0.0"
__author__ = "spiderhash-io"
__license__ = "MIT"
__description__ = "Broadcast inbound webhooks to local services over WebSocket"
__url__ = "https://github.com/spiderhash-io/webhook-relay"
