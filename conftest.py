import pytest

RELAY_ENV_VARS = [
    "WEBSOCKET_TOKEN",
    "RELAY_URL",
    "API_SERVICE_URL",
    "AI_SERVICE_URL",
    "RELAY_HOST",
    "RELAY_PORT",
    "RELAY_WEBSOCKET_SUFFIX",
    "RELAY_SEND_TIMEOUT",
    "RELAY_LOG_LEVEL",
    "RELAY_FORWARD_TARGET",
    "RELAY_RECONNECT_DELAY",
    "RELAY_MAX_RECONNECT_DELAY",
    "RELAY_HEARTBEAT_INTERVAL",
    "RELAY_CONNECTION_TIMEOUT",
    "RELAY_FORWARD_TIMEOUT",
    "RELAY_MAX_CONCURRENT_REQUESTS",
    "RELAY_ORDERED_DELIVERY",
    "RELAY_HOST_HEADER_MODE",
    "RELAY_VERIFY_SSL",
]


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Clear relay environment variables and ignore any local .env file so tests don't interfere."""
    for name in RELAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)

    monkeypatch.setattr("src.relay.config.load_dotenv", lambda *args, **kwargs: False)
    monkeypatch.setattr("src.subscriber.config.load_dotenv", lambda *args, **kwargs: False)

    yield
