"""
Configuration for the Relay server.

Configuration is read once at startup from environment variables
(a local .env file is loaded first) and is read-only afterwards.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_WEBSOCKET_SUFFIX = "/_websocket"


@dataclass
class RelayConfig:
    """
    Relay server configuration.

    Environment variables:
        WEBSOCKET_TOKEN: Shared secret subscribers must present (required)
        RELAY_HOST: Bind address (default: 0.0.0.0)
        RELAY_PORT: Bind port (default: 8787)
        RELAY_WEBSOCKET_SUFFIX: Reserved path suffix for channel-open requests
        RELAY_SEND_TIMEOUT: Per-subscriber send timeout in seconds
        RELAY_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    """

    token: str = ""

    # Network
    host: str = "0.0.0.0"
    port: int = 8787

    # Channel settings
    websocket_suffix: str = DEFAULT_WEBSOCKET_SUFFIX
    send_timeout: float = 5.0
    shutdown_close_code: int = 1001
    shutdown_close_reason: str = "Relay shutting down"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "RelayConfig":
        """Create configuration from environment variables."""
        if dotenv:
            load_dotenv()

        config = cls()

        env_mapping = {
            "WEBSOCKET_TOKEN": "token",
            "RELAY_HOST": "host",
            "RELAY_PORT": ("port", int),
            "RELAY_WEBSOCKET_SUFFIX": "websocket_suffix",
            "RELAY_SEND_TIMEOUT": ("send_timeout", float),
            "RELAY_LOG_LEVEL": "log_level",
        }

        for env_var, field_info in env_mapping.items():
            value = os.environ.get(env_var)
            if value:
                if isinstance(field_info, tuple):
                    field_name, converter = field_info
                    setattr(config, field_name, converter(value))
                else:
                    setattr(config, field_info, value)

        return config

    def missing_env_vars(self) -> List[str]:
        """Names of required environment variables that are not set."""
        missing = []
        if not self.token:
            missing.append("WEBSOCKET_TOKEN")
        return missing

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        missing = self.missing_env_vars()
        if missing:
            errors.append(f"Missing environment variables: {', '.join(missing)}")

        if not self.websocket_suffix.startswith("/") or self.websocket_suffix == "/":
            errors.append("websocket_suffix must start with '/' and name a path segment")

        if not 0 < self.port < 65536:
            errors.append(f"port must be between 1 and 65535, got {self.port}")

        if self.send_timeout <= 0:
            errors.append("send_timeout must be positive")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (excluding the token)."""
        return {
            "host": self.host,
            "port": self.port,
            "websocket_suffix": self.websocket_suffix,
            "send_timeout": self.send_timeout,
            "log_level": self.log_level,
            "has_token": bool(self.token),
        }
