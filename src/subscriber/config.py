"""
Configuration for the relay Subscriber.

Supports loading configuration from:
- YAML/JSON files
- Environment variables (a local .env file is loaded first)
- Command line arguments
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

HOST_HEADER_MODES = ("rewrite", "preserve")

# Logical target name -> environment variable holding its URL
TARGET_ENV_VARS = {
    "api": "API_SERVICE_URL",
    "ai": "AI_SERVICE_URL",
}
REQUIRED_ENV_VARS = ["RELAY_URL", "WEBSOCKET_TOKEN", "API_SERVICE_URL"]


@dataclass
class TargetConfig:
    """A local service that receives forwarded webhooks."""

    name: str
    hostname: str
    port: Optional[int] = None
    scheme: str = "http"

    @classmethod
    def from_url(cls, name: str, url: str) -> "TargetConfig":
        """Parse a service URL such as http://localhost:8787."""
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"Target '{name}' must be an http(s) URL, got '{url}'")
        return cls(
            name=name,
            hostname=parts.hostname,
            port=parts.port,
            scheme=parts.scheme,
        )

    @property
    def netloc(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        if self.port is None:
            return host
        return f"{host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.netloc}"


@dataclass
class SubscriberConfig:
    """
    Subscriber configuration.

    Configuration priority (highest to lowest):
    1. Command line arguments
    2. Environment variables
    3. Configuration file (subscriber.json or subscriber.yaml)
    4. Default values

    Environment variables:
        RELAY_URL: Relay channel URL, e.g. wss://relay.example.com/_websocket
        WEBSOCKET_TOKEN: Shared secret, appended as ?token=
        API_SERVICE_URL: Local "api" service URL
        AI_SERVICE_URL: Local "ai" service URL (optional)
        RELAY_FORWARD_TARGET: Name of the target webhooks are forwarded to
        RELAY_RECONNECT_DELAY: Initial seconds between reconnect attempts
        RELAY_MAX_RECONNECT_DELAY: Maximum reconnect delay
        RELAY_FORWARD_TIMEOUT: Timeout for each forwarded request
        RELAY_MAX_CONCURRENT_REQUESTS: Parallel forwarded requests
        RELAY_ORDERED_DELIVERY: Forward one message at a time, in receipt order
        RELAY_HOST_HEADER_MODE: "rewrite" or "preserve"
        RELAY_VERIFY_SSL: Verify the relay's TLS certificate
        RELAY_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
    """

    # Relay connection settings
    relay_url: str = ""
    token: str = ""

    # Local targets: name -> TargetConfig
    targets: Dict[str, TargetConfig] = field(default_factory=dict)
    forward_target: str = "api"

    # Connection settings
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    reconnect_backoff_multiplier: float = 2.0
    heartbeat_interval: float = 30.0
    connection_timeout: float = 30.0
    verify_ssl: bool = True

    # Forwarding settings
    forward_timeout: float = 30.0
    max_concurrent_requests: int = 10
    ordered_delivery: bool = False
    host_header_mode: str = "rewrite"

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Required environment variables that were absent at load time
    missing: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_file(cls, path: str) -> "SubscriberConfig":
        """Load configuration from a file."""
        file_path = Path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(file_path, "r") as f:
            if file_path.suffix in [".yaml", ".yml"]:
                import yaml

                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriberConfig":
        """Create configuration from a dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected dict, got {type(data).__name__}")

        config = cls()

        # Field name -> expected type(s) for validation
        _FIELD_TYPES: Dict[str, Any] = {
            "relay_url": str,
            "token": str,
            "forward_target": str,
            "reconnect_delay": (int, float),
            "max_reconnect_delay": (int, float),
            "reconnect_backoff_multiplier": (int, float),
            "heartbeat_interval": (int, float),
            "connection_timeout": (int, float),
            "verify_ssl": bool,
            "forward_timeout": (int, float),
            "max_concurrent_requests": int,
            "ordered_delivery": bool,
            "host_header_mode": str,
            "log_level": str,
            "log_format": str,
        }

        for field_name, expected_type in _FIELD_TYPES.items():
            if field_name in data:
                value = data[field_name]
                if value is not None and not isinstance(value, expected_type):
                    raise TypeError(
                        f"Config field '{field_name}' expected {expected_type}, "
                        f"got {type(value).__name__}"
                    )
                setattr(config, field_name, value)

        # Targets: name -> URL
        targets = data.get("targets", {})
        if not isinstance(targets, dict):
            raise TypeError("Config field 'targets' must map names to URLs")
        for name, url in targets.items():
            config.targets[name] = TargetConfig.from_url(name, url)

        return config

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "SubscriberConfig":
        """Create configuration from environment variables."""
        if dotenv:
            load_dotenv()

        config = cls()

        env_mapping = {
            "RELAY_URL": "relay_url",
            "WEBSOCKET_TOKEN": "token",
            "RELAY_FORWARD_TARGET": "forward_target",
            "RELAY_RECONNECT_DELAY": ("reconnect_delay", float),
            "RELAY_MAX_RECONNECT_DELAY": ("max_reconnect_delay", float),
            "RELAY_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
            "RELAY_CONNECTION_TIMEOUT": ("connection_timeout", float),
            "RELAY_VERIFY_SSL": ("verify_ssl", lambda x: x.lower() == "true"),
            "RELAY_FORWARD_TIMEOUT": ("forward_timeout", float),
            "RELAY_MAX_CONCURRENT_REQUESTS": ("max_concurrent_requests", int),
            "RELAY_ORDERED_DELIVERY": ("ordered_delivery", lambda x: x.lower() == "true"),
            "RELAY_HOST_HEADER_MODE": "host_header_mode",
            "RELAY_LOG_LEVEL": "log_level",
        }

        config._env_fields = set()
        for env_var, field_info in env_mapping.items():
            value = os.environ.get(env_var)
            if value:
                if isinstance(field_info, tuple):
                    field_name, converter = field_info
                    setattr(config, field_name, converter(value))
                else:
                    field_name = field_info
                    setattr(config, field_name, value)
                config._env_fields.add(field_name)

        for name, env_var in TARGET_ENV_VARS.items():
            url = os.environ.get(env_var)
            if url:
                config.targets[name] = TargetConfig.from_url(name, url)

        config.missing = [name for name in REQUIRED_ENV_VARS if not os.environ.get(name)]
        return config

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "SubscriberConfig":
        """
        Load configuration with proper precedence.

        1. Start with defaults
        2. Override with file config (if provided)
        3. Override with environment variables
        """
        config = cls.from_file(config_path) if config_path else cls()

        env_config = cls.from_env()
        for field_name in getattr(env_config, "_env_fields", set()):
            setattr(config, field_name, getattr(env_config, field_name))
        config.targets.update(env_config.targets)

        # A file can stand in for the environment, so only report what is still unset
        config.missing = []
        if not config.relay_url:
            config.missing.append("RELAY_URL")
        if not config.token:
            config.missing.append("WEBSOCKET_TOKEN")
        if "api" not in config.targets and config.forward_target == "api":
            config.missing.append("API_SERVICE_URL")

        return config

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.missing:
            errors.append(f"Missing environment variables: {', '.join(self.missing)}")
        else:
            if not self.relay_url:
                errors.append("relay_url is required")
            if not self.token:
                errors.append("token is required")

        if self.relay_url and urlsplit(self.relay_url).scheme not in (
            "ws", "wss", "http", "https"
        ):
            errors.append("relay_url must be a ws://, wss://, http:// or https:// URL")

        if self.forward_target not in self.targets and not self.missing:
            errors.append(f"No target configured for '{self.forward_target}'")

        if self.host_header_mode not in HOST_HEADER_MODES:
            errors.append(
                f"host_header_mode must be 'rewrite' or 'preserve', got '{self.host_header_mode}'"
            )

        if self.reconnect_delay <= 0:
            errors.append("reconnect_delay must be positive")

        if self.max_reconnect_delay < self.reconnect_delay:
            errors.append("max_reconnect_delay must be >= reconnect_delay")

        if self.max_concurrent_requests < 1:
            errors.append("max_concurrent_requests must be at least 1")

        if self.forward_timeout <= 0:
            errors.append("forward_timeout must be positive")

        return errors

    def get_target(self, name: Optional[str] = None) -> Optional[TargetConfig]:
        """Get a target by name (the forward target by default)."""
        return self.targets.get(name or self.forward_target)

    def get_stream_url(self) -> str:
        """Get the relay channel URL with the token embedded."""
        parts = urlsplit(self.relay_url)

        # Convert http(s) to ws(s)
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)

        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "token"]
        query.append(("token", self.token))

        return urlunsplit((scheme, parts.netloc, parts.path, urlencode(query), ""))

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (excluding sensitive data)."""
        return {
            "relay_url": self.relay_url,
            "targets": {name: t.base_url for name, t in self.targets.items()},
            "forward_target": self.forward_target,
            "reconnect_delay": self.reconnect_delay,
            "max_reconnect_delay": self.max_reconnect_delay,
            "forward_timeout": self.forward_timeout,
            "max_concurrent_requests": self.max_concurrent_requests,
            "ordered_delivery": self.ordered_delivery,
            "host_header_mode": self.host_header_mode,
            "verify_ssl": self.verify_ssl,
            "log_level": self.log_level,
        }
