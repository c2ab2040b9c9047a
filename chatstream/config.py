"""Configuration management for chatstream."""

import codecs
import os
from typing import Any

import yaml
from dotenv import load_dotenv

from .streaming.models import StreamMode

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_RENDERERS = ("console", "json")


class Configuration:
    """Manages configuration and environment variables for the stream client."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: YAML file to load; defaults to the packaged config.yaml.
        """
        self.load_env()
        self._config = self._load_yaml_config(config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(self, config_path: str | None) -> dict[str, Any]:
        """Load configuration from YAML file."""
        if config_path is None:
            config_path = os.path.join(os.path.dirname(__file__), "config.yaml")
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    def get_stream_config(self) -> dict[str, Any]:
        """Get stream configuration from YAML.

        ``CHATSTREAM_ENDPOINT`` overrides ``stream.endpoint``.

        Returns:
            Stream configuration dictionary with validated values.

        Raises:
            ValueError: If a stream parameter is missing or invalid.
        """
        stream_config = dict(self._config.get("stream", {}))

        if endpoint := os.getenv("CHATSTREAM_ENDPOINT"):
            stream_config["endpoint"] = endpoint
        if not stream_config.get("endpoint"):
            raise ValueError("stream.endpoint must be explicitly configured")

        mode = stream_config.setdefault("mode", StreamMode.NDJSON.value)
        valid_modes = [m.value for m in StreamMode]
        if mode not in valid_modes:
            raise ValueError(
                f"stream.mode must be one of {valid_modes}, got '{mode}'"
            )

        encoding = stream_config.setdefault("encoding", "utf-8")
        try:
            codecs.lookup(encoding)
        except LookupError as e:
            raise ValueError(f"stream.encoding '{encoding}' is not a known codec") from e

        deadline = stream_config.setdefault("deadline_seconds", None)
        if deadline is not None and (
            not isinstance(deadline, int | float) or deadline <= 0
        ):
            raise ValueError("stream.deadline_seconds must be positive or null")

        return stream_config

    def get_transport_config(self) -> dict[str, Any]:
        """Get HTTP transport configuration from YAML.

        Returns:
            Transport configuration dictionary with validated values.

        Raises:
            ValueError: If required transport parameters are missing or invalid.
        """
        transport_config = self._config.get("transport", {})

        required_keys = [
            "connect_timeout", "read_timeout", "write_timeout", "pool_timeout",
            "max_connections",
        ]
        for key in required_keys:
            if key not in transport_config:
                raise ValueError(
                    f"transport.{key} must be explicitly configured in config.yaml"
                )

        for key in ("connect_timeout", "read_timeout", "write_timeout", "pool_timeout"):
            value = transport_config[key]
            if value is not None and value <= 0:
                raise ValueError(f"transport.{key} must be positive or null")

        if transport_config["max_connections"] < 1:
            raise ValueError("transport.max_connections must be at least 1")

        return transport_config

    def get_chat_config(self) -> dict[str, Any]:
        """Get conversation configuration from YAML.

        Returns:
            Chat configuration dictionary with defaults filled in.
        """
        chat_config = dict(self._config.get("chat", {}))
        chat_config.setdefault("greeting", None)
        chat_config.setdefault("reset_greeting", chat_config["greeting"])
        chat_config.setdefault("fallback_message", None)
        chat_config.setdefault("supersede_active", True)
        return chat_config

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML.

        ``CHATSTREAM_LOG_LEVEL`` overrides ``logging.level``.

        Returns:
            Logging configuration dictionary.

        Raises:
            ValueError: If the level or renderer is unknown.
        """
        logging_config = dict(self._config.get("logging", {}))
        if level := os.getenv("CHATSTREAM_LOG_LEVEL"):
            logging_config["level"] = level

        level = str(logging_config.setdefault("level", "INFO")).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {LOG_LEVELS}")
        logging_config["level"] = level

        renderer = logging_config.setdefault("renderer", "console")
        if renderer not in LOG_RENDERERS:
            raise ValueError(f"logging.renderer must be one of {LOG_RENDERERS}")

        return logging_config
