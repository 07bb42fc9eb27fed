"""Configuration management for webscan.

Supports multiple configuration sources with precedence:
CLI flags > Environment variables > Config file > Defaults

Usage:
    >>> config = Configuration()
    >>> config.load_from_file("~/.webscanrc")
    >>> config.load_from_env()
    >>> config.merge(wait_for=2000)  # CLI overrides
    >>> connector = Connector(emitter, launcher, **config.connector_options())
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_headers(value: str) -> Dict[str, str]:
    headers = json.loads(value)
    if not isinstance(headers, dict):
        raise ValueError("headers must be a JSON object")
    return headers


class Configuration:
    """Configuration manager with layered precedence.

    Precedence order (highest to lowest):
    1. CLI arguments (via merge method)
    2. Environment variables (WEBSCAN_* prefix)
    3. Config file (~/.webscanrc JSON)
    4. Default values

    Attributes:
        chrome_host: Host of the browser's debugging endpoint
        chrome_port: Browser remote debugging port (default: 9222)
        chrome_path: Browser binary to launch (None = search common locations)
        headless: Launch new browsers headless (default: True)
        timeout: Budget for in-page expression evaluation, seconds (default: 60.0)
        max_size: Maximum WebSocket message size in bytes (default: 8MB)
        tab_url: Blank page loaded in new tabs when use_tab_url is set
        use_tab_url: Open tabs on tab_url instead of about:blank
        wait_for: Settle delay after the load event, milliseconds (default: 1000)
        headers: Default outbound headers for out-of-band fetches
        override_invalid_cert: Accept all certificate errors (default: False)
        log_level: Logging level (default: "INFO")
        log_format: Log output format "text" or "json" (default: "text")
    """

    DEFAULTS: Dict[str, Any] = {
        "chrome_host": "localhost",
        "chrome_port": 9222,
        "chrome_path": None,
        "headless": True,
        "timeout": 60.0,
        "max_size": 8_388_608,  # 8MB
        "tab_url": "about:blank",
        "use_tab_url": False,
        "wait_for": 1000,
        "headers": None,
        "override_invalid_cert": False,
        "log_level": "INFO",
        "log_format": "text",
    }

    ENV_MAPPINGS = {
        "WEBSCAN_CHROME_HOST": ("chrome_host", str),
        "WEBSCAN_CHROME_PORT": ("chrome_port", int),
        "WEBSCAN_CHROME_PATH": ("chrome_path", str),
        "WEBSCAN_HEADLESS": ("headless", _parse_bool),
        "WEBSCAN_TIMEOUT": ("timeout", float),
        "WEBSCAN_MAX_SIZE": ("max_size", int),
        "WEBSCAN_TAB_URL": ("tab_url", str),
        "WEBSCAN_USE_TAB_URL": ("use_tab_url", _parse_bool),
        "WEBSCAN_WAIT_FOR": ("wait_for", int),
        "WEBSCAN_HEADERS": ("headers", _parse_headers),
        "WEBSCAN_OVERRIDE_INVALID_CERT": ("override_invalid_cert", _parse_bool),
        "WEBSCAN_LOG_LEVEL": ("log_level", str),
        "WEBSCAN_LOG_FORMAT": ("log_format", str),
    }

    def __init__(self):
        """Initialize configuration with default values."""
        self.chrome_host: str = self.DEFAULTS["chrome_host"]
        self.chrome_port: int = self.DEFAULTS["chrome_port"]
        self.chrome_path: Optional[str] = self.DEFAULTS["chrome_path"]
        self.headless: bool = self.DEFAULTS["headless"]
        self.timeout: float = self.DEFAULTS["timeout"]
        self.max_size: int = self.DEFAULTS["max_size"]
        self.tab_url: str = self.DEFAULTS["tab_url"]
        self.use_tab_url: bool = self.DEFAULTS["use_tab_url"]
        self.wait_for: int = self.DEFAULTS["wait_for"]
        self.headers: Optional[Dict[str, str]] = self.DEFAULTS["headers"]
        self.override_invalid_cert: bool = self.DEFAULTS["override_invalid_cert"]
        self.log_level: str = self.DEFAULTS["log_level"]
        self.log_format: str = self.DEFAULTS["log_format"]

    def load_from_file(self, file_path: str) -> None:
        """Load configuration from JSON file.

        Args:
            file_path: Path to config file (typically ~/.webscanrc)

        Note:
            Invalid JSON or missing file is ignored with a log message.
            Partial configs are merged with existing values.
        """
        path = Path(file_path).expanduser()

        if not path.exists():
            logger.debug(f"Config file not found: {path}")
            return

        try:
            with open(path, "r") as f:
                data = json.load(f)

            if not isinstance(data, dict):
                logger.warning(f"Config file {path} must contain a JSON object")
                return

            self._merge_dict(data)
            logger.info(f"Loaded configuration from {path}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in config file {path}: {e}")
        except OSError as e:
            logger.warning(f"Error loading config file {path}: {e}")

    def load_from_env(self) -> None:
        """Load configuration from WEBSCAN_* environment variables.

        Invalid values are ignored with a warning.
        """
        for env_var, (attr_name, type_converter) in self.ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is not None:
                try:
                    converted_value = type_converter(value)
                    setattr(self, attr_name, converted_value)
                    logger.debug(f"Loaded {attr_name}={converted_value} from {env_var}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"Invalid value for {env_var}: {value} ({e})")

    def merge(self, **kwargs) -> None:
        """Merge CLI arguments into configuration (highest precedence).

        Example:
            >>> config.merge(chrome_port=9333, wait_for=0)
        """
        self._merge_dict(kwargs)

    def _merge_dict(self, data: dict) -> None:
        for key, value in data.items():
            if key in self.DEFAULTS and value is not None:
                setattr(self, key, value)
                logger.debug(f"Set {key}={value}")

    def connector_options(self) -> Dict[str, Any]:
        """Construction-time options understood by Connector."""
        return {
            "tab_url": self.tab_url,
            "use_tab_url": self.use_tab_url,
            "wait_for": self.wait_for,
            "headers": self.headers,
            "override_invalid_cert": self.override_invalid_cert,
            "timeout": self.timeout,
        }

    def to_dict(self) -> dict:
        """Export configuration as dictionary."""
        return {key: getattr(self, key) for key in self.DEFAULTS}

    def __repr__(self) -> str:
        return f"Configuration({self.to_dict()})"
