from typing import Dict, Any, List, Optional
import json
import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_PORT = 32000
DEFAULT_ALLOWED_IPS = "127.0.0.1,192.168.1.*,10.0.0.0/24"


class ProxyConfig:
    """Configuration manager for the forward proxy."""

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration with optional config file path.

        A missing or unreadable file is not fatal: the defaults are kept
        and the problem is logged.

        Args:
            config_path: Path to JSON configuration file
            overrides: Values applied on top of the file (e.g. from the CLI)
        """
        self.config_path = config_path
        self.config = self._load_default_config()

        if config_path:
            if os.path.exists(config_path):
                self._load_config_file()
            else:
                logger.warning(f"Config file {config_path} not found, using defaults")

        for key, value in (overrides or {}).items():
            if value is not None:
                self.config[key] = value

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "0.0.0.0",
            "port": DEFAULT_PORT,
            "allowed_ips": DEFAULT_ALLOWED_IPS,
            "timeout": 10,
            "grace_period": 3,
            "hard_timeout": 10,
            "max_connections": 128,
            "buffer_size": 65536
        }

    def _load_config_file(self) -> None:
        """Overlay configuration from a JSON file, keeping defaults on failure."""
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
            if not isinstance(file_config, dict):
                raise ValueError("top-level JSON value must be an object")
            self.config.update(file_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config file {self.config_path}, using defaults: {e}")

    def get(self, key: str) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key

        Returns:
            Configuration value
        """
        return self.config.get(key)

    @property
    def host(self) -> str:
        return str(self.config.get("host") or "0.0.0.0")

    @property
    def port(self) -> int:
        """The listening port; values that are not a valid port fall back to the default."""
        raw = self.config.get("port")
        try:
            port = int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Invalid port {raw!r}, using default {DEFAULT_PORT}")
            return DEFAULT_PORT
        if not 0 < port < 65536:
            logger.warning(f"Port {port} out of range, using default {DEFAULT_PORT}")
            return DEFAULT_PORT
        return port

    @property
    def allowed_ips(self) -> List[str]:
        """
        Allow-list patterns, accepting either a comma-separated string or a list.

        An empty result means the proxy is open to every client.
        """
        raw = self.config.get("allowed_ips")
        if not raw:
            return []
        if isinstance(raw, str):
            items = raw.split(',')
        else:
            items = [str(item) for item in raw]
        return [item.strip() for item in items if item.strip()]

    def _number(self, key: str) -> float:
        default = self._load_default_config()[key]
        try:
            value = float(self.config.get(key))
        except (TypeError, ValueError):
            logger.warning(f"Invalid {key} {self.config.get(key)!r}, using default {default}")
            return default
        return value if value > 0 else default

    @property
    def timeout(self) -> float:
        return self._number("timeout")

    @property
    def grace_period(self) -> float:
        return self._number("grace_period")

    @property
    def hard_timeout(self) -> float:
        return self._number("hard_timeout")

    @property
    def max_connections(self) -> int:
        return int(self._number("max_connections"))

    @property
    def buffer_size(self) -> int:
        return int(self._number("buffer_size"))
