"""Server options and lookups into the global configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from faktory import logger

DEFAULT_MAX_POOL_SIZE = 2000


@dataclass
class ServerOptions:
    """Settings the server is started with."""

    global_config: dict[str, Any] = field(default_factory=dict)
    binding: str = ""
    storage_directory: str = ""
    redis_sock: str = ""
    config_directory: str = ""
    environment: str = ""
    password: str = field(default="", repr=False)
    pool_size: int = DEFAULT_MAX_POOL_SIZE

    def string(self, subsys: str, key: str, default: str = "") -> str:
        """A string setting, or default if it is missing or not a string."""
        value = self.config(subsys, key, default)
        if not isinstance(value, str):
            logger.warn("Config error: %s/%s is not a String", subsys, key)
            return default
        return value

    def config(self, subsys: str, key: str, default: Any = None) -> Any:
        """The value of key in the subsys section, or default."""
        section = self.global_config.get(subsys)
        if section is None and subsys not in self.global_config:
            return default
        if not isinstance(section, dict):
            logger.warn(
                "Invalid configuration, expected a %s subsystem, using default", subsys
            )
            return default
        return section.get(key, default)