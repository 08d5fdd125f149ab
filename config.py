"""Configuration management for the chat polling client.

Provides a ConfigManager class that loads and persists settings from a YAML
file with sensible defaults, and ChatSettings, the typed view of those
settings that the client is built from.
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List

from core.retry import RetryPolicy
from storage.file_store import YAMLFileStore

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "chat": {
        "site": "stackoverflow.com",
        "rooms": [1],
        "heartbeat_seconds": 3,
        # the server's own limit on how long a message stays editable
        "edit_time_limit_seconds": 120,
        "request_timeout_seconds": 30,
        "user_agent": "chatsync-vc",
        # cookies of an already logged-in account, e.g. {"acct": "..."}
        "cookies": {},
    },
    "retry": {
        "base_delay_seconds": 5,
        "max_attempts": 3,
        "max_backoff_seconds": 60,
    },
    "logging": {
        "level": "INFO",
    },
}


@dataclass
class ConfigManager:
    """Loads the client configuration from a YAML file.

    Attributes:
        path: Path to the YAML configuration file
    """
    path: str
    _store: YAMLFileStore = field(init=False)

    def __post_init__(self) -> None:
        self._store = YAMLFileStore(self.path)

    def load(self) -> Dict[str, Any]:
        """Load configuration from file.

        A missing or malformed file is replaced with the defaults so the
        operator has a complete file to edit.
        """
        data = self._store.load()
        if data is None:
            logger.warning("Writing default config to %s", self.path)
            self._store.save(DEFAULT_CONFIG)
            return copy.deepcopy(DEFAULT_CONFIG)

        # Merge defaults with existing config, one level deep
        merged = copy.deepcopy(DEFAULT_CONFIG)
        for k, v in data.items():
            if isinstance(v, dict) and isinstance(merged.get(k), dict):
                merged[k].update(v)
            else:
                merged[k] = v
        return merged


@dataclass(frozen=True)
class ChatSettings:  # pylint: disable=too-many-instance-attributes
    """Typed settings for building a ChatClient."""
    site: str
    rooms: List[int]
    heartbeat: float
    edit_time_limit: timedelta
    request_timeout: float
    user_agent: str
    cookies: Dict[str, str]
    retry: RetryPolicy
    log_level: str

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ChatSettings":
        """Build settings from a loaded configuration dictionary.

        Raises:
            ValueError: if a value has the wrong type or range
        """
        chat = config.get("chat") or {}
        retry = config.get("retry") or {}
        log = config.get("logging") or {}

        try:
            return cls(
                site=str(chat["site"]),
                rooms=[int(r) for r in chat.get("rooms") or []],
                heartbeat=float(chat["heartbeat_seconds"]),
                edit_time_limit=timedelta(seconds=float(chat["edit_time_limit_seconds"])),
                request_timeout=float(chat["request_timeout_seconds"]),
                user_agent=str(chat["user_agent"]),
                cookies={str(k): str(v) for k, v in (chat.get("cookies") or {}).items()},
                retry=RetryPolicy(
                    base_delay=float(retry["base_delay_seconds"]),
                    max_attempts=int(retry["max_attempts"]),
                    max_backoff=float(retry["max_backoff_seconds"]),
                ),
                log_level=str(log.get("level", "INFO")).upper(),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid configuration: {e}") from e
