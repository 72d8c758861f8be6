import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(ValueError):
    """Invalid configuration value."""


def validate_port(name: str, port: Any) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigError(f"{name} must be an integer, got {type(port).__name__}")
    if port < MIN_PORT or port > MAX_PORT:
        raise ConfigError(f"{name} must be between {MIN_PORT} and {MAX_PORT}, got {port}")
    return port


def validate_positive(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return value


@dataclass
class Settings:
    """
    Runtime settings for both roles. Defaults suit a relay and peers on one
    machine; a JSON file and then the command line override them.
    """
    relay_host: str = "127.0.0.1"
    relay_port: int = 5000
    relay_path: str = "/ws"

    peer_id: Optional[str] = None
    display_name: str = "anonymous"
    ice_servers: List[str] = field(default_factory=lambda: ["stun:stun.l.google.com:19302"])

    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    heartbeat_interval: float = 30.0
    connect_timeout: float = 10.0
    reinit_cooldown: float = 3.0
    fatal_reinit_delay: float = 5.0

    chunk_size: int = 16 * 1024
    max_file_size: int = 10 * 1024 * 1024
    session_ttl: float = 120.0
    sweep_interval: float = 10.0

    log_level: str = "INFO"
    log_file: Optional[str] = "p2pchat.log"
    config_file: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def relay_url(self) -> str:
        return f"ws://{self.relay_host}:{self.relay_port}{self.relay_path}"

    def validate(self):
        validate_port("relay_port", self.relay_port)
        if not isinstance(self.relay_path, str) or not self.relay_path.startswith("/"):
            raise ConfigError(f"relay_path must start with '/', got {self.relay_path!r}")
        if not isinstance(self.display_name, str) or not self.display_name.strip():
            raise ConfigError("display_name must be a non-empty string")
        if self.peer_id is not None and (not isinstance(self.peer_id, str) or not self.peer_id):
            raise ConfigError("peer_id must be a non-empty string when set")
        if not isinstance(self.ice_servers, list) or not all(isinstance(s, str) for s in self.ice_servers):
            raise ConfigError("ice_servers must be a list of URLs")
        if isinstance(self.max_reconnect_attempts, bool) or not isinstance(self.max_reconnect_attempts, int) \
                or self.max_reconnect_attempts < 0:
            raise ConfigError(f"max_reconnect_attempts must be a non-negative integer, "
                              f"got {self.max_reconnect_attempts!r}")
        for name in ("reconnect_delay", "heartbeat_interval", "connect_timeout", "reinit_cooldown",
                     "fatal_reinit_delay", "session_ttl", "sweep_interval"):
            validate_positive(name, getattr(self, name))
        for name in ("chunk_size", "max_file_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

    @classmethod
    def from_file(cls, path: Optional[str]) -> 'Settings':
        """
        Loads settings from a JSON object file. A missing path gives defaults;
        keys that are not settings are kept in ``extra``.
        """
        if path is None or not Path(path).exists():
            return cls(config_file=path)

        try:
            with open(path, "r", encoding="utf-8") as fp:
                raw = json.load(fp)
        except ValueError as e:
            raise ConfigError(f"{path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a JSON object")

        known = {f.name for f in fields(cls)} - {"config_file", "extra"}
        settings = cls(**{k: v for k, v in raw.items() if k in known}, config_file=path)
        settings.extra.update({k: v for k, v in raw.items() if k not in known})
        if settings.extra:
            logger.debug(f"Unknown config keys kept as extra: {sorted(settings.extra)}")
        settings.validate()
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
