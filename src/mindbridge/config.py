from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
    log_level: str = "INFO"

    def with_overrides(self, **overrides) -> "ServerConfig":
        """Return a copy with every non-``None`` override applied."""

        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}")
    return level


def load_config_from_env() -> ServerConfig:
    defaults = ServerConfig()
    return ServerConfig(
        host=os.environ.get("MINDBRIDGE_HOST") or defaults.host,
        port=_parse_positive_int("MINDBRIDGE_PORT", defaults.port),
        db_path=os.environ.get("MINDBRIDGE_DB_PATH") or None,
        ping_interval_s=_parse_positive_int("MINDBRIDGE_PING_INTERVAL_S", defaults.ping_interval_s),
        ping_miss_limit=_parse_non_negative_int("MINDBRIDGE_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_positive_int("MINDBRIDGE_MAX_MSG_SIZE", defaults.max_msg_size),
        outbound_queue_size=_parse_positive_int("MINDBRIDGE_OUTBOUND_QUEUE_SIZE", defaults.outbound_queue_size),
        log_level=_parse_log_level("MINDBRIDGE_LOG_LEVEL", defaults.log_level),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
