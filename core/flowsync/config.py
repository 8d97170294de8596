"""Shared flowsync configuration utilities.

Centralises reading of ~/.flowsync/configuration.json so that the server,
the client session and the CLI share one implementation.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_WINDOW_MS = 100
DEFAULT_RECONNECT_DELAY_MS = 3000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

# Hard cap on per-entity log retention; not configurable.
MAX_LOGS_PER_ENTITY = 100

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWSYNC_CONFIG_FILE = Path.home() / ".flowsync" / "configuration.json"


def get_flowsync_config() -> dict[str, Any]:
    """Load flowsync configuration from ~/.flowsync/configuration.json."""
    if not FLOWSYNC_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWSYNC_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _positive(value: Any, default: int) -> int:
    """Return value if it is a positive int, otherwise the default."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return value


def get_batch_size() -> int:
    """Return the configured batch size, falling back to DEFAULT_BATCH_SIZE."""
    value = get_flowsync_config().get("batching", {}).get("batch_size")
    return _positive(value, DEFAULT_BATCH_SIZE)


def get_batch_window_ms() -> int:
    """Return the configured batch window in milliseconds."""
    value = get_flowsync_config().get("batching", {}).get("batch_window_ms")
    return _positive(value, DEFAULT_BATCH_WINDOW_MS)


def get_reconnect_delay_ms() -> int:
    value = get_flowsync_config().get("transport", {}).get("reconnect_delay_ms")
    return _positive(value, DEFAULT_RECONNECT_DELAY_MS)


def get_max_reconnect_attempts() -> int:
    value = get_flowsync_config().get("transport", {}).get("max_reconnect_attempts")
    return _positive(value, DEFAULT_MAX_RECONNECT_ATTEMPTS)


# ---------------------------------------------------------------------------
# Component configs
# ---------------------------------------------------------------------------


@dataclass
class BatcherConfig:
    """Flush policy for the server-side event batcher."""

    batch_size: int = field(default_factory=get_batch_size)
    batch_window_ms: int = field(default_factory=get_batch_window_ms)

    def __post_init__(self) -> None:
        # Falsy or negative values mean "use the default".
        self.batch_size = _positive(self.batch_size, DEFAULT_BATCH_SIZE)
        self.batch_window_ms = _positive(self.batch_window_ms, DEFAULT_BATCH_WINDOW_MS)

    @property
    def batch_window(self) -> float:
        """Batch window in seconds."""
        return self.batch_window_ms / 1000


@dataclass
class SessionConfig:
    """Client transport session configuration."""

    url: str
    reconnect_delay_ms: int = field(default_factory=get_reconnect_delay_ms)
    max_reconnect_attempts: int = field(default_factory=get_max_reconnect_attempts)
    enable_logging: bool = True

    def __post_init__(self) -> None:
        self.reconnect_delay_ms = _positive(self.reconnect_delay_ms, DEFAULT_RECONNECT_DELAY_MS)
        self.max_reconnect_attempts = _positive(
            self.max_reconnect_attempts, DEFAULT_MAX_RECONNECT_ATTEMPTS
        )

    def reconnect_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnection attempt number ``attempt`` (1-based).

        Doubles per attempt and is capped at twice the base delay.
        """
        base = self.reconnect_delay_ms
        delay_ms = min(base * 2 ** max(attempt - 1, 0), base * 2)
        return delay_ms / 1000


@dataclass
class ServerConfig:
    """Configuration for the workflow WebSocket server."""

    host: str = "127.0.0.1"
    port: int = 3000
    path: str = "/ws"
