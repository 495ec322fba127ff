"""Runtime configuration read from the environment.

Values are folded into explicit objects that are handed to the storage
adapter and the state machine; nothing here is a mutable module global.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from threading import Lock

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_ROTATION_WINDOW_HOURS = 72


def _get_database_url() -> str | None:
    value = os.getenv("DECISIONOS_DATABASE_URL", "").strip()
    return value or None


def _is_readonly() -> bool:
    return os.getenv("DECISIONOS_READONLY", "").strip().lower() in _TRUTHY


def _get_log_level() -> str:
    return os.getenv("DECISIONOS_LOG_LEVEL", "INFO")


def _get_rotation_window_hours() -> float:
    raw = os.getenv("DECISIONOS_ROTATION_WINDOW_HOURS", str(DEFAULT_ROTATION_WINDOW_HOURS))
    try:
        value = float(raw)
    except ValueError:
        return float(DEFAULT_ROTATION_WINDOW_HOURS)
    return value if value > 0 else float(DEFAULT_ROTATION_WINDOW_HOURS)


@dataclass
class StoreConfig:
    """Configuration held by one storage adapter instance.

    The readonly flag is shared by every caller of the adapter that owns this
    object; toggling it affects all of them at once.
    """

    database_url: str | None = None
    _readonly: bool = False
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    @property
    def readonly(self) -> bool:
        with self._lock:
            return self._readonly

    def set_readonly(self, enabled: bool) -> None:
        """Enable or disable readonly (maintenance) mode."""
        with self._lock:
            self._readonly = enabled

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(database_url=_get_database_url(), _readonly=_is_readonly())


@dataclass(frozen=True)
class Settings:
    """Process settings for wiring the decision core."""

    log_level: str = "INFO"
    rotation_window_hours: float = float(DEFAULT_ROTATION_WINDOW_HOURS)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            log_level=_get_log_level(),
            rotation_window_hours=_get_rotation_window_hours(),
        )
