"""pytest fixtures for decisionos."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from decisionos.config import StoreConfig
from decisionos.memory_store import MemoryStore
from decisionos.metrics import MetricsRegistry
from decisionos.models import Candidate, FallbackConfig
from decisionos.rescue import DEFAULT_FALLBACK_CONFIG
from decisionos.sessions import SessionManager
from decisionos.sql_store import SqlStore
from decisionos.store import StorageAdapter

NOON_UTC = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

# The time trigger reads server local time; a 23:59 cutoff keeps noon UTC
# clear of it in every real timezone.
LATE_CUTOFF_CONFIG = DEFAULT_FALLBACK_CONFIG.model_copy(update={"drm_time_threshold": "23:59"})


def late_cutoff_resolver(saved: FallbackConfig | None) -> FallbackConfig:
    return saved if saved is not None else LATE_CUTOFF_CONFIG


class FakeClock:
    """Deterministic clock for session tests."""

    def __init__(self, start: datetime = NOON_UTC) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class FakePrimary:
    """Primary pipeline stub that counts calls."""

    def __init__(self, candidate: Candidate | None = None) -> None:
        self.candidate = candidate or Candidate(meal_id=7, meal="Sheet Pan Tacos", confidence=0.8)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, context: dict[str, Any]) -> Candidate | None:
        self.calls.append(context)
        return self.candidate


@pytest.fixture()
def metrics_registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def store_config() -> StoreConfig:
    return StoreConfig()


@pytest.fixture(params=["memory", "sqlite"])
def store(
    request: pytest.FixtureRequest,
    tmp_path: Path,
    store_config: StoreConfig,
    metrics_registry: MetricsRegistry,
) -> Iterator[StorageAdapter]:
    adapter: StorageAdapter
    if request.param == "memory":
        adapter = MemoryStore(config=store_config, metrics=metrics_registry)
    else:
        adapter = SqlStore(
            str(tmp_path / "decisionos.db"), config=store_config, metrics=metrics_registry
        )
    try:
        yield adapter
    finally:
        adapter.close()


@pytest.fixture()
def sql_store(
    tmp_path: Path, store_config: StoreConfig, metrics_registry: MetricsRegistry
) -> Iterator[SqlStore]:
    adapter = SqlStore(str(tmp_path / "decisionos.db"), config=store_config, metrics=metrics_registry)
    try:
        yield adapter
    finally:
        adapter.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def primary() -> FakePrimary:
    return FakePrimary()


@pytest.fixture()
def manager(store: StorageAdapter, primary: FakePrimary, clock: FakeClock) -> SessionManager:
    return SessionManager(store, primary, clock=clock, config_resolver=late_cutoff_resolver)
