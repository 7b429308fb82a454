"""
Pytest configuration and shared fixtures.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

# Module-level loggers are created on import; keep their files out of the repo
os.environ.setdefault("KVSWEEP_LOG_DIR", tempfile.mkdtemp(prefix="kvsweep-logs-"))

import pytest

from kvsweep.config import MaintenanceConfig
from kvsweep.errors import ConfigurationError
from kvsweep.sink import UpsertResult
from kvsweep.store import SqliteKeyedStore


NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Seconds clock that only moves when told to."""

    def __init__(self):
        self.ms = 0.0

    def __call__(self) -> float:
        return self.ms / 1000.0

    def advance(self, ms: float) -> None:
        self.ms += ms


class TickingStore:
    """Wraps a store so that each list/get call costs fake time."""

    def __init__(self, inner, clock: FakeClock, list_ms: float = 0.0, get_ms: float = 0.0):
        self.inner = inner
        self.clock = clock
        self.list_ms = list_ms
        self.get_ms = get_ms
        self.list_calls = 0

    def get(self, key):
        self.clock.advance(self.get_ms)
        return self.inner.get(key)

    def put(self, key, value):
        self.inner.put(key, value)

    def delete(self, key):
        self.inner.delete(key)

    def list(self, prefix="", limit=1000, cursor=None):
        self.list_calls += 1
        self.clock.advance(self.list_ms)
        return self.inner.list(prefix=prefix, limit=limit, cursor=cursor)


class RecordingSink:
    """Archive sink that keeps every upsert in memory."""

    def __init__(self):
        self.uploads: List[Tuple[str, str, str]] = []

    def upsert(self, path: str, content: str, message: str) -> UpsertResult:
        self.uploads.append((path, content, message))
        return UpsertResult(success=True, url=path)

    @property
    def files(self) -> Dict[str, str]:
        return {path: content for path, content, _ in self.uploads}


class UnconfiguredSink:
    def __init__(self):
        self.attempts = 0

    def upsert(self, path: str, content: str, message: str) -> UpsertResult:
        self.attempts += 1
        raise ConfigurationError("GITHUB_TOKEN is not configured")


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store(tmp_path) -> SqliteKeyedStore:
    """Empty SQLite-backed store in a temporary directory."""
    return SqliteKeyedStore(tmp_path / "store.db")


@pytest.fixture
def config(tmp_path) -> MaintenanceConfig:
    return MaintenanceConfig(db_path=tmp_path / "store.db", max_execution_ms=1000.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def unconfigured_sink() -> UnconfiguredSink:
    return UnconfiguredSink()


@pytest.fixture
def ticking():
    """Factory wrapping a store in a TickingStore."""
    return TickingStore


@pytest.fixture
def seed(store):
    """Write records into the store; dict values are stored as JSON."""

    def _seed(key: str, value: Union[Dict[str, Any], str]) -> None:
        store.put(key, value if isinstance(value, str) else json.dumps(value))

    return _seed


@pytest.fixture
def aged():
    """ISO timestamp `delta` before NOW."""

    def _aged(delta: timedelta) -> str:
        return (NOW - delta).isoformat()

    return _aged


@pytest.fixture
def temp_db_path(tmp_path) -> Path:
    return tmp_path / "data" / "store.db"
