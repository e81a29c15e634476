"""Shared test fixtures for stale-hunter."""

from collections.abc import Callable
from pathlib import Path

import pytest
import structlog

from stale_hunter.config import MB, ScoringConfig
from stale_hunter.enumerator import EnumerationResult, RawAppInfo, make_app_id
from stale_hunter.errors import ActionFailure
from stale_hunter.scorer import score
from stale_hunter.storage import init_database
from stale_hunter.store import TrackedApp, TrackingStore

NOW = 1_700_000_000.0


@pytest.fixture(autouse=True)
def reset_structlog():
    """Drop structlog configuration made by a test (CLI runs bind to its streams)."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


@pytest.fixture
def scoring() -> ScoringConfig:
    return ScoringConfig()


@pytest.fixture
def store(scoring: ScoringConfig) -> TrackingStore:
    return TrackingStore(scoring)


def make_raw_app(
    name: str = "Editor",
    pid: int = 100,
    bundle_id: str | None = None,
    memory_mb: float = 100,
    idle: float = 0.0,
    cpu_percent: float = 0.0,
    is_system_app: bool = False,
    now: float = NOW,
) -> RawAppInfo:
    """Create a RawAppInfo last active `idle` seconds before `now`."""
    bundle_id = bundle_id or f"com.example.{name.lower().replace(' ', '')}"
    return RawAppInfo(
        id=make_app_id(bundle_id, pid),
        bundle_id=bundle_id,
        pid=pid,
        name=name,
        memory_bytes=int(memory_mb * MB),
        cpu_percent=cpu_percent,
        launched_at=now - idle - 60,
        last_active_at=now - idle,
        is_system_app=is_system_app,
    )


def make_tracked(
    name: str = "Editor",
    pid: int = 100,
    bundle_id: str | None = None,
    memory_mb: float = 100,
    idle: float = 0.0,
    cpu_percent: float = 0.0,
    is_system_app: bool = False,
    is_protected: bool = False,
    now: float = NOW,
    scoring: ScoringConfig | None = None,
) -> TrackedApp:
    """Create a scored TrackedApp."""
    raw = make_raw_app(name, pid, bundle_id, memory_mb, idle, cpu_percent, is_system_app, now)
    result = score(raw, now, scoring or ScoringConfig())
    return TrackedApp(
        id=raw.id,
        bundle_id=raw.bundle_id,
        pid=raw.pid,
        display_name=raw.name,
        memory_bytes=raw.memory_bytes,
        cpu_percent=raw.cpu_percent,
        launched_at=raw.launched_at,
        last_active_at=raw.last_active_at,
        is_system_app=raw.is_system_app,
        is_protected=is_protected,
        staleness_score=result.staleness_score,
        is_stale=result.is_stale,
        is_heavy=result.is_heavy,
    )


class FakeEnumerator:
    """Returns queued results (or raises queued exceptions) and counts calls.

    The last queued item repeats once the queue is exhausted.
    """

    def __init__(self, *results: EnumerationResult | Exception) -> None:
        self._results = list(results) or [EnumerationResult(apps=())]
        self.calls = 0
        self.before_return: Callable[[], None] | None = None

    def enumerate(self) -> EnumerationResult:
        index = min(self.calls, len(self._results) - 1)
        self.calls += 1
        if self.before_return is not None:
            self.before_return()
        item = self._results[index]
        if isinstance(item, Exception):
            raise item
        return item


class FakeController:
    """Records controller calls; apps whose id is in `fail` raise ActionFailure."""

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.calls: list[tuple[str, str]] = []

    def _call(self, action: str, app: TrackedApp) -> None:
        self.calls.append((action, app.id))
        if app.id in self.fail:
            raise ActionFailure(app.id, action, "process already exited")

    def activate(self, app: TrackedApp) -> None:
        self._call("activate", app)

    def hide(self, app: TrackedApp) -> None:
        self._call("hide", app)

    def terminate(self, app: TrackedApp) -> None:
        self._call("terminate", app)
