"""Tests for the UI-facing tracking session."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from stale_hunter.config import Config
from stale_hunter.enumerator import EnumerationResult
from stale_hunter.errors import PermissionDenied
from stale_hunter.executor import ActionExecutor
from stale_hunter.formatting import format_bytes
from stale_hunter.scheduler import RefreshScheduler
from stale_hunter.session import TrackingSession
from stale_hunter.storage import get_connection, get_protected_apps, set_protected
from stale_hunter.store import FilterOption, SortOption, TrackingStore
from tests.conftest import NOW, FakeController, FakeEnumerator, make_raw_app

APPS = (
    make_raw_app("Safari", pid=1, idle=4000, memory_mb=800),
    make_raw_app("Notes", pid=2, idle=2000, memory_mb=60),
    make_raw_app("Mail", pid=3, idle=10, memory_mb=900),
    make_raw_app("Finder", pid=4, idle=9000, memory_mb=50, is_system_app=True),
)


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def session(store: TrackingStore, controller: FakeController) -> TrackingSession:
    enumerator = FakeEnumerator(EnumerationResult(apps=APPS))
    scheduler = RefreshScheduler(enumerator, store, clock=lambda: NOW)
    return TrackingSession(store, scheduler, ActionExecutor(store, controller))


@pytest.fixture
def loaded(session: TrackingSession) -> TrackingSession:
    session.store.apply_refresh(APPS, now=NOW)
    return session


@pytest.mark.asyncio
async def test_refresh_populates_displayed_apps(session: TrackingSession) -> None:
    assert session.displayed_apps == []

    await session.refresh()

    assert [a.display_name for a in session.displayed_apps] == [
        "Safari",
        "Notes",
        "Finder",
        "Mail",
    ]


def test_view_state_drives_displayed_apps(loaded: TrackingSession) -> None:
    loaded.set_filter(FilterOption.HEAVY)
    loaded.set_sort(SortOption.NAME, ascending=True)
    assert [a.display_name for a in loaded.displayed_apps] == ["Mail", "Safari"]

    loaded.set_search_query("saf")
    assert [a.display_name for a in loaded.displayed_apps] == ["Safari"]


def test_set_sort_keeps_direction_when_omitted(loaded: TrackingSession) -> None:
    loaded.set_sort(SortOption.MEMORY, ascending=True)
    loaded.set_sort(SortOption.NAME)
    assert loaded.ascending is True


def test_aggregate_reads(loaded: TrackingSession) -> None:
    total = sum(a.memory_bytes for a in APPS)
    savings = APPS[0].memory_bytes + APPS[1].memory_bytes

    assert loaded.stale_app_count == 3
    assert loaded.formatted_total_memory == format_bytes(total)
    assert loaded.potential_savings == savings
    assert loaded.formatted_potential_savings == format_bytes(savings)


def test_total_memory_follows_query(loaded: TrackingSession) -> None:
    loaded.set_filter(FilterOption.STALE)
    loaded.set_search_query("safari")

    assert [a.display_name for a in loaded.displayed_apps] == ["Safari"]
    assert loaded.total_memory == APPS[0].memory_bytes
    assert loaded.formatted_total_memory == "800.0 MB"

    loaded.set_search_query("")
    stale = APPS[0].memory_bytes + APPS[1].memory_bytes + APPS[3].memory_bytes
    assert loaded.total_memory == stale


def test_selection(loaded: TrackingSession) -> None:
    assert loaded.select_app("com.example.notes.2")
    assert loaded.selected_app.display_name == "Notes"

    assert not loaded.select_app("com.example.nope.9")
    assert loaded.selected_app.display_name == "Notes"

    assert loaded.select_app(None)
    assert loaded.selected_app is None


def test_protected_app_cannot_be_quit(loaded: TrackingSession) -> None:
    assert loaded.toggle_protection("com.example.safari.1") is True

    with pytest.raises(PermissionDenied):
        loaded.quit("com.example.safari.1")

    assert loaded.potential_savings == APPS[1].memory_bytes


def test_activate_and_hide(loaded: TrackingSession, controller: FakeController) -> None:
    loaded.activate("com.example.mail.3")
    loaded.hide("com.example.mail.3")
    assert controller.calls == [("activate", "com.example.mail.3"), ("hide", "com.example.mail.3")]


def test_prepare_then_execute_selected(
    loaded: TrackingSession, controller: FakeController
) -> None:
    plan = loaded.prepare_cleanup()
    assert plan.ids == ["com.example.safari.1", "com.example.notes.2"]
    assert loaded.pending_plan is plan

    report = loaded.execute_cleanup(["com.example.notes.2"])

    assert report.quit_ids == ("com.example.notes.2",)
    assert controller.calls == [("terminate", "com.example.notes.2")]
    assert loaded.pending_plan is None


def test_execute_without_prepare_plans_first(loaded: TrackingSession) -> None:
    report = loaded.execute_cleanup()
    assert set(report.quit_ids) == {"com.example.safari.1", "com.example.notes.2"}
    assert loaded.stale_app_count == 1  # Finder is stale but a system app


class TestCreate:
    def test_loads_and_persists_protection(self, initialized_db: Path) -> None:
        conn = get_connection(initialized_db)
        set_protected(conn, "com.example.mail", True)

        with (
            patch("stale_hunter.enumerator.PsutilEnumerator") as enumerator_cls,
            patch("stale_hunter.enumerator.default_foreground_query", return_value=None),
        ):
            session = TrackingSession.create(Config(), conn)

        enumerator_cls.return_value.seed_activity.assert_called_once_with({})
        session.store.apply_refresh(APPS, now=NOW)
        assert session.store.snapshot.get("com.example.mail.3").is_protected

        session.toggle_protection("com.example.safari.1")
        assert get_protected_apps(conn) == {"com.example.mail", "com.example.safari"}
        conn.close()

    def test_without_connection_keeps_protection_in_memory(self) -> None:
        with (
            patch("stale_hunter.enumerator.PsutilEnumerator", MagicMock()),
            patch("stale_hunter.enumerator.default_foreground_query", return_value=None),
        ):
            session = TrackingSession.create(Config())

        session.store.apply_refresh(APPS, now=NOW)
        assert session.toggle_protection("com.example.safari.1") is True
        assert session.scheduler.interval == Config().refresh.interval
