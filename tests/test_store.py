"""Tests for the tracking store."""

from unittest.mock import MagicMock

import pytest

from stale_hunter.config import ScoringConfig
from stale_hunter.enumerator import EnumerationResult
from stale_hunter.store import FilterOption, Snapshot, SortOption, TrackingStore
from tests.conftest import NOW, make_raw_app


def _apps():
    return [
        make_raw_app("Safari", pid=1, idle=4000, memory_mb=800),
        make_raw_app("Notes", pid=2, idle=10, memory_mb=60),
        make_raw_app("Xcode", pid=3, idle=3000, memory_mb=100),
        make_raw_app("Mail", pid=4, idle=100, memory_mb=900),
        make_raw_app("notes helper", pid=5, idle=10, memory_mb=60),
    ]


@pytest.fixture
def loaded(store: TrackingStore) -> TrackingStore:
    store.apply_refresh(_apps(), now=NOW)
    return store


class TestApplyRefresh:
    def test_scores_every_app(self, loaded: TrackingStore) -> None:
        safari = loaded.snapshot.get("com.example.safari.1")
        assert safari is not None
        assert safari.is_stale
        assert safari.is_heavy
        assert safari.staleness_score == pytest.approx(1.0)

    def test_snapshot_metadata(self, loaded: TrackingStore) -> None:
        snapshot = loaded.snapshot
        assert isinstance(snapshot, Snapshot)
        assert len(snapshot) == 5
        assert snapshot.taken_at == NOW
        assert snapshot.generation == 1
        assert not snapshot.partial

    def test_prior_snapshot_is_unchanged_by_refresh(self, loaded: TrackingStore) -> None:
        """Readers holding an old snapshot keep a consistent view."""
        before = loaded.snapshot
        loaded.apply_refresh([make_raw_app("Safari", pid=1, idle=0)], now=NOW + 5)

        assert len(before) == 5
        assert len(loaded.snapshot) == 1
        assert loaded.snapshot.generation == before.generation + 1

    def test_vanished_app_removed_on_complete_read(self, loaded: TrackingStore) -> None:
        loaded.apply_refresh(_apps()[1:], now=NOW + 5)
        assert "com.example.safari.1" not in loaded.snapshot

    def test_duplicate_ids_kept_once(self, store: TrackingStore) -> None:
        app = make_raw_app("Safari", pid=1)
        store.apply_refresh([app, app], now=NOW)
        assert len(store.snapshot) == 1

    def test_partial_read_keeps_missing_apps(self, loaded: TrackingStore) -> None:
        result = EnumerationResult(apps=tuple(_apps()[1:]), partial=True, warnings=("denied",))
        loaded.apply_refresh(result, now=NOW + 60)

        safari = loaded.snapshot.get("com.example.safari.1")
        assert safari is not None
        assert loaded.snapshot.partial
        assert len(loaded.snapshot) == 5

    def test_partial_read_rescores_carried_apps(self, store: TrackingStore) -> None:
        store.apply_refresh([make_raw_app("Xcode", pid=3, idle=1700, memory_mb=0)], now=NOW)
        assert not store.snapshot.get("com.example.xcode.3").is_stale

        store.apply_refresh(EnumerationResult(apps=(), partial=True), now=NOW + 200)
        assert store.snapshot.get("com.example.xcode.3").is_stale

    def test_partial_read_drops_missing_when_disabled(self, scoring: ScoringConfig) -> None:
        store = TrackingStore(scoring, keep_missing_on_partial=False)
        store.apply_refresh(_apps(), now=NOW)
        store.apply_refresh(EnumerationResult(apps=tuple(_apps()[1:]), partial=True), now=NOW)
        assert "com.example.safari.1" not in store.snapshot

    def test_listeners_receive_snapshots(self, store: TrackingStore) -> None:
        listener = MagicMock()
        unsubscribe = store.subscribe(listener)

        snapshot = store.apply_refresh(_apps(), now=NOW)
        listener.assert_called_once_with(snapshot)

        unsubscribe()
        store.apply_refresh(_apps(), now=NOW)
        assert listener.call_count == 1

    def test_failing_listener_does_not_break_refresh(self, store: TrackingStore) -> None:
        store.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        good = MagicMock()
        store.subscribe(good)

        store.apply_refresh(_apps(), now=NOW)
        assert len(store.snapshot) == 5
        good.assert_called_once()


class TestQuery:
    def test_search_is_case_insensitive_substring(self, loaded: TrackingStore) -> None:
        names = {a.display_name for a in loaded.query("NOTE")}
        assert names == {"Notes", "notes helper"}

    def test_blank_search_matches_all(self, loaded: TrackingStore) -> None:
        assert len(loaded.query("   ")) == 5

    @pytest.mark.parametrize("option", list(FilterOption))
    def test_filter_result_is_subset(self, loaded: TrackingStore, option: FilterOption) -> None:
        ids = {a.id for a in loaded.snapshot}
        result = loaded.query(filter_option=option)
        assert {a.id for a in result} <= ids

    def test_stale_filter(self, loaded: TrackingStore) -> None:
        result = loaded.query(filter_option=FilterOption.STALE)
        assert {a.display_name for a in result} == {"Safari", "Xcode"}
        assert all(a.is_stale for a in result)

    def test_heavy_filter(self, loaded: TrackingStore) -> None:
        result = loaded.query(filter_option=FilterOption.HEAVY)
        assert {a.display_name for a in result} == {"Safari", "Mail"}

    def test_sort_by_memory_descending(self, loaded: TrackingStore) -> None:
        result = loaded.query(sort=SortOption.MEMORY)
        assert [a.display_name for a in result[:2]] == ["Mail", "Safari"]

    def test_sort_by_name_ascending(self, loaded: TrackingStore) -> None:
        result = loaded.query(sort=SortOption.NAME, ascending=True)
        assert [a.display_name for a in result] == [
            "Mail",
            "Notes",
            "notes helper",
            "Safari",
            "Xcode",
        ]

    def test_ties_broken_by_name(self, loaded: TrackingStore) -> None:
        """Notes and notes helper tie on memory; name decides."""
        result = loaded.query(sort=SortOption.MEMORY, ascending=True)
        assert [a.display_name for a in result[:2]] == ["Notes", "notes helper"]

    @pytest.mark.parametrize("option", list(SortOption))
    def test_descending_is_exact_reverse(self, loaded: TrackingStore, option: SortOption) -> None:
        ascending = loaded.query(sort=option, ascending=True)
        descending = loaded.query(sort=option, ascending=False)
        assert descending == list(reversed(ascending))

    def test_aggregates(self, loaded: TrackingStore) -> None:
        assert loaded.stale_count() == 2
        assert loaded.total_memory() == sum(a.memory_bytes for a in loaded.snapshot)
        stale = loaded.query(filter_option=FilterOption.STALE)
        assert loaded.total_memory(stale) == sum(a.memory_bytes for a in stale)


class TestProtection:
    def test_toggle_flips_and_returns_state(self, loaded: TrackingStore) -> None:
        assert loaded.toggle_protection("com.example.safari.1") is True
        assert loaded.snapshot.get("com.example.safari.1").is_protected
        assert loaded.toggle_protection("com.example.safari.1") is False
        assert not loaded.snapshot.get("com.example.safari.1").is_protected

    def test_toggle_unknown_id_is_noop(self, loaded: TrackingStore) -> None:
        before = loaded.snapshot
        assert loaded.toggle_protection("com.example.missing.9") is None
        assert loaded.snapshot is before

    def test_protection_survives_refresh_and_restart(self, loaded: TrackingStore) -> None:
        loaded.toggle_protection("com.example.safari.1")
        # New pid for the same identity after a relaunch
        loaded.apply_refresh([make_raw_app("Safari", pid=77, idle=4000)], now=NOW + 5)
        assert loaded.snapshot.get("com.example.safari.77").is_protected

    def test_hook_receives_identity(self, scoring: ScoringConfig) -> None:
        hook = MagicMock()
        store = TrackingStore(scoring, on_protection_changed=hook)
        store.apply_refresh(_apps(), now=NOW)

        store.toggle_protection("com.example.mail.4")
        hook.assert_called_once_with("com.example.mail", True)

    def test_initial_protection(self, scoring: ScoringConfig) -> None:
        store = TrackingStore(scoring, protected={"com.example.xcode"})
        store.apply_refresh(_apps(), now=NOW)
        assert store.snapshot.get("com.example.xcode.3").is_protected
        assert store.protected_ids == frozenset({"com.example.xcode"})


class TestSelection:
    def test_select_present_app(self, loaded: TrackingStore) -> None:
        assert loaded.select("com.example.notes.2")
        assert loaded.selected.display_name == "Notes"

    def test_select_absent_app_keeps_selection(self, loaded: TrackingStore) -> None:
        loaded.select("com.example.notes.2")
        assert not loaded.select("com.example.missing.1")
        assert loaded.selected.id == "com.example.notes.2"

    def test_selection_cleared_when_app_disappears(self, loaded: TrackingStore) -> None:
        loaded.select("com.example.safari.1")
        loaded.apply_refresh(_apps()[1:], now=NOW + 5)
        assert loaded.selected is None

    def test_selection_resolves_to_latest_metrics(self, loaded: TrackingStore) -> None:
        loaded.select("com.example.safari.1")
        loaded.apply_refresh([make_raw_app("Safari", pid=1, memory_mb=1)], now=NOW + 5)
        assert loaded.selected.memory_bytes == make_raw_app(memory_mb=1).memory_bytes


class TestRemoval:
    def test_mark_removed_hides_app_and_selection(self, loaded: TrackingStore) -> None:
        loaded.select("com.example.safari.1")
        removed = loaded.mark_removed("com.example.safari.1")

        assert removed.display_name == "Safari"
        assert "com.example.safari.1" not in loaded.snapshot
        assert loaded.selected is None
        assert "com.example.safari.1" in loaded.pending_removals

    def test_removal_confirmed_by_complete_read(self, loaded: TrackingStore) -> None:
        loaded.mark_removed("com.example.safari.1")
        loaded.apply_refresh(_apps()[1:], now=NOW + 5)

        assert "com.example.safari.1" not in loaded.snapshot
        assert not loaded.pending_removals

    def test_removal_reverted_when_app_still_reported(self, loaded: TrackingStore) -> None:
        loaded.mark_removed("com.example.safari.1")
        loaded.apply_refresh(_apps(), now=NOW + 5)

        assert "com.example.safari.1" in loaded.snapshot
        assert not loaded.pending_removals

    def test_removal_stays_pending_through_partial_read(self, loaded: TrackingStore) -> None:
        loaded.mark_removed("com.example.safari.1")
        loaded.apply_refresh(EnumerationResult(apps=tuple(_apps()[1:]), partial=True), now=NOW)

        assert "com.example.safari.1" not in loaded.snapshot
        assert "com.example.safari.1" in loaded.pending_removals

    def test_revert_removal_restores_app(self, loaded: TrackingStore) -> None:
        loaded.mark_removed("com.example.safari.1")
        assert loaded.revert_removal("com.example.safari.1")
        assert "com.example.safari.1" in loaded.snapshot
        assert not loaded.revert_removal("com.example.safari.1")

    def test_mark_removed_unknown_id(self, loaded: TrackingStore) -> None:
        assert loaded.mark_removed("com.example.missing.1") is None
