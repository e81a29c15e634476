"""UI-facing session: view state plus the operations a front end calls."""

import sqlite3
from collections.abc import Iterable
from functools import partial

import structlog

from stale_hunter.config import Config
from stale_hunter.executor import ActionExecutor, CleanupReport, DesktopController
from stale_hunter.formatting import format_bytes
from stale_hunter.planner import CleanupPlan, prepare_cleanup
from stale_hunter.scheduler import RefreshListener, RefreshScheduler
from stale_hunter.store import (
    FilterOption,
    ProtectionHook,
    Snapshot,
    SortOption,
    TrackedApp,
    TrackingStore,
)

log = structlog.get_logger()


class TrackingSession:
    """View state (search, filter, sort, selection) over a tracking store.

    Every read derives from the store's current snapshot, so the session
    never holds app data of its own.
    """

    def __init__(
        self,
        store: TrackingStore,
        scheduler: RefreshScheduler,
        executor: ActionExecutor,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.executor = executor

        self.search_query = ""
        self.filter_option = FilterOption.ALL
        self.sort_option = SortOption.STALENESS
        self.ascending = False
        self.pending_plan: CleanupPlan | None = None

    @classmethod
    def create(
        cls,
        config: Config,
        conn: sqlite3.Connection | None = None,
        on_refresh: RefreshListener | None = None,
    ) -> "TrackingSession":
        """Wire a session to the real OS.

        Protection is loaded from conn and written back on every toggle, and
        last-active times recorded by the daemon seed the enumerator. Without
        a connection both live only in memory.
        """
        from stale_hunter.enumerator import PsutilEnumerator, default_foreground_query
        from stale_hunter.storage import get_protected_apps, load_activity, set_protected

        protected: Iterable[str] = ()
        on_protection_changed: ProtectionHook | None = None
        if conn is not None:
            protected = get_protected_apps(conn)
            on_protection_changed = partial(set_protected, conn)

        store = TrackingStore(
            config.scoring,
            protected=protected,
            on_protection_changed=on_protection_changed,
            keep_missing_on_partial=config.refresh.keep_missing_on_partial,
        )
        enumerator = PsutilEnumerator(config.apps, foreground_query=default_foreground_query())
        if conn is not None:
            enumerator.seed_activity(load_activity(conn))
        scheduler = RefreshScheduler(
            enumerator, store, interval=config.refresh.interval, on_refresh=on_refresh
        )
        executor = ActionExecutor(store, DesktopController())
        return cls(store, scheduler, executor)

    # ─────────────────────────────────────────────────────────────────────
    # View state
    # ─────────────────────────────────────────────────────────────────────

    def set_search_query(self, text: str) -> None:
        self.search_query = text

    def set_filter(self, option: FilterOption) -> None:
        self.filter_option = option

    def set_sort(self, option: SortOption, ascending: bool | None = None) -> None:
        """Set the sort key, and optionally the direction."""
        self.sort_option = option
        if ascending is not None:
            self.ascending = ascending

    def select_app(self, app_id: str | None) -> bool:
        """Select an app present in the current snapshot (None clears)."""
        return self.store.select(app_id)

    # ─────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> Snapshot:
        return self.store.snapshot

    @property
    def displayed_apps(self) -> list[TrackedApp]:
        """Apps matching the current search and filter, in sort order."""
        return self.store.query(
            self.search_query, self.filter_option, self.sort_option, self.ascending
        )

    @property
    def stale_app_count(self) -> int:
        return self.store.stale_count()

    @property
    def total_memory(self) -> int:
        """Memory held by the apps the current query displays."""
        return self.store.total_memory(self.displayed_apps)

    @property
    def formatted_total_memory(self) -> str:
        return format_bytes(self.total_memory)

    @property
    def potential_savings(self) -> int:
        """Memory a full cleanup of the current snapshot would free."""
        return prepare_cleanup(self.store.snapshot).reclaimable_bytes

    @property
    def formatted_potential_savings(self) -> str:
        return format_bytes(self.potential_savings)

    @property
    def selected_app(self) -> TrackedApp | None:
        return self.store.selected

    # ─────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────

    def toggle_protection(self, app_id: str) -> bool | None:
        return self.store.toggle_protection(app_id)

    def activate(self, app_id: str) -> None:
        self.executor.activate(app_id)

    def hide(self, app_id: str) -> None:
        self.executor.hide(app_id)

    def quit(self, app_id: str) -> TrackedApp:
        return self.executor.quit(app_id)

    def prepare_cleanup(self) -> CleanupPlan:
        """Plan a cleanup of the current snapshot and keep it pending."""
        self.pending_plan = prepare_cleanup(self.store.snapshot)
        log.debug(
            "cleanup_prepared",
            candidates=len(self.pending_plan),
            reclaimable_bytes=self.pending_plan.reclaimable_bytes,
        )
        return self.pending_plan

    def execute_cleanup(self, selected_ids: Iterable[str] | None = None) -> CleanupReport:
        """Execute the pending plan (prepared now if there is none)."""
        plan = self.pending_plan if self.pending_plan is not None else self.prepare_cleanup()
        self.pending_plan = None
        return self.executor.execute_cleanup(plan, selected_ids)

    async def refresh(self) -> Snapshot:
        return await self.scheduler.refresh()
