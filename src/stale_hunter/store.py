"""Tracking store: the authoritative snapshot of running applications.

The current Snapshot is immutable and replaced by a single assignment on
every change, so a reader holding a snapshot always sees a consistent set of
apps. Protection, selection and pending quits live beside the snapshot and
are merged into the next one by identity.
"""

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

import structlog

from stale_hunter.config import ScoringConfig
from stale_hunter.enumerator import EnumerationResult, RawAppInfo
from stale_hunter.scorer import StalenessLevel, idle_seconds, score

log = structlog.get_logger()

SnapshotListener = Callable[["Snapshot"], None]
ProtectionHook = Callable[[str, bool], None]


class FilterOption(Enum):
    """Which apps a query keeps."""

    ALL = "all"
    STALE = "stale"
    HEAVY = "heavy"


class SortOption(Enum):
    """Sort keys for queries."""

    NAME = "name"
    MEMORY = "memory"
    CPU = "cpu"
    STALENESS = "staleness"
    LAST_ACTIVE = "last_active"


@dataclass(frozen=True, slots=True)
class TrackedApp:
    """One running application with its latest metrics and score."""

    id: str
    bundle_id: str
    pid: int
    display_name: str
    memory_bytes: int
    cpu_percent: float
    launched_at: float
    last_active_at: float
    is_system_app: bool
    is_protected: bool
    staleness_score: float
    is_stale: bool
    is_heavy: bool
    icon_ref: str | None = None

    @property
    def level(self) -> StalenessLevel:
        """Human-readable staleness level."""
        return StalenessLevel.from_score(self.staleness_score)

    @property
    def can_quit(self) -> bool:
        """Protected and system apps are never eligible for termination."""
        return not (self.is_protected or self.is_system_app)

    def idle_seconds(self, now: float | None = None) -> float:
        """Seconds since the app was last seen in front."""
        return idle_seconds(self.last_active_at, time.time() if now is None else now)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable, ordered point-in-time set of tracked apps."""

    apps: tuple[TrackedApp, ...] = ()
    taken_at: float = 0.0
    generation: int = 0
    partial: bool = False
    _by_id: Mapping[str, TrackedApp] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {app.id: app for app in self.apps})

    def __len__(self) -> int:
        return len(self.apps)

    def __iter__(self):
        return iter(self.apps)

    def __contains__(self, app_id: object) -> bool:
        return app_id in self._by_id

    def get(self, app_id: str) -> TrackedApp | None:
        """Return the app with this id, or None."""
        return self._by_id.get(app_id)


def sort_apps(
    apps: Iterable[TrackedApp], option: SortOption, ascending: bool
) -> list[TrackedApp]:
    """Sort apps by option with ties broken by display name.

    Descending order is exactly the reverse of ascending order.
    """
    primary = _SORT_KEYS[option]
    ordered = sorted(apps, key=lambda a: (primary(a), a.display_name.casefold(), a.id))
    if not ascending:
        ordered.reverse()
    return ordered


_SORT_KEYS: dict[SortOption, Callable[[TrackedApp], object]] = {
    SortOption.NAME: lambda a: a.display_name.casefold(),
    SortOption.MEMORY: lambda a: a.memory_bytes,
    SortOption.CPU: lambda a: a.cpu_percent,
    SortOption.STALENESS: lambda a: a.staleness_score,
    SortOption.LAST_ACTIVE: lambda a: a.last_active_at,
}


class TrackingStore:
    """Holds the current snapshot and answers queries without touching the OS."""

    def __init__(
        self,
        scoring: ScoringConfig,
        protected: Iterable[str] = (),
        on_protection_changed: ProtectionHook | None = None,
        keep_missing_on_partial: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            scoring: Thresholds and weights for the scorer
            protected: Identities (bundle ids) protected at startup
            on_protection_changed: Called with (bundle_id, protected) on every toggle
            keep_missing_on_partial: Keep apps missing from a partial read
        """
        self.scoring = scoring
        self.keep_missing_on_partial = keep_missing_on_partial
        self._snapshot = Snapshot()
        self._protected: set[str] = set(protected)
        self._on_protection_changed = on_protection_changed
        self._selected_id: str | None = None
        self._pending_removal: dict[str, TrackedApp] = {}
        self._listeners: list[SnapshotListener] = []

    # ─────────────────────────────────────────────────────────────────────
    # Read model
    # ─────────────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> Snapshot:
        """The current snapshot."""
        return self._snapshot

    @property
    def protected_ids(self) -> frozenset[str]:
        """Identities currently marked protected."""
        return frozenset(self._protected)

    @property
    def pending_removals(self) -> frozenset[str]:
        """Ids optimistically removed and awaiting confirmation."""
        return frozenset(self._pending_removal)

    @property
    def selected(self) -> TrackedApp | None:
        """The selected app resolved against the current snapshot."""
        if self._selected_id is None:
            return None
        return self._snapshot.get(self._selected_id)

    def select(self, app_id: str | None) -> bool:
        """Select an app by id. Returns False (selection unchanged) if absent."""
        if app_id is None:
            self._selected_id = None
            return True
        if app_id not in self._snapshot:
            return False
        self._selected_id = app_id
        return True

    def query(
        self,
        search_query: str = "",
        filter_option: FilterOption = FilterOption.ALL,
        sort: SortOption = SortOption.STALENESS,
        ascending: bool = False,
    ) -> list[TrackedApp]:
        """Search, filter and sort the current snapshot."""
        apps: Iterable[TrackedApp] = self._snapshot.apps

        needle = search_query.strip().casefold()
        if needle:
            apps = [a for a in apps if needle in a.display_name.casefold()]

        if filter_option is FilterOption.STALE:
            apps = [a for a in apps if a.is_stale]
        elif filter_option is FilterOption.HEAVY:
            apps = [a for a in apps if a.is_heavy]

        return sort_apps(apps, sort, ascending)

    def stale_count(self) -> int:
        """Number of apps in the current snapshot matching the stale filter."""
        return sum(1 for app in self._snapshot.apps if app.is_stale)

    def total_memory(self, apps: Iterable[TrackedApp] | None = None) -> int:
        """Total resident memory of apps (default: the whole snapshot)."""
        return sum(app.memory_bytes for app in (self._snapshot.apps if apps is None else apps))

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for new snapshots. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ─────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────

    def apply_refresh(
        self,
        result: EnumerationResult | Iterable[RawAppInfo],
        now: float | None = None,
    ) -> Snapshot:
        """Merge an enumeration into a new snapshot and swap it in.

        - Apps are matched to prior state by identity; protection carries over.
        - Ids absent from a complete read are dropped, and so is a selection
          pointing at them.
        - A pending quit whose id is still reported is reverted; one whose id
          is absent from a complete read is confirmed.
        - With keep_missing_on_partial, apps missing from a partial read are
          carried forward (re-scored) until a complete read drops them.
        """
        now = time.time() if now is None else now
        if isinstance(result, EnumerationResult):
            raw_apps, partial = result.apps, result.partial
        else:
            raw_apps, partial = tuple(result), False

        prior = self._snapshot
        apps: list[TrackedApp] = []
        seen: set[str] = set()

        for info in raw_apps:
            if info.id in seen:
                continue
            seen.add(info.id)
            if info.id in self._pending_removal:
                del self._pending_removal[info.id]
                log.warning("quit_reverted", app_id=info.id, name=info.name)
            apps.append(self._track(info, now))

        if partial and self.keep_missing_on_partial:
            for old in prior.apps:
                if old.id not in seen and old.id not in self._pending_removal:
                    apps.append(self._rescore(old, now))
                    seen.add(old.id)
        elif not partial:
            for app_id in list(self._pending_removal):
                if app_id not in seen:
                    del self._pending_removal[app_id]
                    log.info("quit_confirmed", app_id=app_id)

        removed = [old.id for old in prior.apps if old.id not in seen]
        snapshot = Snapshot(
            apps=tuple(apps),
            taken_at=now,
            generation=prior.generation + 1,
            partial=partial,
        )
        self._swap(snapshot)

        log.debug(
            "snapshot_applied",
            generation=snapshot.generation,
            apps=len(snapshot),
            removed=len(removed),
            partial=partial,
        )
        return snapshot

    def toggle_protection(self, app_id: str) -> bool | None:
        """Flip protection for the app's identity.

        Returns the new protection state, or None if app_id is not in the
        current snapshot (no-op).
        """
        app = self._snapshot.get(app_id)
        if app is None:
            return None

        protected = app.bundle_id not in self._protected
        if protected:
            self._protected.add(app.bundle_id)
        else:
            self._protected.discard(app.bundle_id)

        prior = self._snapshot
        self._swap(
            Snapshot(
                apps=tuple(
                    replace(a, is_protected=protected) if a.bundle_id == app.bundle_id else a
                    for a in prior.apps
                ),
                taken_at=prior.taken_at,
                generation=prior.generation + 1,
                partial=prior.partial,
            )
        )

        log.info("protection_changed", bundle_id=app.bundle_id, protected=protected)
        if self._on_protection_changed is not None:
            self._on_protection_changed(app.bundle_id, protected)
        return protected

    def mark_removed(self, app_id: str) -> TrackedApp | None:
        """Optimistically drop an app after a quit request.

        The removal stands until the next refresh confirms or reverts it.
        """
        prior = self._snapshot
        app = prior.get(app_id)
        if app is None:
            return None

        self._pending_removal[app_id] = app
        self._swap(
            Snapshot(
                apps=tuple(a for a in prior.apps if a.id != app_id),
                taken_at=prior.taken_at,
                generation=prior.generation + 1,
                partial=prior.partial,
            )
        )
        return app

    def revert_removal(self, app_id: str) -> bool:
        """Put an optimistically removed app back into the snapshot.

        Returns False if app_id has no pending removal (already confirmed or
        reverted by a refresh).
        """
        app = self._pending_removal.pop(app_id, None)
        if app is None:
            return False

        prior = self._snapshot
        if app_id not in prior:
            self._swap(
                Snapshot(
                    apps=(*prior.apps, app),
                    taken_at=prior.taken_at,
                    generation=prior.generation + 1,
                    partial=prior.partial,
                )
            )
        log.debug("removal_reverted", app_id=app_id)
        return True

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _track(self, info: RawAppInfo, now: float) -> TrackedApp:
        """Build a scored TrackedApp from raw enumerator output."""
        result = score(info, now, self.scoring)
        return TrackedApp(
            id=info.id,
            bundle_id=info.bundle_id,
            pid=info.pid,
            display_name=info.name,
            memory_bytes=info.memory_bytes,
            cpu_percent=info.cpu_percent,
            launched_at=info.launched_at,
            last_active_at=info.last_active_at,
            is_system_app=info.is_system_app,
            is_protected=info.bundle_id in self._protected,
            staleness_score=result.staleness_score,
            is_stale=result.is_stale,
            is_heavy=result.is_heavy,
            icon_ref=info.icon_ref,
        )

    def _rescore(self, app: TrackedApp, now: float) -> TrackedApp:
        """Re-score a carried-forward app against a new time."""
        result = score(app, now, self.scoring)
        return replace(
            app,
            is_protected=app.bundle_id in self._protected,
            staleness_score=result.staleness_score,
            is_stale=result.is_stale,
            is_heavy=result.is_heavy,
        )

    def _swap(self, snapshot: Snapshot) -> None:
        """Replace the snapshot, clear a dangling selection, notify listeners."""
        self._snapshot = snapshot
        if self._selected_id is not None and self._selected_id not in snapshot:
            self._selected_id = None
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log.exception("snapshot_listener_failed", error=str(e))
