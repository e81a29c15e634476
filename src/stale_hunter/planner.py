"""Cleanup planning: pick the apps worth closing from a snapshot."""

from collections.abc import Iterable
from dataclasses import dataclass

from stale_hunter.store import Snapshot, TrackedApp


@dataclass(frozen=True, slots=True)
class CleanupPlan:
    """Ordered cleanup candidates and the memory closing them would free."""

    candidates: tuple[TrackedApp, ...] = ()
    reclaimable_bytes: int = 0

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def is_empty(self) -> bool:
        return not self.candidates

    @property
    def ids(self) -> list[str]:
        return [app.id for app in self.candidates]

    def select(self, ids: Iterable[str]) -> "CleanupPlan":
        """Narrow the plan to a chosen subset, keeping plan order.

        Ids that are not candidates are ignored.
        """
        wanted = set(ids)
        return _plan_of(app for app in self.candidates if app.id in wanted)


def _plan_of(apps: Iterable[TrackedApp]) -> CleanupPlan:
    candidates = tuple(apps)
    return CleanupPlan(
        candidates=candidates,
        reclaimable_bytes=sum(app.memory_bytes for app in candidates),
    )


def prepare_cleanup(snapshot: Snapshot) -> CleanupPlan:
    """Build a cleanup plan from a snapshot.

    Candidates are stale apps that are neither protected nor system apps,
    highest staleness first with ties by display name.
    """
    candidates = [app for app in snapshot.apps if app.is_stale and app.can_quit]
    candidates.sort(key=lambda a: (-a.staleness_score, a.display_name.casefold(), a.id))
    return _plan_of(candidates)
