"""Error taxonomy for stale-hunter.

None of these are fatal to the process: the store converges to OS truth on
the next complete refresh.
"""


class StaleHunterError(Exception):
    """Base class for all stale-hunter errors."""


class EnumerationError(StaleHunterError):
    """The OS process list could not be read at all."""


class PermissionDenied(StaleHunterError):
    """Quit attempted on a protected or system app. The store is unchanged."""

    def __init__(self, app_id: str, reason: str) -> None:
        super().__init__(f"Refusing to quit {app_id}: {reason}")
        self.app_id = app_id
        self.reason = reason


class ActionFailure(StaleHunterError):
    """The OS rejected activate/hide/quit, usually because the process exited."""

    def __init__(self, app_id: str, action: str, detail: str = "") -> None:
        message = f"{action} failed for {app_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.app_id = app_id
        self.action = action
        self.detail = detail


class SchedulerStopped(StaleHunterError, RuntimeError):
    """A refresh was requested after the scheduler was torn down."""
