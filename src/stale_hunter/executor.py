"""Actions against running apps: activate, hide, quit and bulk cleanup."""

import os
import shutil
import subprocess
import sys
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import psutil
import structlog

from stale_hunter.errors import ActionFailure, PermissionDenied
from stale_hunter.planner import CleanupPlan
from stale_hunter.store import TrackedApp, TrackingStore

log = structlog.get_logger()

# Allowed drift between psutil's create_time and the recorded launch time
# before a pid is treated as reused by another process.
LAUNCH_TIME_TOLERANCE = 1.0


class AppController(Protocol):
    """OS-side application control. Implementations raise ActionFailure."""

    def activate(self, app: TrackedApp) -> None: ...

    def hide(self, app: TrackedApp) -> None: ...

    def terminate(self, app: TrackedApp) -> None: ...


class DesktopController:
    """Controls desktop apps with psutil and the platform automation tool.

    Termination sends SIGTERM so the app can shut down gracefully. Activate
    and hide go through osascript on macOS and xdotool on X11.
    """

    def __init__(self, macos: bool | None = None, timeout: float = 5.0) -> None:
        self._macos = sys.platform == "darwin" if macos is None else macos
        self._timeout = timeout

    def activate(self, app: TrackedApp) -> None:
        if self._macos:
            self._osascript(app, "activate", "set frontmost of {proc} to true")
        else:
            self._xdotool(app, "activate", "windowactivate")

    def hide(self, app: TrackedApp) -> None:
        if self._macos:
            self._osascript(app, "hide", "set visible of {proc} to false")
        else:
            self._xdotool(app, "hide", "windowminimize")

    def terminate(self, app: TrackedApp) -> None:
        try:
            proc = psutil.Process(app.pid)
            if abs(proc.create_time() - app.launched_at) > LAUNCH_TIME_TOLERANCE:
                raise ActionFailure(app.id, "quit", "pid now belongs to another process")
            proc.terminate()
        except psutil.NoSuchProcess:
            raise ActionFailure(app.id, "quit", "process already exited") from None
        except psutil.AccessDenied:
            raise ActionFailure(app.id, "quit", "access denied") from None

    def _osascript(self, app: TrackedApp, action: str, statement: str) -> None:
        proc = f"(first application process whose unix id is {app.pid})"
        script = f'tell application "System Events" to {statement.format(proc=proc)}'
        self._run(app, action, ["/usr/bin/osascript", "-e", script])

    def _xdotool(self, app: TrackedApp, action: str, command: str) -> None:
        if not (os.environ.get("DISPLAY") and shutil.which("xdotool")):
            raise ActionFailure(app.id, action, "xdotool not available")
        self._run(app, action, ["xdotool", "search", "--pid", str(app.pid), command])

    def _run(self, app: TrackedApp, action: str, cmd: list[str]) -> None:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise ActionFailure(app.id, action, str(e)) from e
        if result.returncode != 0:
            raise ActionFailure(app.id, action, result.stderr.strip() or "command failed")


@dataclass(frozen=True, slots=True)
class CleanupReport:
    """Outcome of a bulk cleanup."""

    quit_ids: tuple[str, ...] = ()
    denied_ids: tuple[str, ...] = ()
    failed_ids: tuple[str, ...] = ()
    freed_bytes: int = 0

    @property
    def quit_count(self) -> int:
        return len(self.quit_ids)


class ActionExecutor:
    """Runs user actions against apps in the current snapshot.

    quit() is guarded: protected and system apps raise PermissionDenied and
    the store is left untouched. A successful quit removes the app from the
    store right away; the next complete refresh confirms or reverts that.
    """

    def __init__(
        self,
        store: TrackingStore,
        controller: AppController,
    ) -> None:
        self._store = store
        self._controller = controller

    def _resolve(self, app_id: str, action: str) -> TrackedApp:
        app = self._store.snapshot.get(app_id)
        if app is None:
            raise ActionFailure(app_id, action, "not running")
        return app

    def activate(self, app_id: str) -> None:
        """Bring an app to the front."""
        app = self._resolve(app_id, "activate")
        self._controller.activate(app)
        log.info("app_activated", app_id=app_id)

    def hide(self, app_id: str) -> None:
        """Hide an app's windows."""
        app = self._resolve(app_id, "hide")
        self._controller.hide(app)
        log.info("app_hidden", app_id=app_id)

    def quit(self, app_id: str) -> TrackedApp:
        """Ask an app to terminate and drop it from the store.

        Raises:
            PermissionDenied: The app is protected or a system app
            ActionFailure: The app is unknown or the OS rejected the request
        """
        app = self._resolve(app_id, "quit")
        if app.is_protected or app.is_system_app:
            reason = "app is protected" if app.is_protected else "system app"
            log.warning("quit_denied", app_id=app_id, reason=reason)
            raise PermissionDenied(app_id, reason)

        self._store.mark_removed(app_id)
        try:
            self._controller.terminate(app)
        except ActionFailure as e:
            self._store.revert_removal(app_id)
            log.warning("quit_failed", app_id=app_id, error=str(e))
            raise

        log.info(
            "quit_requested",
            app_id=app_id,
            name=app.display_name,
            memory_bytes=app.memory_bytes,
        )
        return app

    def execute_cleanup(
        self,
        plan: CleanupPlan,
        selected_ids: Iterable[str] | None = None,
    ) -> CleanupReport:
        """Quit every candidate in the plan, or only the selected ones.

        Each quit goes through the same guard as quit(), against the current
        snapshot, so an app protected after planning is still spared.
        """
        if selected_ids is not None:
            plan = plan.select(selected_ids)

        quit_ids: list[str] = []
        denied_ids: list[str] = []
        failed_ids: list[str] = []
        freed = 0

        for candidate in plan.candidates:
            try:
                app = self.quit(candidate.id)
            except PermissionDenied:
                denied_ids.append(candidate.id)
            except ActionFailure:
                failed_ids.append(candidate.id)
            else:
                quit_ids.append(app.id)
                freed += app.memory_bytes

        report = CleanupReport(
            quit_ids=tuple(quit_ids),
            denied_ids=tuple(denied_ids),
            failed_ids=tuple(failed_ids),
            freed_bytes=freed,
        )
        log.info(
            "cleanup_executed",
            quit=len(quit_ids),
            denied=len(denied_ids),
            failed=len(failed_ids),
            freed_bytes=freed,
        )
        return report
