"""Running-application enumeration using psutil."""

import os
import plistlib
import shutil
import subprocess
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import psutil
import structlog

from stale_hunter.config import AppsConfig
from stale_hunter.errors import EnumerationError

log = structlog.get_logger()

# Returns the pid of the frontmost application, or None if unknown
ForegroundQuery = Callable[[], int | None]

BUNDLE_MARKER = ".app/Contents/MacOS/"


@dataclass(frozen=True, slots=True)
class RawAppInfo:
    """One running application as read from the OS, before scoring."""

    id: str  # "{bundle_id}.{pid}", unique per running instance
    bundle_id: str  # Identity shared by restarts of the same program
    pid: int
    name: str
    memory_bytes: int  # Resident set size
    cpu_percent: float
    launched_at: float
    last_active_at: float
    is_system_app: bool = False
    icon_ref: str | None = None


@dataclass(frozen=True, slots=True)
class EnumerationResult:
    """Output of one enumeration.

    partial=True means some applications could not be read; apps holds
    whatever was read successfully and warnings says what failed.
    """

    apps: tuple[RawAppInfo, ...]
    partial: bool = False
    warnings: tuple[str, ...] = ()


class AppEnumerator(Protocol):
    """Source of running applications."""

    def enumerate(self) -> EnumerationResult:
        """Read the current application list.

        Raises:
            EnumerationError: If the process list cannot be read at all.
        """
        ...


def make_app_id(bundle_id: str, pid: int) -> str:
    """Build the per-instance identifier for an app."""
    return f"{bundle_id}.{pid}"


# ─────────────────────────────────────────────────────────────────────────────
# Foreground queries
# ─────────────────────────────────────────────────────────────────────────────


def _run_query(cmd: list[str]) -> int | None:
    """Run a query command and parse a pid from its output."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=2.0)
    except (OSError, subprocess.SubprocessError) as e:
        log.debug("foreground_query_failed", cmd=cmd[0], error=str(e))
        return None
    if result.returncode != 0:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def macos_foreground_pid() -> int | None:
    """Pid of the frontmost macOS application via System Events."""
    return _run_query(
        [
            "/usr/bin/osascript",
            "-e",
            'tell application "System Events" to get unix id of '
            "first application process whose frontmost is true",
        ]
    )


def x11_foreground_pid() -> int | None:
    """Pid owning the focused X11 window."""
    return _run_query(["xdotool", "getactivewindow", "getwindowpid"])


def default_foreground_query() -> ForegroundQuery | None:
    """Pick a foreground query for this platform, or None if there is none."""
    if sys.platform == "darwin":
        return macos_foreground_pid
    if os.environ.get("DISPLAY") and shutil.which("xdotool"):
        return x11_foreground_pid
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Bundle metadata
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class BundleInfo:
    """Identity and presentation metadata for one executable."""

    bundle_id: str
    name: str
    icon_ref: str | None = None


def _read_macos_bundle(bundle_path: Path, fallback_name: str) -> BundleInfo:
    """Read identifier, display name and icon from an .app bundle's Info.plist."""
    plist_path = bundle_path / "Contents" / "Info.plist"
    try:
        with open(plist_path, "rb") as f:
            plist = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return BundleInfo(bundle_id=str(bundle_path), name=bundle_path.stem or fallback_name)

    icon_file = plist.get("CFBundleIconFile")
    icon_ref = None
    if icon_file:
        icon_name = icon_file if icon_file.endswith(".icns") else f"{icon_file}.icns"
        icon_ref = str(bundle_path / "Contents" / "Resources" / icon_name)

    return BundleInfo(
        bundle_id=plist.get("CFBundleIdentifier") or str(bundle_path),
        name=plist.get("CFBundleDisplayName") or plist.get("CFBundleName") or bundle_path.stem,
        icon_ref=icon_ref,
    )


def bundle_path_for(exe: str) -> Path | None:
    """Return the enclosing .app bundle for a macOS executable path."""
    index = exe.find(BUNDLE_MARKER)
    if index < 0:
        return None
    return Path(exe[: index + len(".app")])


# ─────────────────────────────────────────────────────────────────────────────
# psutil enumerator
# ─────────────────────────────────────────────────────────────────────────────


class PsutilEnumerator:
    """Enumerates desktop applications of the current user with psutil.

    On macOS only executables inside an .app bundle count as applications.
    Elsewhere every process of the current user with an executable path
    counts, with helper children of the same executable folded into their
    parent.

    last_active_at is tracked here: seeded when an app is first seen and
    bumped only when the foreground query reports it in front.
    """

    def __init__(
        self,
        apps_config: AppsConfig,
        foreground_query: ForegroundQuery | None = None,
        clock: Callable[[], float] = time.time,
        macos: bool | None = None,
    ) -> None:
        self._apps = apps_config
        self._query = foreground_query
        self._clock = clock
        self._macos = sys.platform == "darwin" if macos is None else macos
        self._username = psutil.Process().username()
        self._last_active: dict[str, float] = {}
        self._bundles: dict[str, BundleInfo] = {}

    def seed_activity(self, last_active: dict[str, float]) -> None:
        """Adopt last_active_at values observed elsewhere (e.g. by the daemon)."""
        for app_id, timestamp in last_active.items():
            if timestamp > self._last_active.get(app_id, 0.0):
                self._last_active[app_id] = timestamp

    def enumerate(self) -> EnumerationResult:
        """Read all running applications."""
        now = self._clock()
        foreground = self._query() if self._query else None

        apps: list[RawAppInfo] = []
        warnings: list[str] = []
        exes_by_pid: dict[int, str] = {}

        try:
            candidates = list(psutil.process_iter())
        except (OSError, psutil.Error) as e:
            raise EnumerationError(f"Cannot list processes: {e}") from e

        for proc in candidates:
            try:
                with proc.oneshot():
                    if proc.username() != self._username:
                        continue
                    exe = proc.exe()
                    if not exe:
                        continue
                    bundle = self._bundle_for(exe, proc.name())
                    if bundle is None or self._apps.is_excluded(bundle.bundle_id, bundle.name):
                        continue
                    exes_by_pid[proc.pid] = exe
                    if not self._macos and exes_by_pid.get(proc.ppid()) == exe:
                        continue  # Helper child of an app already listed
                    apps.append(self._read_app(proc, bundle, now, foreground))
            except psutil.NoSuchProcess:
                # Exited between listing and reading (includes zombies)
                continue
            except psutil.AccessDenied:
                warnings.append(f"access denied reading pid {proc.pid}")
                continue

        self._prune_activity({app.id for app in apps}, complete=not warnings)

        if warnings:
            log.debug("enumeration_partial", read=len(apps), failed=len(warnings))

        return EnumerationResult(apps=tuple(apps), partial=bool(warnings), warnings=tuple(warnings))

    def _bundle_for(self, exe: str, proc_name: str) -> BundleInfo | None:
        """Resolve identity metadata for an executable, caching per path."""
        cached = self._bundles.get(exe)
        if cached is not None:
            return cached

        if self._macos:
            bundle_path = bundle_path_for(exe)
            if bundle_path is None:
                return None
            info = _read_macos_bundle(bundle_path, proc_name)
        else:
            info = BundleInfo(bundle_id=exe, name=proc_name or Path(exe).name)

        self._bundles[exe] = info
        return info

    def _read_app(
        self,
        proc: psutil.Process,
        bundle: BundleInfo,
        now: float,
        foreground: int | None,
    ) -> RawAppInfo:
        """Build a RawAppInfo for one process (inside oneshot())."""
        app_id = make_app_id(bundle.bundle_id, proc.pid)
        launched_at = proc.create_time()

        if foreground == proc.pid:
            self._last_active[app_id] = now
        last_active = self._last_active.setdefault(app_id, now)

        return RawAppInfo(
            id=app_id,
            bundle_id=bundle.bundle_id,
            pid=proc.pid,
            name=bundle.name,
            memory_bytes=proc.memory_info().rss,
            cpu_percent=proc.cpu_percent() or 0.0,
            launched_at=launched_at,
            last_active_at=last_active,
            is_system_app=self._apps.is_system(bundle.bundle_id, bundle.name),
            icon_ref=bundle.icon_ref,
        )

    def _prune_activity(self, seen: set[str], complete: bool) -> None:
        """Forget activity for apps gone from a complete read."""
        if not complete:
            return
        for app_id in list(self._last_active):
            if app_id not in seen:
                del self._last_active[app_id]
