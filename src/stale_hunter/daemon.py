"""Background daemon for stale-hunter.

Keeps a tracking session refreshing, records daily usage per app and prunes
old records until SIGINT/SIGTERM.
"""

import asyncio
import signal
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime

import psutil
import structlog

from stale_hunter import logging as console
from stale_hunter.config import Config
from stale_hunter.enumerator import EnumerationResult
from stale_hunter.session import TrackingSession
from stale_hunter.storage import (
    add_active_time,
    day_key,
    get_connection,
    init_database,
    prune_old_usage,
    record_activation,
    record_launch,
    record_memory_sample,
    record_quit,
    save_activity,
    set_daemon_state,
)
from stale_hunter.store import Snapshot

log = structlog.get_logger()

PRUNE_INTERVAL = 86400  # Seconds between usage prunes


class UsageRecorder:
    """Turns successive refresh snapshots into daily usage counters.

    - launch: an id not present in the previous snapshot
    - activation: a different app became frontmost (its last_active_at moved)
    - active time: how far an app's last_active_at moved while it was in front
    - quit: an id gone from a complete snapshot
    - memory: one sample per app per snapshot, for the day's average and peak

    Each snapshot's last-active times are also saved for one-shot commands.

    The first snapshot is a baseline: apps already running are not launches.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._previous: Snapshot | None = None
        self._frontmost: str | None = None

    def observe(self, snapshot: Snapshot) -> None:
        day = day_key(snapshot.taken_at)
        previous = self._previous
        self._previous = snapshot

        save_activity(
            self._conn,
            {app.id: app.last_active_at for app in snapshot.apps},
            replace_all=not snapshot.partial,
        )

        for app in snapshot.apps:
            record_memory_sample(self._conn, app.bundle_id, app.display_name, app.memory_bytes, day)

        if previous is None:
            return

        for app in snapshot.apps:
            old = previous.get(app.id)
            if old is None:
                record_launch(self._conn, app.bundle_id, app.display_name, day)
                continue
            if app.last_active_at <= old.last_active_at:
                continue

            # Front time counts from the previous refresh at the earliest
            active = app.last_active_at - max(old.last_active_at, previous.taken_at)
            if active > 0:
                add_active_time(self._conn, app.bundle_id, app.display_name, active, day)
            if app.id != self._frontmost:
                self._frontmost = app.id
                record_activation(self._conn, app.bundle_id, app.display_name, day)

        if not snapshot.partial:
            for old in previous.apps:
                if old.id not in snapshot:
                    record_quit(self._conn, old.bundle_id, old.display_name, day)
                    if old.id == self._frontmost:
                        self._frontmost = None


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    refresh_count: int = 0
    partial_count: int = 0
    last_refresh_time: datetime | None = None
    warnings: list[str] = field(default_factory=list)

    def update_refresh(self, partial: bool) -> None:
        """Update state after a refresh."""
        self.refresh_count += 1
        if partial:
            self.partial_count += 1
        self.last_refresh_time = datetime.now()


class Daemon:
    """Main daemon class wiring the session, usage recording and pruning."""

    def __init__(self, config: Config):
        self.config = config
        self.state = DaemonState()

        # Initialized in _init_database() after schema validation/recreation
        self._conn: sqlite3.Connection | None = None
        self.session: TrackingSession | None = None
        self._recorder: UsageRecorder | None = None

        self._shutdown_event = asyncio.Event()
        self._auto_prune_task: asyncio.Task | None = None
        self._heartbeat_count = 0

    async def _init_database(self) -> None:
        """Initialize database connection and the tracking session.

        Extracted from start() so tests can initialize without signal handling.
        """
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))
            console.config_created(str(self.config.config_path))

        status = init_database(self.config.db_path)
        self._conn = get_connection(self.config.db_path)
        self._recorder = UsageRecorder(self._conn)
        self.session = TrackingSession.create(self.config, self._conn, on_refresh=self._on_refresh)

        log.info(
            "database_ready",
            status=status,
            protected=len(self.session.store.protected_ids),
        )
        console.database_status(status)

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        log.info(
            "daemon_starting",
            interval=self.config.refresh.interval,
            stale_threshold_seconds=self.config.scoring.stale_threshold_seconds,
            heavy_threshold_bytes=self.config.scoring.heavy_threshold_bytes,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        await self._init_database()
        assert self.session is not None
        assert self._conn is not None
        set_daemon_state(self._conn, "started_at", str(time.time()))

        self.session.scheduler.start()
        self.state.running = True
        log.info("daemon_started")
        console.daemon_started(self.config.refresh.interval)

        self._auto_prune_task = asyncio.create_task(self._auto_prune())

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self._auto_prune_task:
            self._auto_prune_task.cancel()
            try:
                await self._auto_prune_task
            except asyncio.CancelledError:
                pass
            self._auto_prune_task = None

        if self.session is not None:
            await self.session.scheduler.stop()

        if self._conn:
            set_daemon_state(self._conn, "stopped_at", str(time.time()))
            self._conn.close()
            self._conn = None
        self._recorder = None

        log.info("daemon_stopped", refreshes=self.state.refresh_count)
        console.daemon_stopped()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self.request_shutdown()

    def _on_refresh(self, snapshot: Snapshot, result: EnumerationResult) -> None:
        """Record usage and emit the periodic heartbeat after each refresh."""
        self.state.update_refresh(result.partial)
        if result.partial:
            warnings = list(result.warnings)
            # Only report when the set of unreadable apps changes
            if warnings != self.state.warnings:
                log.warning("partial_refresh", warnings=warnings)
                console.partial_refresh(warnings)
            self.state.warnings = warnings
        else:
            self.state.warnings = []

        try:
            if self._conn is not None:
                set_daemon_state(self._conn, "last_refresh_at", str(snapshot.taken_at))
            if self._recorder is not None:
                self._recorder.observe(snapshot)
        except sqlite3.Error as e:
            log.error("usage_record_failed", error=str(e))

        self._heartbeat_count += 1
        if self._heartbeat_count >= self.config.system.heartbeat_refreshes:
            self._heartbeat_count = 0
            self._heartbeat(snapshot)

    def _heartbeat(self, snapshot: Snapshot) -> None:
        stale = sum(1 for app in snapshot.apps if app.is_stale)
        total_memory = sum(app.memory_bytes for app in snapshot.apps)
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024

        log.info(
            "daemon_heartbeat",
            refreshes=self.state.refresh_count,
            partial_refreshes=self.state.partial_count,
            apps=len(snapshot),
            stale=stale,
            total_memory_bytes=total_memory,
            rss_mb=round(rss_mb, 1),
        )
        console.heartbeat(len(snapshot), stale, total_memory, rss_mb)

    async def _auto_prune(self) -> None:
        """Prune old usage records now and then daily."""
        while not self._shutdown_event.is_set():
            if self._conn:
                deleted = prune_old_usage(self._conn, self.config.retention.usage_days)
                console.usage_pruned(deleted)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=PRUNE_INTERVAL)
                break
            except asyncio.TimeoutError:
                pass


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    from stale_hunter.logging import configure

    if config is None:
        config = Config.load()

    configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        console.daemon_crashed(str(e))
        raise
    finally:
        await daemon.stop()
