"""Configuration system for stale-hunter."""

import math
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

MB = 1024 * 1024


@dataclass
class RetentionConfig:
    """Data retention configuration."""

    usage_days: int = 90


@dataclass
class SystemConfig:
    """Daemon housekeeping configuration."""

    heartbeat_refreshes: int = 60  # Log heartbeat every N refreshes (~5min at 5s)
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class ScoringConfig:
    """Staleness scoring configuration.

    score = idle_weight * min(idle / stale_threshold_seconds, 1)
          + memory_weight * min(memory / heavy_threshold_bytes, 1)

    The two weights must sum to 1 so the score stays in [0, 1].
    """

    stale_threshold_seconds: float = 1800.0  # Idle longer than this = stale (30 min)
    heavy_threshold_bytes: int = 500 * MB  # Resident memory above this = heavy
    idle_weight: float = 0.7
    memory_weight: float = 0.3

    def validate(self) -> None:
        """Raise ValueError if the scoring parameters are unusable."""
        if self.stale_threshold_seconds <= 0:
            raise ValueError(
                f"stale_threshold_seconds must be > 0, got {self.stale_threshold_seconds}"
            )
        if self.heavy_threshold_bytes <= 0:
            raise ValueError(f"heavy_threshold_bytes must be > 0, got {self.heavy_threshold_bytes}")
        if self.idle_weight < 0 or self.memory_weight < 0:
            raise ValueError("Scoring weights must be >= 0")
        if not math.isclose(self.idle_weight + self.memory_weight, 1.0, abs_tol=1e-9):
            raise ValueError(
                f"idle_weight + memory_weight must equal 1.0, got "
                f"{self.idle_weight} + {self.memory_weight}"
            )


@dataclass
class RefreshConfig:
    """Refresh scheduling configuration."""

    interval: float = 5.0  # Seconds between timer-driven refreshes
    # Apps missing from a partial enumeration stay listed until a complete
    # enumeration proves they exited.
    keep_missing_on_partial: bool = True


@dataclass
class AppsConfig:
    """Application classification.

    - system: identities the OS needs; never terminated
    - system_patterns: substrings that also mark an identity as system
    - excluded: identities never listed at all
    """

    system: list[str] = field(
        default_factory=lambda: [
            "com.apple.finder",
            "com.apple.dock",
            "com.apple.SystemUIServer",
            "com.apple.controlcenter",
            "com.apple.notificationcenterui",
            "com.apple.Spotlight",
            "com.apple.WindowManager",
            "gnome-shell",
            "plasmashell",
            "kwin_x11",
            "kwin_wayland",
            "Xorg",
            "Xwayland",
        ]
    )
    system_patterns: list[str] = field(
        default_factory=lambda: [
            "com.apple.loginwindow",
            "com.apple.coreservices",
        ]
    )
    excluded: list[str] = field(
        default_factory=lambda: [
            "com.apple.loginwindow",
            "com.apple.dock",
            "com.apple.SystemUIServer",
            "com.apple.controlcenter",
            "com.apple.Spotlight",
            "com.apple.notificationcenterui",
        ]
    )

    def is_system(self, bundle_id: str, name: str = "") -> bool:
        """Return True if the identity (or its process name) is a system app."""
        if bundle_id in self.system or (name and name in self.system):
            return True
        return any(pattern in bundle_id for pattern in self.system_patterns)

    def is_excluded(self, bundle_id: str, name: str = "") -> bool:
        """Return True if the identity (or its process name) should not be tracked."""
        return bundle_id in self.excluded or bool(name and name in self.excluded)


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    apps: AppsConfig = field(default_factory=AppsConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "stale-hunter"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "stale-hunter"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "stale-hunter"

    @property
    def db_path(self) -> Path:
        """Database path (protected apps and usage records)."""
        return self.data_dir / "data.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("retention", "system", "scoring", "refresh", "apps"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        retention_data = data.get("retention", {})
        system_data = data.get("system", {})

        ret_defaults = defaults.retention
        sys_defaults = defaults.system

        usage_days = retention_data.get("usage_days", ret_defaults.usage_days)
        if usage_days < 1:
            raise ValueError(f"usage_days must be >= 1, got {usage_days}")

        return cls(
            retention=RetentionConfig(usage_days=usage_days),
            system=SystemConfig(
                heartbeat_refreshes=system_data.get(
                    "heartbeat_refreshes", sys_defaults.heartbeat_refreshes
                ),
                log_max_bytes=system_data.get("log_max_bytes", sys_defaults.log_max_bytes),
                log_backup_count=system_data.get("log_backup_count", sys_defaults.log_backup_count),
            ),
            scoring=_load_scoring_config(data.get("scoring", {})),
            refresh=_load_refresh_config(data.get("refresh", {})),
            apps=_load_apps_config(data.get("apps", {})),
        )


def _load_scoring_config(data: dict) -> ScoringConfig:
    """Load scoring config from TOML data and validate it."""
    d = ScoringConfig()
    scoring = ScoringConfig(
        stale_threshold_seconds=float(
            data.get("stale_threshold_seconds", d.stale_threshold_seconds)
        ),
        heavy_threshold_bytes=int(data.get("heavy_threshold_bytes", d.heavy_threshold_bytes)),
        idle_weight=float(data.get("idle_weight", d.idle_weight)),
        memory_weight=float(data.get("memory_weight", d.memory_weight)),
    )
    scoring.validate()
    return scoring


def _load_refresh_config(data: dict) -> RefreshConfig:
    """Load refresh config from TOML data."""
    d = RefreshConfig()
    interval = float(data.get("interval", d.interval))
    if interval < 0.5:
        raise ValueError(f"refresh interval must be >= 0.5s, got {interval}")
    return RefreshConfig(
        interval=interval,
        keep_missing_on_partial=bool(
            data.get("keep_missing_on_partial", d.keep_missing_on_partial)
        ),
    )


def _load_apps_config(data: dict) -> AppsConfig:
    """Load app classification lists from TOML data."""
    d = AppsConfig()
    return AppsConfig(
        system=[str(s) for s in data.get("system", d.system)],
        system_patterns=[str(s) for s in data.get("system_patterns", d.system_patterns)],
        excluded=[str(s) for s in data.get("excluded", d.excluded)],
    )
