"""Configuration system for usage-monitor."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class RetentionConfig:
    """Data retention configuration."""

    events_days: int = 90


@dataclass
class SystemConfig:
    """Process polling configuration."""

    poll_interval: float = 2.0  # Seconds between process snapshots
    heartbeat_ticks: int = 30  # Log heartbeat every N ticks (~1 minute at 2s)
    write_queue_size: int = 0  # 0 = unbounded write queue
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _default_exclude_dirs() -> list[str]:
    return [
        "/usr/libexec/",
        "/usr/sbin/",
        "/sbin/",
        "/lib/",
        "/System/",
        "C:\\Windows\\",
    ]


def _default_exclude_names() -> list[str]:
    return [
        "bash",
        "sh",
        "zsh",
        "fish",
        "sshd",
        "systemd",
        "conhost.exe",
        "svchost.exe",
        "usage-monitor",
    ]


@dataclass
class FiltersConfig:
    """Process classification rules.

    - exclude_dirs: executable path prefixes that are never logged
    - exclude_names: process names (case-insensitive) that are never logged
    - track_names: names that are trackable regardless of ownership
    - user_only: only processes owned by the current user are trackable
    """

    exclude_dirs: list[str] = field(default_factory=_default_exclude_dirs)
    exclude_names: list[str] = field(default_factory=_default_exclude_names)
    track_names: list[str] = field(default_factory=list)
    user_only: bool = True


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
    filters: FiltersConfig = field(default_factory=FiltersConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "usage-monitor"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "usage-monitor"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "usage-monitor"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file. Cleared on reboot."""
        return Path("/tmp/usage-monitor")

    @property
    def db_path(self) -> Path:
        """Database path."""
        return self.data_dir / "data.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("retention", "system", "filters"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree when no file exists.
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

        return cls(
            retention=_load_retention_config(data.get("retention", {})),
            system=_load_system_config(data.get("system", {})),
            filters=_load_filters_config(data.get("filters", {})),
        )


def _require_int(key: str, value: object) -> int:
    # TOML booleans are ints to Python; reject them explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return int(value)


def _require_number(key: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return float(value)


def _require_str_list(key: str, value: object) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings, got {value!r}")
    return [str(v) for v in value]


def _load_retention_config(data: dict) -> RetentionConfig:
    """Load retention config from TOML data."""
    d = RetentionConfig()
    events_days = _require_int("events_days", data.get("events_days", d.events_days))
    if events_days < 1:
        raise ValueError(f"events_days must be >= 1, got {events_days}")
    return RetentionConfig(events_days=events_days)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, using dataclass defaults for missing fields."""
    d = SystemConfig()

    poll_interval = _require_number("poll_interval", data.get("poll_interval", d.poll_interval))
    heartbeat_ticks = _require_int("heartbeat_ticks", data.get("heartbeat_ticks", d.heartbeat_ticks))
    write_queue_size = _require_int(
        "write_queue_size", data.get("write_queue_size", d.write_queue_size)
    )
    log_max_bytes = _require_int("log_max_bytes", data.get("log_max_bytes", d.log_max_bytes))
    log_backup_count = _require_int(
        "log_backup_count", data.get("log_backup_count", d.log_backup_count)
    )

    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be > 0, got {poll_interval}")
    if heartbeat_ticks < 1:
        raise ValueError(f"heartbeat_ticks must be >= 1, got {heartbeat_ticks}")
    if write_queue_size < 0:
        raise ValueError(f"write_queue_size must be >= 0, got {write_queue_size}")
    if log_max_bytes < 0:
        raise ValueError(f"log_max_bytes must be >= 0, got {log_max_bytes}")
    if log_backup_count < 0:
        raise ValueError(f"log_backup_count must be >= 0, got {log_backup_count}")

    return SystemConfig(
        poll_interval=poll_interval,
        heartbeat_ticks=heartbeat_ticks,
        write_queue_size=write_queue_size,
        log_max_bytes=log_max_bytes,
        log_backup_count=log_backup_count,
    )


def _load_filters_config(data: dict) -> FiltersConfig:
    """Load filter rules from TOML data."""
    d = FiltersConfig()
    exclude_dirs = _require_str_list("exclude_dirs", data.get("exclude_dirs", d.exclude_dirs))
    exclude_names = _require_str_list("exclude_names", data.get("exclude_names", d.exclude_names))
    track_names = _require_str_list("track_names", data.get("track_names", d.track_names))
    user_only = data.get("user_only", d.user_only)
    if not isinstance(user_only, bool):
        raise ValueError(f"user_only must be true or false, got {user_only!r}")

    return FiltersConfig(
        exclude_dirs=exclude_dirs,
        exclude_names=[n.lower() for n in exclude_names],
        track_names=[n.lower() for n in track_names],
        user_only=user_only,
    )
