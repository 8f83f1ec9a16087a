"""Background daemon for usage-monitor."""

import asyncio
import logging
import logging.handlers
import os
import signal
import sqlite3
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from usage_monitor.config import Config
from usage_monitor.filters import DefaultFilter
from usage_monitor.monitor import ProcessMonitor
from usage_monitor.storage import get_connection, init_database, prune_old_data
from usage_monitor.writer import EventWriter

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    started_at: datetime | None = None
    resets: int = 0
    prunes: int = 0


class Daemon:
    """Main daemon class hosting the process monitor and its write queue."""

    def __init__(self, config: Config):
        self.config = config
        self.state = DaemonState()

        # Initialized in _init_database() after schema validation/recreation
        self._conn: sqlite3.Connection | None = None
        self.writer: EventWriter | None = None
        self.monitor: ProcessMonitor | None = None

        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._owns_pid_file = False

    async def _init_database(self) -> None:
        """Initialize database connection, write queue and monitor.

        Extracted from start() so tests can initialize without full daemon startup.
        """
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        db_existed = self.config.db_path.exists()
        init_database(self.config.db_path)

        self._conn = get_connection(self.config.db_path)
        self.writer = EventWriter(self._conn, maxsize=self.config.system.write_queue_size)
        self.monitor = ProcessMonitor(
            self.writer,
            DefaultFilter(self.config.filters),
            poll_interval=self.config.system.poll_interval,
        )
        log.info("database_ready", existed=db_existed, path=str(self.config.db_path))

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        from importlib.metadata import version

        log.info("daemon_starting", version=version("usage-monitor"))
        log.info(
            "daemon_config",
            poll_interval=self.config.system.poll_interval,
            user_only=self.config.filters.user_only,
            events_days=self.config.retention.events_days,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
        loop.add_signal_handler(signal.SIGUSR1, self._handle_reset_signal)

        if self._check_already_running():
            log.error("daemon_already_running")
            raise RuntimeError("Daemon is already running")

        self._write_pid_file()

        await self._init_database()
        assert self.writer is not None and self.monitor is not None

        self.state.running = True
        self.state.started_at = datetime.now()

        self._tasks = [
            asyncio.create_task(self.writer.run(), name="writer"),
            asyncio.create_task(self.monitor.run(self._conn), name="monitor"),
            asyncio.create_task(self._heartbeat(), name="heartbeat"),
            asyncio.create_task(self._auto_prune(), name="auto_prune"),
        ]
        log.info("daemon_started")

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        self.state.running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        # Writer task is gone; apply whatever is still queued directly
        if self.writer is not None:
            flushed = self.writer.drain_nowait()
            if flushed:
                log.info("writes_flushed", count=flushed)

        if self._conn:
            self._conn.close()
            self._conn = None
        self.writer = None
        self.monitor = None

        # Never remove another daemon's PID file after a refused start
        if self._owns_pid_file:
            self._remove_pid_file()
            self._owns_pid_file = False
        log.info("daemon_stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    def _handle_reset_signal(self) -> None:
        """SIGUSR1: forget in-memory tracking state (sent after a history clear)."""
        log.info("signal_received", signal="SIGUSR1")
        self.request_reset()

    def request_reset(self) -> None:
        if self.monitor is None:
            log.warning("reset_ignored", reason="monitor not running")
            return
        self.monitor.reset_signal.request()
        self.state.resets += 1

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._owns_pid_file = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file."""
        if self.config.pid_path.exists():
            self.config.pid_path.unlink()
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if the daemon is already running.

        Verifies that the PID file's process is actually usage-monitor, not a
        different process that reused the PID after a reboot.
        """
        pid = read_daemon_pid(self.config)
        if pid is None:
            if self.config.pid_path.exists():
                log.warning("pid_file_stale", reason="not a running daemon")
                self._remove_pid_file()
            return False

        log.info("daemon_already_running_verified", pid=pid)
        return True

    async def _heartbeat(self) -> None:
        """Log monitor counters every heartbeat_ticks poll intervals."""
        interval = self.config.system.poll_interval * self.config.system.heartbeat_ticks
        while True:
            await asyncio.sleep(interval)
            if self.monitor is None or self.writer is None:
                continue
            log.info(
                "daemon_heartbeat",
                ticks=self.monitor.ticks,
                running=len(self.monitor.running),
                logged_apps=len(self.monitor.logged_apps),
                logged=self.monitor.logged,
                ended=self.monitor.ended,
                pending_writes=self.writer.pending,
                failed_writes=self.writer.failed,
            )

    async def _auto_prune(self) -> None:
        """Prune old closed events once a day."""
        while True:
            await asyncio.sleep(86400)
            if self.writer is None or self._conn is None:
                continue
            # Let queued writes land before deleting
            await self.writer.flush()
            log.info("auto_prune_starting")
            try:
                deleted = prune_old_data(self._conn, events_days=self.config.retention.events_days)
            except sqlite3.Error as e:
                log.error("auto_prune_failed", error=str(e))
                continue
            self.state.prunes += 1
            log.info("auto_prune_completed", events_deleted=deleted)


def read_daemon_pid(config: Config) -> int | None:
    """Return the PID of a live usage-monitor daemon, or None."""
    if not config.pid_path.exists():
        return None

    try:
        pid = int(config.pid_path.read_text().strip())
    except ValueError:
        log.warning("pid_file_invalid", reason="not a number")
        return None

    try:
        proc = psutil.Process(pid)
        cmdline_str = " ".join(proc.cmdline()).lower()
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        # Can't inspect process - assume it's ours to be safe
        log.warning("pid_check_access_denied", pid=pid)
        return pid

    if "usage-monitor" in cmdline_str or "usage_monitor" in cmdline_str:
        return pid
    return None


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def _setup_logging(config: Config) -> None:
    """Configure structlog with dual output: console + JSON file.

    Console output uses human-readable format with colors.
    File output uses JSON Lines format for machine parsing.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(console_handler)


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    _setup_logging(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
