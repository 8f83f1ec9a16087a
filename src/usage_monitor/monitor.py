"""Process lifecycle monitor.

Polls the process table, records the first instance of each application
as an app event, and closes the event when the process disappears.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum

import psutil
import structlog

from usage_monitor.filters import ProcessFilter
from usage_monitor.snapshot import ProcessObservation, ProcessSource, parent_name
from usage_monitor.storage import CLOSE_APP_EVENT, INSERT_APP_EVENT, get_open_events
from usage_monitor.writer import EventSink

log = structlog.get_logger()


class LogStatus(Enum):
    """Outcome of classifying a newly seen process."""

    LOG = "log"
    EXCLUDE = "exclude"
    RETRY = "retry"  # Not stored; the pid is re-evaluated next tick


@dataclass(frozen=True)
class Decision:
    status: LogStatus
    name: str = ""
    exe_path: str = ""


class LoggedApps:
    """Lowercased names already logged in this session.

    Guarded by a lock so reconciliation and cleanup can't interleave with
    a reset issued from elsewhere.
    """

    def __init__(self) -> None:
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def mark(self, name: str) -> None:
        with self._lock:
            self._names.add(name)

    def contains(self, name: str) -> bool:
        with self._lock:
            return name in self._names

    def discard(self, name: str) -> None:
        with self._lock:
            self._names.discard(name)

    def clear(self) -> None:
        with self._lock:
            self._names.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.contains(name)


class ResetSignal:
    """Single-slot reset request.

    Requesting while a reset is already pending is a no-op, so a burst of
    requests results in one clear.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    def request(self) -> None:
        """Raise the signal. Must be called from the event loop thread."""
        self._event.set()

    def request_threadsafe(self, loop: asyncio.AbstractEventLoop) -> None:
        """Raise the signal from another thread."""
        loop.call_soon_threadsafe(self._event.set)

    async def wait(self, timeout: float) -> bool:
        """Wait up to timeout seconds. Returns True (and consumes it) if raised."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._event.clear()
        return True


class ProcessMonitor:
    """Owns the running set and dedup cache and drives each poll tick."""

    def __init__(
        self,
        sink: EventSink,
        process_filter: ProcessFilter,
        source: ProcessSource | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        self.sink = sink
        self.filter = process_filter
        self.source = source or ProcessSource()
        self.poll_interval = poll_interval

        # pid -> lowercased name for processes already classified LOG or EXCLUDE
        self.running: dict[int, str] = {}
        self.logged_apps = LoggedApps()
        self.reset_signal = ResetSignal()

        self.ticks = 0
        self.logged = 0
        self.ended = 0

    def classify(self, proc: psutil.Process) -> Decision:
        """Decide whether a process not yet in the running set should be logged.

        First match wins: missing name or exe path -> RETRY, excluded -> EXCLUDE,
        name already logged -> EXCLUDE, not yet trackable -> RETRY, else LOG.
        """
        try:
            name = proc.name()
        except psutil.Error:
            return Decision(LogStatus.RETRY)
        if not name:
            # Freshly created processes can briefly lack a name
            return Decision(LogStatus.RETRY)

        try:
            exe_path = proc.exe()
        except psutil.Error:
            return Decision(LogStatus.RETRY, name)

        if self.filter.should_exclude(exe_path, proc):
            return Decision(LogStatus.EXCLUDE, name, exe_path)

        if self.logged_apps.contains(name.lower()):
            # Only the first instance per name is recorded
            return Decision(LogStatus.EXCLUDE, name, exe_path)

        if not self.filter.should_track(exe_path, proc):
            return Decision(LogStatus.RETRY, name, exe_path)

        return Decision(LogStatus.LOG, name, exe_path)

    def tick(self, now: int | None = None) -> None:
        """Run one observation cycle."""
        try:
            procs = self.source.snapshot()
        except (psutil.Error, OSError) as e:
            log.error("snapshot_failed", error=str(e))
            return

        now = int(time.time()) if now is None else now
        current_pids = {p.pid for p in procs}

        # Exits first so a relaunch in the same window is loggable again
        self._end_exited(current_pids, now)
        self._log_new(procs, now)
        self.ticks += 1

    def _end_exited(self, current_pids: set[int], now: int) -> None:
        for pid in [p for p in self.running if p not in current_pids]:
            name = self.running.pop(pid)
            self.sink.enqueue(CLOSE_APP_EVENT, now, pid)
            self.ended += 1

            if name not in self.running.values():
                self.logged_apps.discard(name)
            log.debug("process_ended", name=name, pid=pid)

    def _log_new(self, procs: list[psutil.Process], now: int) -> None:
        for proc in procs:
            if proc.pid in self.running:
                continue

            decision = self.classify(proc)
            if decision.status is LogStatus.RETRY:
                continue

            name_lower = decision.name.lower()
            if decision.status is LogStatus.LOG:
                obs = ProcessObservation(
                    pid=proc.pid,
                    name=decision.name,
                    exe_path=decision.exe_path,
                    parent_name=parent_name(proc),
                )
                self._record(obs, now)
                self.logged_apps.mark(name_lower)

            self.running[proc.pid] = name_lower

    def _record(self, obs: ProcessObservation, now: int) -> None:
        self.sink.enqueue(
            INSERT_APP_EVENT,
            obs.name,
            obs.pid,
            obs.parent_name,
            obs.exe_path,
            now,
        )
        self.logged += 1
        log.info(
            "process_logged",
            name=obs.name,
            pid=obs.pid,
            parent=obs.parent_name,
            exe=obs.exe_path,
        )

    def reconcile(self, conn: sqlite3.Connection, now: int | None = None) -> None:
        """Match open events left in the database against live processes.

        Live pids seed the running set and dedup cache. Dead pids, and pids
        now held by a process created after the row was written, are closed.
        A database error abandons reconciliation with the running set empty.
        """
        try:
            open_events = get_open_events(conn)
        except sqlite3.Error as e:
            log.warning("reconcile_failed", error=str(e))
            return

        now = int(time.time()) if now is None else now
        restored = 0
        stale: set[int] = set()
        for pid, name, start_time in open_events:
            if self.source.is_running(pid, start_time):
                name_lower = name.lower()
                self.running[pid] = name_lower
                self.logged_apps.mark(name_lower)
                restored += 1
            else:
                stale.add(pid)

        # The end statement matches every open row of a pid, so a pid that
        # still has a live row is left alone.
        closed = sorted(stale - self.running.keys())
        for pid in closed:
            self.sink.enqueue(CLOSE_APP_EVENT, now, pid)

        log.info("reconcile_complete", restored=restored, closed_stale=len(closed))

    def reset(self) -> None:
        """Forget every logged name and running pid."""
        log.info(
            "reset_received",
            running=len(self.running),
            logged_apps=len(self.logged_apps),
        )
        self.logged_apps.clear()
        self.running = {}

    async def run(self, conn: sqlite3.Connection) -> None:
        """Reconcile once, then tick every poll_interval until cancelled.

        Each wake either handles a reset or runs a tick, never both.
        """
        self.reconcile(conn)

        while True:
            if await self.reset_signal.wait(self.poll_interval):
                self.reset()
                continue
            try:
                self.tick()
            except Exception:
                log.exception("tick_failed")
