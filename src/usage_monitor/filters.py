"""Exclusion and trackability rules for processes."""

import getpass
import os
from typing import Protocol

import psutil
import structlog

from usage_monitor.config import FiltersConfig

log = structlog.get_logger()


class ProcessFilter(Protocol):
    """Predicates consulted while classifying a new process."""

    def should_exclude(self, exe_path: str, proc: psutil.Process) -> bool: ...

    def should_track(self, exe_path: str, proc: psutil.Process) -> bool: ...


class DefaultFilter:
    """Config-driven rules.

    Exclusion is permanent for a pid (system binaries, shells, ourselves).
    Trackability may change over a process's lifetime, so a False answer
    only defers the decision to the next tick.
    """

    def __init__(self, config: FiltersConfig, own_pid: int | None = None) -> None:
        # Windows paths are case-insensitive; POSIX ones are compared as written
        self.exclude_dirs = tuple(d for d in config.exclude_dirs if "\\" not in d)
        self.exclude_dirs_nocase = tuple(d.lower() for d in config.exclude_dirs if "\\" in d)
        self.exclude_names = {n.lower() for n in config.exclude_names}
        self.track_names = {n.lower() for n in config.track_names}
        self.user_only = config.user_only
        self.own_pid = os.getpid() if own_pid is None else own_pid
        self._username = getpass.getuser()

    def should_exclude(self, exe_path: str, proc: psutil.Process) -> bool:
        if proc.pid == self.own_pid:
            return True
        if not exe_path:
            # Kernel threads and processes we may not inspect
            return True
        if exe_path.startswith(self.exclude_dirs):
            return True
        if exe_path.lower().startswith(self.exclude_dirs_nocase):
            return True
        return os.path.basename(exe_path).lower() in self.exclude_names

    def should_track(self, exe_path: str, proc: psutil.Process) -> bool:
        if os.path.basename(exe_path).lower() in self.track_names:
            return True
        if not self.user_only:
            return True
        try:
            owner = proc.username()
        except psutil.Error:
            return False
        # Windows reports DOMAIN\user
        return owner.rsplit("\\", 1)[-1] == self._username
