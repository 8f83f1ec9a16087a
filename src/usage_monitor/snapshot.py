"""Live process enumeration via psutil."""

from dataclasses import dataclass

import psutil

# Recorded start times are whole seconds taken at the tick that first saw
# the process, so a process can appear created slightly after its own row.
START_TIME_SLACK = 2.0


@dataclass(frozen=True)
class ProcessObservation:
    """Attributes of a process at the moment it was logged."""

    pid: int
    name: str
    exe_path: str
    parent_name: str


class ProcessSource:
    """Snapshot source backed by psutil.

    Handles are returned without prefetched attributes; name(), exe() and
    parent() are looked up on demand and may each raise psutil.Error.
    """

    def snapshot(self) -> list[psutil.Process]:
        """Return handles for every live process.

        Raises:
            psutil.Error / OSError: if the process table cannot be read.
        """
        return list(psutil.process_iter())

    def pid_exists(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    def is_running(self, pid: int, started_at: int) -> bool:
        """Return True if pid is alive and is the process recorded at started_at.

        A live pid whose process was created after started_at belongs to a
        newer process that reused it (typically after a reboot).
        """
        try:
            created = psutil.Process(pid).create_time()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return self.pid_exists(pid)
        return created <= started_at + START_TIME_SLACK


def parent_name(proc: psutil.Process) -> str:
    """Return the parent's name, or "" if there is no reachable parent."""
    try:
        parent = proc.parent()
        if parent is None:
            return ""
        return parent.name()
    except psutil.Error:
        return ""
