"""Shared test fixtures for usage-monitor."""

from pathlib import Path
from typing import Any

import psutil
import pytest

from usage_monitor.snapshot import START_TIME_SLACK
from usage_monitor.storage import get_connection, init_database


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


@pytest.fixture
def conn(initialized_db: Path):
    """Open connection to an initialized database."""
    connection = get_connection(initialized_db)
    yield connection
    connection.close()


class FakeProcess:
    """Stand-in for psutil.Process with scriptable lookups.

    name/exe/username may be a value or an exception instance to raise.
    """

    def __init__(
        self,
        pid: int,
        name: Any = "app",
        exe: Any = "/opt/app/app",
        parent: "FakeProcess | None" = None,
        username: Any = "tester",
    ) -> None:
        self.pid = pid
        self._name = name
        self._exe = exe
        self._parent = parent
        self._username = username

    @staticmethod
    def _get(value: Any) -> Any:
        if isinstance(value, BaseException):
            raise value
        return value

    def name(self) -> str:
        return self._get(self._name)

    def exe(self) -> str:
        return self._get(self._exe)

    def parent(self) -> "FakeProcess | None":
        return self._get(self._parent)

    def username(self) -> str:
        return self._get(self._username)


class FakeSource:
    """Snapshot source returning whatever the test sets."""

    def __init__(self, procs: list[FakeProcess] | None = None) -> None:
        self.procs = procs or []
        self.alive: set[int] = set()
        self.created: dict[int, float] = {}
        self.error: Exception | None = None

    def snapshot(self) -> list[FakeProcess]:
        if self.error is not None:
            raise self.error
        return list(self.procs)

    def pid_exists(self, pid: int) -> bool:
        return pid in self.alive

    def is_running(self, pid: int, started_at: int) -> bool:
        if not self.pid_exists(pid):
            return False
        return self.created.get(pid, 0.0) <= started_at + START_TIME_SLACK


class RecordingSink:
    """Event sink that remembers every enqueued statement."""

    def __init__(self) -> None:
        self.statements: list[tuple[str, tuple]] = []

    def enqueue(self, statement: str, *args: Any) -> None:
        self.statements.append((statement, args))

    def inserts(self) -> list[tuple]:
        return [args for stmt, args in self.statements if stmt.startswith("INSERT")]

    def closes(self) -> list[tuple]:
        return [args for stmt, args in self.statements if stmt.startswith("UPDATE")]


class StaticFilter:
    """Filter with fixed answers, overridable per exe path."""

    def __init__(
        self,
        exclude: set[str] | None = None,
        untracked: set[str] | None = None,
    ) -> None:
        self.exclude = exclude or set()
        self.untracked = untracked or set()

    def should_exclude(self, exe_path: str, proc: Any) -> bool:
        return exe_path in self.exclude

    def should_track(self, exe_path: str, proc: Any) -> bool:
        return exe_path not in self.untracked


def no_such_process(pid: int = 1) -> psutil.NoSuchProcess:
    return psutil.NoSuchProcess(pid)


def access_denied(pid: int = 1) -> psutil.AccessDenied:
    return psutil.AccessDenied(pid)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
