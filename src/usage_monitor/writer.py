"""Asynchronous write queue for app events.

The monitor never waits on the database: it enqueues parameterized
statements and a single drain task applies them in order on its own
connection. Failed statements are logged and dropped.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Any, Protocol

import structlog

log = structlog.get_logger()


class EventSink(Protocol):
    """Anything that accepts fire-and-forget parameterized statements."""

    def enqueue(self, statement: str, *args: Any) -> None: ...


class EventWriter:
    """Queue-backed event sink draining into a SQLite connection.

    Usage:
        writer = EventWriter(conn)
        task = asyncio.create_task(writer.run())
        writer.enqueue("UPDATE ...", 1, 2)
        await writer.flush()
    """

    def __init__(self, conn: sqlite3.Connection, maxsize: int = 0) -> None:
        self.conn = conn
        self._queue: asyncio.Queue[tuple[str, tuple[Any, ...]]] = asyncio.Queue(maxsize=maxsize)
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        """Number of statements waiting to be applied."""
        return self._queue.qsize()

    def enqueue(self, statement: str, *args: Any) -> None:
        """Queue a statement without blocking. Drops it if the queue is full."""
        try:
            self._queue.put_nowait((statement, args))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("write_dropped", statement=statement.split(" ", 1)[0], pending=self.pending)

    def _apply(self, statement: str, args: tuple[Any, ...]) -> None:
        try:
            self.conn.execute(statement, args)
            self.conn.commit()
            self.written += 1
        except sqlite3.Error as e:
            self.failed += 1
            log.error("write_failed", statement=statement, args=args, error=str(e))

    async def run(self) -> None:
        """Drain the queue until cancelled."""
        while True:
            statement, args = await self._queue.get()
            try:
                self._apply(statement, args)
            finally:
                self._queue.task_done()

    def drain_nowait(self) -> int:
        """Apply everything currently queued on the calling task. Returns the count."""
        count = 0
        while True:
            try:
                statement, args = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            try:
                self._apply(statement, args)
                count += 1
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued statement has been applied.

        Requires run() to be active; use drain_nowait() once it has been
        cancelled.
        """
        await self._queue.join()
