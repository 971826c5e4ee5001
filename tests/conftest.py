"""Shared fixtures: a scripted fake session and a real SQLite session."""

import asyncio
import sqlite3

import pytest
import pytest_asyncio

from termbench.adapters import SQLiteAdapter
from termbench.database import Database
from termbench.engine.buffer import ResultBuffer
from termbench.engine.models import ColumnDescriptor
from termbench.engine.session import Session, StatementCancelled
from termbench.settings import EngineSettings


class Script:
    """Canned outcome for one statement."""

    def __init__(self, columns=(), rows=(), pause_after=None, error=None,
                 rowcount=-1, ignore_cancel=False):
        self.columns = [
            c if isinstance(c, ColumnDescriptor) else ColumnDescriptor(c, "", i)
            for i, c in enumerate(columns)
        ]
        self.rows = [tuple(r) for r in rows]
        self.pause_after = pause_after
        self.error = error
        self.rowcount = rowcount
        self.ignore_cancel = ignore_cancel


class FakeStream:
    def __init__(self, session, script, handle, batch_size):
        self.session = session
        self.script = script
        self.handle = handle
        self.columns = script.columns
        self.rowcount = script.rowcount
        self.batch_size = batch_size
        self.paused = asyncio.Event()
        self.resume = asyncio.Event()
        self.closed = False
        self.committed = None
        self._pos = 0

    @property
    def has_result_set(self):
        return bool(self.columns)

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        pause = self.script.pause_after
        if pause is not None and self._pos >= pause:
            self.paused.set()
            await self.resume.wait()
        if self.handle is not None and self.handle.cancel_requested and not self.script.ignore_cancel:
            raise StatementCancelled("canceling statement due to user request")
        if self._pos >= len(self.script.rows):
            raise StopAsyncIteration
        batch = self.script.rows[self._pos:self._pos + self.batch_size]
        self._pos += len(batch)
        return batch

    async def fetch(self, n):
        rows = self.script.rows[self._pos:self._pos + n]
        self._pos += len(rows)
        return rows

    async def close(self, commit=True):
        self.closed = True
        self.committed = commit


class FakeSession:
    """Session double driven by a {statement: Script} table."""

    def __init__(self, scripts=None, adapter=None):
        self.scripts = dict(scripts or {})
        self.adapter = adapter or SQLiteAdapter()
        self.streams = []
        self.executed = []
        self.cancelled = []
        self.logged = []
        self.needs_reconnect = False
        self._lock = asyncio.Lock()

    def exclusive(self):
        return self._lock

    @property
    def busy(self):
        return self._lock.locked()

    def flag_for_reconnect(self, reason):
        self.needs_reconnect = True

    async def execute(self, sql, params=(), handle=None, batch_size=200):
        self.executed.append((sql, tuple(params)))
        await asyncio.sleep(0)
        script = self.scripts[sql]
        if script.error is not None:
            raise script.error
        stream = FakeStream(self, script, handle, batch_size)
        self.streams.append(stream)
        return stream

    async def cancel(self, handle):
        handle.request_cancel()
        self.cancelled.append(handle.seq)
        for stream in self.streams:
            if stream.handle is handle and not stream.script.ignore_cancel:
                stream.resume.set()
        return True

    def log(self, sql, duration=None, row_count=None, status="success", error_message=None):
        self.logged.append((sql, row_count, status))


def numbered(n):
    return [(i, f"row {i}") for i in range(n)]


@pytest.fixture
def settings():
    return EngineSettings(safety_cap=100, fetch_batch_size=10, cancel_timeout=1.0)


@pytest.fixture
def buffer():
    return ResultBuffer(max_rows=1000)


@pytest.fixture
def store(tmp_path):
    return Database(tmp_path / "termbench.db")


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "app.db"
    conn = sqlite3.connect(path)
    conn.executescript("""
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL,
            name TEXT NOT NULL,
            age INTEGER
        );
        CREATE TABLE orders (
            id INTEGER PRIMARY KEY,
            user_id INTEGER NOT NULL REFERENCES users(id),
            total NUMERIC
        );
        CREATE TABLE accounts (
            code TEXT NOT NULL UNIQUE,
            label TEXT
        );
        CREATE TABLE events (
            source TEXT,
            happened TEXT,
            note TEXT
        );
        CREATE TABLE numbers (
            n INTEGER PRIMARY KEY
        );
    """)
    conn.executemany(
        "INSERT INTO users (id, email, name, age) VALUES (?, ?, ?, ?)",
        [(5, "e@x.com", "Eve", 41), (6, "f@x.com", "Fay", None), (7, "a@x.com", "Ann", 30)],
    )
    conn.executemany("INSERT INTO orders (id, user_id, total) VALUES (?, ?, ?)",
                     [(1, 7, 12.5), (2, 5, 3)])
    conn.executemany("INSERT INTO accounts (code, label) VALUES (?, ?)",
                     [("A1", "first"), ("B2", "second")])
    conn.executemany("INSERT INTO events (source, happened, note) VALUES (?, ?, ?)",
                     [("web", "2024-01-01", "x"), ("cli", "2024-01-02", "y")])
    conn.executemany("INSERT INTO numbers (n) VALUES (?)", [(i,) for i in range(10)])
    conn.commit()
    conn.close()
    return path


@pytest_asyncio.fixture
async def sqlite_session(db_path, store):
    adapter = SQLiteAdapter()
    session = await Session.open(adapter, {"database": str(db_path)},
                                 connection_name="app", query_log=store)
    yield session
    await session.close()
