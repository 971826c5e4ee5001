"""Connection session over a DB-API connection.

Every driver call runs on one dedicated worker thread, so the event loop
is never blocked and the connection is only touched from a single thread.
Cancellation is the exception: it is issued from the default executor
while the worker thread is blocked inside the statement.
"""

import asyncio
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Sequence, Tuple

from ..errors import SessionConnectionError, TermbenchError
from .models import ColumnDescriptor, QueryHandle, RelationMetadata

logger = logging.getLogger(__name__)


class StatementCancelled(TermbenchError):
    """The server acknowledged a cancel request."""


def split_relation(relation: str) -> Tuple[Optional[str], str]:
    """Split "schema.table" into (schema, table)."""
    if "." in relation:
        schema, table = relation.split(".", 1)
        return schema, table
    return None, relation


class RowStream:
    """Batches of raw rows from one executed statement."""

    def __init__(self, session, cursor, handle, columns, rowcount, batch_size):
        self.session = session
        self.handle = handle
        self.columns = columns
        self.rowcount = rowcount
        self.batch_size = batch_size
        self._cursor = cursor
        self._closed = False

    @property
    def has_result_set(self) -> bool:
        return bool(self.columns)

    def __aiter__(self):
        return self

    async def __anext__(self) -> List[tuple]:
        if self._closed or not self.has_result_set:
            raise StopAsyncIteration
        batch = await self.session._call(self._cursor.fetchmany, self.batch_size)
        if not batch:
            raise StopAsyncIteration
        return [tuple(row) for row in batch]

    async def fetch(self, n: int) -> List[tuple]:
        """Fetch up to n rows, fewer only when the statement is exhausted."""
        rows = []
        while len(rows) < n:
            batch = await self.session._call(
                self._cursor.fetchmany, min(self.batch_size, n - len(rows)))
            if not batch:
                break
            rows.extend(tuple(row) for row in batch)
        return rows

    async def close(self, commit: bool = True) -> None:
        """Close the cursor and end the implicit read transaction."""
        if self._closed:
            return
        self._closed = True
        await self.session._finish_statement(self._cursor, self.handle, commit)


class Session:
    """Live connection capability borrowed by the engine."""

    def __init__(self, adapter, conn, conn_info=None, connection_name=None, query_log=None):
        self.adapter = adapter
        self.conn_info = conn_info or {}
        self.connection_name = connection_name
        self.query_log = query_log
        self.needs_reconnect = False
        self._conn = conn
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="termbench-session")
        self._lock = asyncio.Lock()
        self._active = None  # (handle, cursor) while a statement is open

    @classmethod
    async def open(cls, adapter, conn_info, connection_name=None, query_log=None):
        """Connect on the session's worker thread."""
        from ..adapters import connect_from_info

        session = cls(adapter, None, conn_info, connection_name, query_log)
        try:
            session._conn = await session._call(connect_from_info, adapter, conn_info)
        except Exception:
            session._executor.shutdown(wait=False)
            raise
        return session

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def exclusive(self):
        """Lock held for the whole of a query or a write transaction."""
        return self._lock

    def flag_for_reconnect(self, reason: str) -> None:
        if not self.needs_reconnect:
            logger.warning("Session %s flagged for reconnect: %s",
                           self.connection_name or "", reason)
        self.needs_reconnect = True

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except TermbenchError:
            raise
        except Exception as e:
            if self._conn is not None and self.adapter.is_disconnect(e, self._conn):
                self.flag_for_reconnect(str(e))
                raise SessionConnectionError(str(e)) from e
            if self.adapter.is_cancellation(e):
                raise StatementCancelled(str(e)) from e
            raise

    # ── Reads ──────────────────────────────────────────────

    def _describe(self, description) -> List[ColumnDescriptor]:
        columns = []
        for ordinal, col in enumerate(description or ()):
            null_ok = col[6] if len(col) > 6 else None
            columns.append(ColumnDescriptor(
                name=col[0],
                declared_type=self.adapter.describe_type(col[1]),
                ordinal=ordinal,
                nullable=null_ok is not False,
            ))
        return columns

    def _open_cursor(self, sql, params, handle):
        cursor = self._conn.cursor()
        self._active = (handle, cursor)
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
        except Exception:
            self._active = None
            cursor.close()
            raise
        return cursor, cursor.description, cursor.rowcount

    async def execute(self, sql: str, params: Sequence[Any] = (),
                      handle: Optional[QueryHandle] = None,
                      batch_size: int = 200) -> RowStream:
        """Execute a statement and return a stream of its rows.

        The caller must hold exclusive() and close the stream.
        """
        if self._conn is None:
            raise SessionConnectionError("Not connected")
        try:
            cursor, description, rowcount = await self._call(
                self._open_cursor, sql, tuple(params or ()), handle)
        except (SessionConnectionError, asyncio.CancelledError):
            raise
        except Exception:
            await self._rollback_quietly()
            raise
        return RowStream(self, cursor, handle, self._describe(description),
                         rowcount, batch_size)

    def _close_cursor(self, cursor, commit):
        self._active = None
        try:
            cursor.close()
        finally:
            if commit:
                self._conn.commit()
            else:
                self._conn.rollback()

    async def _finish_statement(self, cursor, handle, commit):
        try:
            await self._call(self._close_cursor, cursor, commit)
        except SessionConnectionError:
            raise
        except Exception as e:
            logger.warning("Closing statement %s failed: %s", handle, e)

    async def cancel(self, handle: QueryHandle) -> bool:
        """Request the server abandon the statement for handle.

        Returns True if a cancel was sent to the server. A handle that has not
        started executing yet is only flagged.
        """
        handle.request_cancel()
        active = self._active
        if active is None or active[0] is not handle:
            return False
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, self.adapter.cancel, self._conn, active[1], self.conn_info)
        except Exception as e:
            logger.warning("Cancel request for %s failed: %s", handle, e)
            return False

    async def metadata(self, relation: str) -> RelationMetadata:
        """Columns, primary key and unique constraints for a table."""
        schema, table = split_relation(relation)
        schema = self.adapter.normalize_identifier(schema) if schema else None
        table = self.adapter.normalize_identifier(table)
        return await self._call(self.adapter.get_relation_metadata, self._conn, schema, table)

    # ── Writes ─────────────────────────────────────────────

    def _run(self, sql, params):
        cursor = self._conn.cursor()
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            if cursor.description:
                return cursor.rowcount, [tuple(r) for r in cursor.fetchall()]
            return cursor.rowcount, None
        finally:
            cursor.close()

    async def run(self, sql: str, params: Sequence[Any] = ()) -> Tuple[int, Optional[List[tuple]]]:
        """Execute one statement inside the current transaction.

        Returns (rowcount, rows or None).
        """
        return await self._call(self._run, sql, tuple(params or ()))

    async def _rollback_quietly(self):
        try:
            await self._call(self._conn.rollback)
        except Exception as e:
            logger.warning("Rollback failed: %s", e)

    @asynccontextmanager
    async def transaction(self):
        """Exclusive explicit transaction; commits on success, rolls back otherwise."""
        async with self._lock:
            if self._conn is None:
                raise SessionConnectionError("Not connected")
            try:
                yield self
            except BaseException:
                await self._rollback_quietly()
                raise
            await self._call(self._conn.commit)

    # ── Housekeeping ───────────────────────────────────────

    def log(self, sql, duration=None, row_count=None, status="success", error_message=None):
        """Append to the local query log, if one was supplied."""
        if self.query_log is None:
            return
        try:
            self.query_log.log_query(self.connection_name, sql, duration,
                                     row_count, status, error_message)
        except sqlite3.Error as e:
            logger.warning("Failed to log query: %s", e)

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            try:
                await asyncio.get_running_loop().run_in_executor(self._executor, conn.close)
            except Exception as e:
                logger.warning("Closing connection failed: %s", e)
        self._executor.shutdown(wait=False)
