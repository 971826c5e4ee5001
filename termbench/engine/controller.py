"""Execution controller: lifecycle of the current query.

submit() never blocks. The statement runs as a task on the event loop;
its rows are fed to the result buffer and progress is published as
events the UI drains with poll_events() on every tick.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Iterator, Optional, Sequence

from ..adapters import strip_statement
from ..errors import ResultSetError, SessionBusy, SessionConnectionError
from ..settings import EngineSettings
from .models import (
    ACTIVE_STATES,
    Cancelled,
    Cancelling,
    ColumnDescriptor,
    Completed,
    Failed,
    Idle,
    IdentityState,
    QueryCancelled,
    QueryCompleted,
    QueryFailed,
    QueryHandle,
    QueryRequest,
    Running,
    RowsArrived,
    Summary,
)
from .session import StatementCancelled

logger = logging.getLogger(__name__)


class ExecutionController:
    """Owns the session while a query is active and feeds the buffer."""

    def __init__(self, session, buffer, settings: Optional[EngineSettings] = None,
                 resolver=None):
        self.session = session
        self.buffer = buffer
        self.settings = settings or EngineSettings()
        self.resolver = resolver
        self._seq = 0
        self._active: Optional[QueryRequest] = None
        self._handle: Optional[QueryHandle] = None
        self._started = 0.0
        self._owned_result = None  # (seq, result set handle) the active request writes to
        self._run_task: Optional[asyncio.Task] = None
        self._state = Idle()
        self._events = deque()
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks = set()

    # ── Observation ────────────────────────────────────────

    @property
    def state(self):
        return self._state

    @property
    def active_seq(self) -> Optional[int]:
        return self._active.seq if self._active else None

    @property
    def is_idle(self) -> bool:
        return not isinstance(self._state, ACTIVE_STATES)

    def poll_events(self) -> Iterator[Any]:
        """Drain pending events; each event is delivered once."""
        while self._events:
            yield self._events.popleft()

    async def wait_until_idle(self) -> None:
        while not self.is_idle:
            await self._idle.wait()

    def _set_state(self, state) -> None:
        logger.debug("Execution state %s -> %s", self._state.name, state.name)
        self._state = state
        if isinstance(state, ACTIVE_STATES):
            self._idle.clear()
        else:
            self._idle.set()

    def _is_current(self, request: QueryRequest) -> bool:
        return self._active is request and isinstance(self._state, ACTIVE_STATES)

    def _owns_buffer(self, request: QueryRequest) -> bool:
        return self._owned_result == (request.seq, self.buffer.handle)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Query task failed", exc_info=task.exception())

    def _activate(self, request: QueryRequest) -> QueryHandle:
        handle = QueryHandle(request.seq, request.statement)
        self._active = request
        self._handle = handle
        self._started = time.monotonic()
        self._owned_result = None
        self._set_state(Running(handle, self._started))
        return handle

    # ── Commands ───────────────────────────────────────────

    def submit(self, statement: str, params: Sequence[Any] = ()) -> int:
        """Start a query and return its sequence id.

        A query that is still running is cancelled and superseded.
        """
        if self._active is not None and not self.is_idle:
            self._supersede()
        self._seq += 1
        request = QueryRequest(strip_statement(statement), tuple(params or ()), self._seq)
        handle = self._activate(request)
        self._run_task = self._spawn(self._run(request, handle))
        return request.seq

    def _supersede(self) -> None:
        old = self._handle
        logger.debug("Query %d superseded", old.seq)
        old.request_cancel()
        if self._owns_buffer(self._active):
            # rows streamed so far stay visible until the next query begins
            self._orphan_result("query superseded")
        self._spawn(self.session.cancel(old))

    def cancel(self, seq: int) -> bool:
        """Request cancellation of the active query.

        Returns False (a no-op) if seq is not the running query.
        """
        if self._active is None or self._active.seq != seq:
            return False
        if not isinstance(self._state, Running):
            return False
        request, handle = self._active, self._handle
        handle.request_cancel()
        self._set_state(Cancelling(handle))
        self._spawn(self._await_cancel(request, handle, self._run_task))
        return True

    def fetch_more(self, n: Optional[int] = None) -> int:
        """Continue the current result set with up to n more rows.

        Only valid while the buffer has more rows and no query is active.
        Returns the sequence id of the continuation.
        """
        if not self.is_idle:
            raise SessionBusy("A query is running")
        if not self.buffer.more_available:
            raise ResultSetError("No more rows available")
        rs = self.buffer.result_set
        self._seq += 1
        request = QueryRequest(rs.statement or "", rs.params, self._seq)
        handle = self._activate(request)
        self._owned_result = (request.seq, rs.handle)
        self._run_task = self._spawn(self._run_fetch_more(request, handle, n or self.settings.fetch_more_rows))
        return request.seq

    async def close(self) -> None:
        """Cancel any running query and wait for background tasks."""
        if self._active is not None and isinstance(self._state, Running):
            self.cancel(self._active.seq)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── Completion ─────────────────────────────────────────

    def _summary(self, request: QueryRequest, **kwargs) -> Summary:
        rs = self.buffer.result_set if self._owns_buffer(request) else None
        return Summary(
            elapsed=time.monotonic() - self._started,
            row_count=len(rs.rows) if rs else 0,
            exact=bool(rs and rs.exact),
            partial=bool(rs and rs.partial),
            truncated=bool(rs and rs.more_available),
            **kwargs,
        )

    def _finish(self, request: QueryRequest, state, event) -> None:
        self._set_state(state)
        self._events.append(event)
        if isinstance(state, Failed):
            self.session.log(request.statement, status="error", error_message=state.error)
        else:
            self.session.log(request.statement, duration=state.summary.elapsed,
                             row_count=state.summary.row_count,
                             status="success" if isinstance(state, Completed) else "cancelled")

    def _orphan_result(self, reason: str) -> None:
        self.buffer.mark_partial()
        rs = self.buffer.result_set
        if rs.identity.status == IdentityState.UNRESOLVED:
            rs.identity = IdentityState.unavailable(reason)

    def _finish_cancelled(self, request: QueryRequest, acknowledged: bool = True) -> None:
        if self._owns_buffer(request):
            # rows already appended stay visible
            self._orphan_result("query cancelled")
        summary = self._summary(request)
        logger.debug("Query %d cancelled after %d rows", request.seq, summary.row_count)
        self._finish(request, Cancelled(summary, acknowledged),
                     QueryCancelled(request.seq, summary, acknowledged))

    def _finish_failed(self, request: QueryRequest, error, connection_lost: bool = False) -> None:
        if connection_lost:
            self.buffer.mark_stale()
        logger.error("Query %d failed: %s", request.seq, error)
        self._finish(request, Failed(str(error), connection_lost),
                     QueryFailed(request.seq, str(error), connection_lost))

    async def _await_cancel(self, request, handle, run_task) -> None:
        """Send the cancel and wait, bounded, for the query to acknowledge it."""
        async def acknowledged():
            await self.session.cancel(handle)
            if run_task is not None:
                await asyncio.shield(run_task)

        try:
            await asyncio.wait_for(acknowledged(), self.settings.cancel_timeout)
        except asyncio.TimeoutError:
            if self._is_current(request):
                self.session.flag_for_reconnect(
                    f"cancel not acknowledged within {self.settings.cancel_timeout}s")
                self._finish_cancelled(request, acknowledged=False)

    # ── Tasks ──────────────────────────────────────────────

    async def _discard(self, stream) -> None:
        if stream is None:
            return
        try:
            await stream.close(commit=False)
        except SessionConnectionError as e:
            logger.debug("Closing stream on a lost connection: %s", e)

    async def _run(self, request: QueryRequest, handle: QueryHandle) -> None:
        async with self.session.exclusive():
            if not self._is_current(request):
                return
            if handle.cancel_requested:
                self._finish_cancelled(request)
                return

            stream = None
            try:
                stream = await self.session.execute(
                    request.statement, request.params, handle,
                    self.settings.fetch_batch_size)
                if not self._is_current(request):
                    await stream.close(commit=False)
                    return

                if not stream.has_result_set:
                    await self._finish_command(request, stream)
                    return

                rs_handle = self.buffer.begin(
                    stream.columns, self.settings.safety_cap,
                    request.statement, request.params)
                self._owned_result = (request.seq, rs_handle)
                async for batch in stream:
                    if not self._is_current(request) or handle.cancel_requested:
                        break
                    kept = self.buffer.append(batch)
                    if kept:
                        self._events.append(RowsArrived(request.seq, kept, self.buffer.row_count))
                    if self.buffer.more_available:
                        break

                if not self._is_current(request):
                    logger.debug("Discarding late rows for query %d", request.seq)
                    await stream.close(commit=False)
                    return
                if handle.cancel_requested:
                    await stream.close(commit=False)
                    self._finish_cancelled(request)
                    return

                await stream.close(commit=True)
                self.buffer.mark_complete(exact=True)
                await self._resolve_identity(request, rs_handle)
                if not self._is_current(request):
                    return
                summary = self._summary(request)
                self._finish(request, Completed(summary), QueryCompleted(request.seq, summary))

            except StatementCancelled:
                await self._discard(stream)
                if self._is_current(request):
                    self._finish_cancelled(request)
            except SessionConnectionError as e:
                await self._discard(stream)
                if self._is_current(request):
                    self._finish_failed(request, e, connection_lost=True)
            except asyncio.CancelledError:
                await asyncio.shield(self._discard(stream))
                raise
            except Exception as e:
                await self._discard(stream)
                if not self._is_current(request):
                    return
                if handle.cancel_requested:
                    self._finish_cancelled(request)
                else:
                    self._finish_failed(request, e)

    async def _finish_command(self, request: QueryRequest, stream) -> None:
        """Statements without a result set show a one-row status result."""
        rowcount = stream.rowcount
        tag = f"{rowcount} rows" if rowcount is not None and rowcount >= 0 else "OK"
        await stream.close(commit=True)
        rs_handle = self.buffer.begin(
            [ColumnDescriptor("status", "text", 0)], max(1, self.settings.safety_cap))
        self._owned_result = (request.seq, rs_handle)
        self.buffer.append([(tag,)])
        self.buffer.mark_complete(exact=True)
        self.buffer.set_identity(rs_handle, IdentityState.unavailable("no result set"))
        summary = self._summary(request, command_tag=tag)
        self._finish(request, Completed(summary), QueryCompleted(request.seq, summary))

    async def _resolve_identity(self, request: QueryRequest, rs_handle: int) -> None:
        if self.resolver is None:
            self.buffer.set_identity(rs_handle, IdentityState.unavailable("editing disabled"))
            return
        identity, columns = await self.resolver.resolve(request.statement, self.buffer.columns)
        if self._is_current(request):
            self.buffer.set_identity(rs_handle, identity, columns)

    async def _run_fetch_more(self, request: QueryRequest, handle: QueryHandle, n: int) -> None:
        async def fetch(statement, params, offset, limit):
            sql = self.session.adapter.get_page_sql(statement, limit, offset)
            stream = await self.session.execute(sql, params, handle, self.settings.fetch_batch_size)
            try:
                rows = await stream.fetch(limit)
            except BaseException:
                await asyncio.shield(self._discard(stream))
                raise
            await stream.close(commit=True)
            if not self._is_current(request) or handle.cancel_requested:
                # leave the window and its more-available flag untouched
                raise StatementCancelled(f"fetch-more for query {request.seq} abandoned")
            return rows

        async with self.session.exclusive():
            if not self._is_current(request):
                return
            try:
                before = self.buffer.row_count
                appended = await self.buffer.fetch_more(n, fetch)
                if not self._is_current(request):
                    return
                if handle.cancel_requested:
                    self._finish_cancelled(request)
                    return
                if appended:
                    self._events.append(RowsArrived(request.seq, appended, before + appended))
                summary = self._summary(request)
                self._finish(request, Completed(summary), QueryCompleted(request.seq, summary))
            except StatementCancelled:
                if self._is_current(request):
                    self._finish_cancelled(request)
            except SessionConnectionError as e:
                if self._is_current(request):
                    self._finish_failed(request, e, connection_lost=True)
            except Exception as e:
                if self._is_current(request):
                    self._finish_failed(request, e)
