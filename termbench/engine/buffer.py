"""Bounded, windowed store of result rows."""

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from ..adapters import returns_rows
from ..errors import ResultSetError
from .cells import Cell
from .models import ColumnDescriptor, IdentityState, Row

logger = logging.getLogger(__name__)

# fetch(statement, params, offset, limit) -> rows
Fetcher = Callable[[str, Tuple[Any, ...], int, int], Awaitable[List[tuple]]]


class ResultSet:
    """Columns plus the row window for one executed statement."""

    def __init__(self, handle: int, columns: Sequence[ColumnDescriptor], cap: int,
                 statement: Optional[str] = None, params: Tuple[Any, ...] = ()):
        self.handle = handle
        self.columns: Tuple[ColumnDescriptor, ...] = tuple(columns)
        self.rows: List[Row] = []
        self.cap = cap
        self.statement = statement
        self.params = tuple(params)
        self.more_available = False
        self.exact = False
        self.partial = False
        self.stale = False
        self.identity = IdentityState.unresolved()

    @property
    def cap_reached(self) -> bool:
        """Sticky safety-cap advisory."""
        return self.more_available and len(self.rows) >= self.cap


class ResultBuffer:
    """Holds the current result set; one slot, replaced by each begin()."""

    def __init__(self, max_rows: int = 100000):
        self.max_rows = max_rows
        self._current: Optional[ResultSet] = None
        self._next_handle = 0

    # ── Read view ──────────────────────────────────────────

    @property
    def result_set(self) -> Optional[ResultSet]:
        return self._current

    @property
    def handle(self) -> Optional[int]:
        return self._current.handle if self._current else None

    @property
    def columns(self) -> Tuple[ColumnDescriptor, ...]:
        return self._current.columns if self._current else ()

    @property
    def row_count(self) -> int:
        return len(self._current.rows) if self._current else 0

    @property
    def more_available(self) -> bool:
        return bool(self._current and self._current.more_available)

    @property
    def identity(self) -> IdentityState:
        if self._current is None:
            return IdentityState.unavailable("no result set")
        return self._current.identity

    def __len__(self):
        return self.row_count

    def row(self, index: int) -> Row:
        rs = self._require()
        if not 0 <= index < len(rs.rows):
            raise ResultSetError(f"Row {index} is outside the window (0-{len(rs.rows) - 1})")
        return rs.rows[index]

    def rows(self, start: int = 0, stop: Optional[int] = None) -> List[Row]:
        if self._current is None:
            return []
        return self._current.rows[start:stop]

    def _require(self) -> ResultSet:
        if self._current is None:
            raise ResultSetError("No result set")
        return self._current

    # ── Writes (execution controller and reconciliation only) ──

    def begin(self, columns: Sequence[ColumnDescriptor], cap: int,
              statement: Optional[str] = None, params: Tuple[Any, ...] = ()) -> int:
        """Start a new result set, replacing the previous one."""
        self._next_handle += 1
        cap = max(0, min(cap, self.max_rows))
        self._current = ResultSet(self._next_handle, columns, cap, statement, params)
        logger.debug("Result set %d started: %d columns, cap %d",
                     self._next_handle, len(self._current.columns), cap)
        return self._next_handle

    def _make_row(self, index: int, values) -> Row:
        if isinstance(values, Row):
            return Row(index, values.cells, values.deleted)
        columns = self._current.columns
        cells = tuple(
            v if isinstance(v, Cell) else Cell.from_db(
                v, columns[i].declared_type if i < len(columns) else "")
            for i, v in enumerate(values)
        )
        return Row(index, cells)

    def append(self, rows: Iterable[Any]) -> int:
        """Add rows to the window; returns the number kept.

        Rows past the cap are dropped and the more-available flag is set.
        """
        rs = self._require()
        kept = 0
        for values in rows:
            if len(rs.rows) >= rs.cap:
                if not rs.more_available:
                    logger.debug("Result set %d reached its cap of %d rows", rs.handle, rs.cap)
                rs.more_available = True
                break
            rs.rows.append(self._make_row(len(rs.rows), values))
            kept += 1
        return kept

    def replace_row(self, index: int, new_row) -> Row:
        """Swap in reconciled cells for one row."""
        rs = self._require()
        if not 0 <= index < len(rs.rows):
            raise ResultSetError(f"Row {index} is outside the window (0-{len(rs.rows) - 1})")
        row = self._make_row(index, new_row)
        if len(row.cells) != len(rs.columns):
            raise ResultSetError(
                f"Row has {len(row.cells)} cells, result set has {len(rs.columns)} columns")
        rs.rows[index] = row
        return row

    def find_rows(self, ordinals: Sequence[int], values: Sequence[Cell]) -> List[int]:
        """Indices of live rows whose cells at ordinals equal values."""
        if self._current is None:
            return []
        wanted = tuple(values)
        return [
            row.index for row in self._current.rows
            if not row.deleted and tuple(row.cells[i] for i in ordinals) == wanted
        ]

    def mark_complete(self, exact: bool = True) -> None:
        if self._current is not None:
            self._current.exact = exact and not self._current.more_available

    def mark_partial(self) -> None:
        if self._current is not None:
            self._current.partial = True
            self._current.exact = False

    def mark_stale(self) -> None:
        if self._current is not None:
            self._current.stale = True

    def set_identity(self, handle: int, identity: IdentityState,
                     columns: Optional[Sequence[ColumnDescriptor]] = None) -> bool:
        """Attach an identity resolution to the result set it was made for."""
        rs = self._current
        if rs is None or rs.handle != handle:
            return False
        rs.identity = identity
        if columns is not None:
            rs.columns = tuple(columns)
        return True

    async def fetch_more(self, n: int, fetch: Fetcher) -> int:
        """Append the next n rows through a continuation of the statement.

        Returns the number of rows appended. Only valid while more rows are
        available; the caller guarantees no query is active.
        """
        rs = self._require()
        if not rs.more_available:
            raise ResultSetError("No more rows available")
        if not rs.statement or not returns_rows(rs.statement):
            raise ResultSetError("Statement cannot be continued")
        room = self.max_rows - len(rs.rows)
        if room <= 0:
            raise ResultSetError(f"Safety cap of {self.max_rows} rows reached")
        n = max(0, min(n, room))
        if n == 0:
            return 0

        # tombstoned rows no longer exist on the server
        offset = sum(1 for row in rs.rows if not row.deleted)
        fetched = await fetch(rs.statement, rs.params, offset, n + 1)
        if self._current is not rs:
            logger.debug("Result set %d replaced during fetch-more; dropping rows", rs.handle)
            return 0

        rs.cap = max(rs.cap, len(rs.rows) + n)
        appended = self.append(fetched[:n])
        rs.more_available = len(fetched) > n
        if not rs.more_available and not rs.partial:
            rs.exact = True
        return appended
