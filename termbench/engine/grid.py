"""Grid view model: viewport, cursor, selection, search and column widths.

Everything here is synchronous and bounded by the buffered window. The
shell calls render() once per frame and draws the returned snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from rich.cells import cell_len, set_cell_size

from ..errors import ResultSetError, SessionBusy
from ..settings import EngineSettings
from .models import Selection

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


def fit_to_width(text: str, width: int) -> str:
    """Crop text to a terminal cell width, marking the cut with an ellipsis."""
    text = text.replace("\r\n", " ").replace("\n", " ").replace("\t", " ")
    if width <= 0:
        return ""
    if cell_len(text) <= width:
        return text
    if width == 1:
        return ELLIPSIS
    return set_cell_size(text, width - 1).rstrip() + ELLIPSIS


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


class SearchResult:
    """Lazy, restartable sequence of (row, column) matches.

    Only the rows buffered when the search was made are scanned. ``partial``
    tells the caller more rows exist on the server that were not searched.
    """

    def __init__(self, buffer, pattern: str, null_text: str = "NULL"):
        self.pattern = pattern
        self.handle = buffer.handle
        self.scanned_rows = buffer.row_count
        self.partial = buffer.more_available
        self._needle = pattern.lower()
        self._buffer = buffer
        self._null_text = null_text

    @property
    def full(self) -> bool:
        return not self.partial

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        if not self._needle or self._buffer.handle != self.handle:
            return
        for row in self._buffer.rows(0, self.scanned_rows):
            if row.deleted:
                continue
            for col, cell in enumerate(row.cells):
                if self._needle in cell.text(self._null_text).lower():
                    yield row.index, col

    def __repr__(self):
        return f"SearchResult({self.pattern!r}, partial={self.partial})"


@dataclass(frozen=True)
class GridColumn:
    ordinal: int
    name: str
    width: int
    is_identity: bool = False


@dataclass(frozen=True)
class GridRow:
    index: int
    cells: Tuple[str, ...]
    deleted: bool = False
    selected: bool = False


@dataclass(frozen=True)
class GridFrame:
    """Read-only render snapshot for one frame."""

    top_row: int
    left_col: int
    columns: Tuple[GridColumn, ...]
    rows: Tuple[GridRow, ...]
    cursor: Tuple[int, int]
    selection: Optional[Selection]
    matches: FrozenSet[Tuple[int, int]]
    current_match: Optional[Tuple[int, int]]
    row_count: int
    more_available: bool
    partial: bool
    stale: bool
    fetch_pending: bool


class GridViewModel:
    """Viewport and cursor over the result buffer, independent of its storage."""

    def __init__(self, buffer, request_more: Optional[Callable[[], object]] = None,
                 settings: Optional[EngineSettings] = None, height: int = 20, width: int = 8):
        self.buffer = buffer
        self.request_more = request_more
        self.settings = settings or EngineSettings()
        self.height = max(1, height)
        self.width = max(1, width)
        self.top_row = 0
        self.left_col = 0
        self.cursor_row = 0
        self.cursor_col = 0
        self.selection: Optional[Selection] = None
        self.search_result: Optional[SearchResult] = None
        self.current_match: Optional[Tuple[int, int]] = None
        self._handle = buffer.handle
        self._width_overrides: Dict[int, int] = {}
        self._fetch_pending = False
        self._fetch_pending_at = 0

    # ── Result set tracking ────────────────────────────────

    @property
    def row_count(self) -> int:
        return self.buffer.row_count

    @property
    def column_count(self) -> int:
        return len(self.buffer.columns)

    @property
    def fetch_pending(self) -> bool:
        return self._fetch_pending

    def sync(self) -> None:
        """Pick up buffer changes; a new result set resets the whole view."""
        if self.buffer.handle != self._handle:
            logger.debug("Result set changed (%s -> %s), resetting grid",
                         self._handle, self.buffer.handle)
            self._handle = self.buffer.handle
            self.top_row = self.left_col = 0
            self.cursor_row = self.cursor_col = 0
            self.selection = None
            self.search_result = None
            self.current_match = None
            self._width_overrides.clear()
            self._fetch_pending = False
            return
        if self._fetch_pending and (self.row_count != self._fetch_pending_at
                                    or not self.buffer.more_available):
            self._fetch_pending = False
        self._clamp_positions()

    def fetch_finished(self) -> None:
        """Allow another fetch request after a continuation failed or was cancelled."""
        self._fetch_pending = False

    def _request_more(self) -> bool:
        if self._fetch_pending or not self.buffer.more_available or self.request_more is None:
            return False
        self._fetch_pending = True
        self._fetch_pending_at = self.row_count
        try:
            self.request_more()
        except (SessionBusy, ResultSetError) as e:
            logger.debug("Fetch-more not started: %s", e)
            self._fetch_pending = False
            return False
        return True

    def _clamp_positions(self) -> None:
        rows, cols = self.row_count, self.column_count
        self.top_row = _clamp(self.top_row, 0, max(0, rows - self.height))
        self.left_col = _clamp(self.left_col, 0, max(0, cols - self.width))
        self.cursor_row = _clamp(self.cursor_row, 0, max(0, rows - 1))
        self.cursor_col = _clamp(self.cursor_col, 0, max(0, cols - 1))

    # ── Viewport and cursor ────────────────────────────────

    def resize(self, height: int, width: int) -> None:
        """Set the viewport size in rows and columns."""
        self.height = max(1, height)
        self.width = max(1, width)
        self.sync()
        self._follow_cursor()

    def scroll(self, delta_rows: int, delta_cols: int = 0) -> None:
        """Move the viewport; scrolling past the last buffered row asks for more rows."""
        self.sync()
        rows = self.row_count
        max_top = max(0, rows - self.height)
        wanted = self.top_row + delta_rows
        if delta_rows > 0 and wanted > max_top and self.buffer.more_available:
            self._request_more()
        self.top_row = _clamp(wanted, 0, max_top)
        self.left_col = _clamp(self.left_col + delta_cols, 0,
                               max(0, self.column_count - self.width))
        if rows:
            self.cursor_row = _clamp(self.cursor_row, self.top_row,
                                     min(rows, self.top_row + self.height) - 1)
        if self.column_count:
            self.cursor_col = _clamp(self.cursor_col, self.left_col,
                                     min(self.column_count, self.left_col + self.width) - 1)

    def _follow_cursor(self) -> None:
        if self.cursor_row < self.top_row:
            self.top_row = self.cursor_row
        elif self.cursor_row >= self.top_row + self.height:
            self.top_row = self.cursor_row - self.height + 1
        if self.cursor_col < self.left_col:
            self.left_col = self.cursor_col
        elif self.cursor_col >= self.left_col + self.width:
            self.left_col = self.cursor_col - self.width + 1
        self._clamp_positions()

    def move_cursor(self, delta_rows: int, delta_cols: int = 0) -> None:
        self.sync()
        wanted = self.cursor_row + delta_rows
        if delta_rows > 0 and wanted >= self.row_count and self.buffer.more_available:
            self._request_more()
        self.cursor_row = _clamp(wanted, 0, max(0, self.row_count - 1))
        self.cursor_col = _clamp(self.cursor_col + delta_cols, 0, max(0, self.column_count - 1))
        self._follow_cursor()

    def move_to(self, row: int, col: Optional[int] = None) -> None:
        self.sync()
        self.cursor_row = _clamp(row, 0, max(0, self.row_count - 1))
        if col is not None:
            self.cursor_col = _clamp(col, 0, max(0, self.column_count - 1))
        self._follow_cursor()

    def page_down(self) -> None:
        self.move_cursor(self.height)

    def page_up(self) -> None:
        self.move_cursor(-self.height)

    def go_top(self) -> None:
        self.move_to(0)

    def go_bottom(self) -> None:
        self.move_to(self.row_count - 1)

    # ── Selection ──────────────────────────────────────────

    def select(self, mode: str, anchor: Tuple[int, int],
               cursor: Optional[Tuple[int, int]] = None) -> Optional[Selection]:
        """Build a selection from two window-local (row, column) positions."""
        self.sync()
        if not self.row_count:
            self.selection = None
            return None
        cursor = cursor or anchor
        max_row, max_col = self.row_count - 1, max(0, self.column_count - 1)
        r1, c1 = _clamp(anchor[0], 0, max_row), _clamp(anchor[1], 0, max_col)
        r2, c2 = _clamp(cursor[0], 0, max_row), _clamp(cursor[1], 0, max_col)

        if mode == Selection.CELL:
            selection = Selection(Selection.CELL, top=r2, left=c2, bottom=r2, right=c2)
        elif mode == Selection.ROW:
            selection = Selection(Selection.ROW, rows=frozenset([r2]))
        elif mode == Selection.ROWS:
            selection = Selection(Selection.ROWS,
                                  rows=frozenset(range(min(r1, r2), max(r1, r2) + 1)))
        elif mode == Selection.RANGE:
            selection = Selection(Selection.RANGE, top=min(r1, r2), left=min(c1, c2),
                                  bottom=max(r1, r2), right=max(c1, c2))
        else:
            raise ValueError(f"Unknown selection mode: {mode}")
        self.selection = selection
        return selection

    def toggle_row(self, row: Optional[int] = None) -> Selection:
        """Add or remove one row from a multi-row selection."""
        self.sync()
        row = self.cursor_row if row is None else row
        if not 0 <= row < self.row_count:
            raise ResultSetError(f"Row {row} is outside the window")
        if self.selection is not None and self.selection.mode in (Selection.ROW, Selection.ROWS):
            rows = set(self.selection.rows)
        else:
            rows = set()
        rows ^= {row}
        self.selection = Selection(Selection.ROWS, rows=frozenset(rows)) if rows else None
        return self.selection

    def select_all(self) -> Optional[Selection]:
        self.sync()
        if not self.row_count:
            return None
        self.selection = Selection(Selection.ROWS, rows=frozenset(range(self.row_count)))
        return self.selection

    def clear_selection(self) -> None:
        self.selection = None

    def selected_rows(self) -> List[int]:
        """Rows the row actions apply to: the selection, else the cursor row."""
        self.sync()
        if self.selection is not None:
            return self.selection.row_indices
        return [self.cursor_row] if self.row_count else []

    def _selected_block(self) -> Tuple[List[int], List[int]]:
        if self.selection is None:
            return [self.cursor_row], [self.cursor_col]
        if self.selection.mode in (Selection.CELL, Selection.RANGE):
            return (list(range(self.selection.top, self.selection.bottom + 1)),
                    list(range(self.selection.left, self.selection.right + 1)))
        return self.selection.row_indices, list(range(self.column_count))

    def copy_selection(self, headers: bool = False) -> str:
        """Selected cells as tab-separated text."""
        self.sync()
        if not self.row_count:
            return ""
        rows, cols = self._selected_block()
        columns = self.buffer.columns
        null_text = self.settings.null_text
        lines = []
        if headers:
            lines.append("\t".join(columns[c].name for c in cols))
        for index in rows:
            row = self.buffer.row(index)
            lines.append("\t".join(row.cells[c].text(null_text) for c in cols))
        return "\n".join(lines)

    # ── Search ─────────────────────────────────────────────

    def search(self, pattern: str) -> SearchResult:
        """Case-insensitive substring search over the buffered rows.

        Never fetches more rows; check ``partial`` on the result.
        """
        self.sync()
        self.search_result = SearchResult(self.buffer, pattern, self.settings.null_text)
        self.current_match = None
        return self.search_result

    def _jump(self, forward: bool) -> Optional[Tuple[int, int]]:
        if self.search_result is None:
            return None
        self.sync()
        matches = list(self.search_result)
        if not matches:
            self.current_match = None
            return None
        here = (self.cursor_row, self.cursor_col)
        if forward:
            found = next((m for m in matches if m > here), matches[0])
        else:
            found = next((m for m in reversed(matches) if m < here), matches[-1])
        self.current_match = found
        self.move_to(*found)
        return found

    def next_match(self) -> Optional[Tuple[int, int]]:
        return self._jump(forward=True)

    def prev_match(self) -> Optional[Tuple[int, int]]:
        return self._jump(forward=False)

    def clear_search(self) -> None:
        self.search_result = None
        self.current_match = None

    # ── Column widths ──────────────────────────────────────

    def auto_width(self, col: int) -> int:
        """Widest rendered cell of a column in the buffered window, clamped."""
        column = self.buffer.columns[col]
        null_text = self.settings.null_text
        widest = cell_len(column.name)
        for row in self.buffer.rows():
            widest = max(widest, cell_len(row.cells[col].text(null_text)))
        return _clamp(widest, self.settings.min_column_width, self.settings.max_column_width)

    def column_width(self, col: int) -> int:
        if col in self._width_overrides:
            return self._width_overrides[col]
        return self.auto_width(col)

    def set_column_width(self, col: int, width: int) -> None:
        """Manual width, kept until the result set changes."""
        self.sync()
        if not 0 <= col < self.column_count:
            raise ResultSetError(f"Column {col} is outside the result set")
        self._width_overrides[col] = max(1, width)

    def reset_column_width(self, col: int) -> None:
        self._width_overrides.pop(col, None)

    def columns_fitting(self, chars: int, separator: int = 1) -> int:
        """How many columns from the left edge fit in a terminal width."""
        self.sync()
        used = 0
        count = 0
        for col in range(self.left_col, self.column_count):
            used += self.column_width(col) + (separator if count else 0)
            if used > chars and count:
                break
            count += 1
        return max(1, count)

    # ── Rendering ──────────────────────────────────────────

    def render(self) -> GridFrame:
        self.sync()
        rs = self.buffer.result_set
        last_col = min(self.column_count, self.left_col + self.width)
        visible_cols = range(self.left_col, last_col)
        columns = tuple(
            GridColumn(c, self.buffer.columns[c].name, self.column_width(c),
                       self.buffer.columns[c].is_identity)
            for c in visible_cols
        )
        null_text = self.settings.null_text
        rows = []
        for row in self.buffer.rows(self.top_row, self.top_row + self.height):
            rows.append(GridRow(
                index=row.index,
                cells=tuple(fit_to_width(row.cells[gc.ordinal].text(null_text), gc.width)
                            for gc in columns),
                deleted=row.deleted,
                selected=bool(self.selection and self.selection.mode in (Selection.ROW, Selection.ROWS)
                              and row.index in self.selection.rows),
            ))

        matches = frozenset()
        if self.search_result is not None:
            bottom = self.top_row + self.height
            matches = frozenset(
                (r, c) for r, c in self.search_result
                if self.top_row <= r < bottom and self.left_col <= c < last_col
            )

        return GridFrame(
            top_row=self.top_row,
            left_col=self.left_col,
            columns=columns,
            rows=tuple(rows),
            cursor=(self.cursor_row, self.cursor_col),
            selection=self.selection,
            matches=matches,
            current_match=self.current_match,
            row_count=self.row_count,
            more_available=self.buffer.more_available,
            partial=bool(rs and rs.partial),
            stale=bool(rs and rs.stale),
            fetch_pending=self._fetch_pending,
        )
