"""Tests for the streaming result buffer."""

import pytest

from termbench.engine.buffer import ResultBuffer
from termbench.engine.cells import Cell
from termbench.engine.models import ColumnDescriptor, IdentityState, Row
from termbench.errors import ResultSetError

COLUMNS = [ColumnDescriptor("id", "integer", 0), ColumnDescriptor("name", "text", 1)]


def rows(n, start=0):
    return [(i, f"name {i}") for i in range(start, start + n)]


class TestBegin:
    """begin() replaces the current result set."""

    def test_handles_increase(self) -> None:
        buffer = ResultBuffer()
        first = buffer.begin(COLUMNS, 10)
        buffer.append(rows(3))
        second = buffer.begin(COLUMNS, 10)
        assert second > first
        assert buffer.handle == second
        assert buffer.row_count == 0
        assert buffer.identity.status == IdentityState.UNRESOLVED

    def test_cap_bounded_by_max_rows(self) -> None:
        buffer = ResultBuffer(max_rows=5)
        buffer.begin(COLUMNS, 100)
        assert buffer.result_set.cap == 5

    def test_no_result_set(self) -> None:
        buffer = ResultBuffer()
        assert buffer.row_count == 0
        assert buffer.rows() == []
        assert not buffer.more_available
        with pytest.raises(ResultSetError):
            buffer.append(rows(1))


class TestAppend:
    """append() never grows past the cap."""

    @pytest.mark.parametrize("cap", [0, 1, 7])
    def test_cap_respected(self, cap) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, cap)
        kept = buffer.append(rows(10))
        assert kept == cap
        assert buffer.row_count == cap
        assert buffer.more_available
        assert buffer.result_set.cap_reached
        # further appends stay rejected
        assert buffer.append(rows(5, start=10)) == 0
        assert buffer.row_count == cap

    def test_exactly_cap_rows_is_complete(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 3)
        buffer.append(rows(3))
        buffer.mark_complete()
        assert not buffer.more_available
        assert buffer.result_set.exact

    def test_rows_become_cells_in_order(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(2))
        buffer.append(rows(2, start=2))
        assert [r.index for r in buffer.rows()] == [0, 1, 2, 3]
        assert buffer.row(3).cells == (Cell(3, "number"), Cell("name 3", "text"))
        assert buffer.row(0).cells[0].declared_type == "integer"

    def test_row_out_of_window(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(2))
        with pytest.raises(ResultSetError):
            buffer.row(2)


class TestReplaceRow:
    """replace_row() swaps reconciled cells in place."""

    def test_replace(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(3))
        new = buffer.replace_row(1, (1, "renamed"))
        assert new.index == 1
        assert buffer.row(1).cells[1].value == "renamed"
        assert buffer.row_count == 3

    def test_out_of_window(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(3))
        with pytest.raises(ResultSetError):
            buffer.replace_row(3, (3, "x"))
        with pytest.raises(ResultSetError):
            buffer.replace_row(-1, (3, "x"))

    def test_wrong_shape(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(1))
        with pytest.raises(ResultSetError):
            buffer.replace_row(0, (1,))

    def test_tombstone_hidden_from_find(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10)
        buffer.append(rows(3))
        assert buffer.find_rows([0], [Cell(2, "number")]) == [2]
        row = buffer.row(2)
        buffer.replace_row(2, Row(2, row.cells, deleted=True))
        assert buffer.find_rows([0], [Cell(2, "number")]) == []


class TestFetchMore:
    """fetch_more() continues a capped result set."""

    @staticmethod
    def source(total):
        data = rows(total)
        calls = []

        async def fetch(statement, params, offset, limit):
            calls.append((offset, limit))
            return data[offset:offset + limit]

        return fetch, calls

    @pytest.mark.asyncio
    async def test_appends_min_of_n_and_remaining(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 4, "SELECT id, name FROM t")
        buffer.append(rows(10))
        fetch, calls = self.source(10)

        assert await buffer.fetch_more(3, fetch) == 3
        assert buffer.row_count == 7
        assert buffer.more_available
        assert calls == [(4, 4)]

        assert await buffer.fetch_more(50, fetch) == 3
        assert buffer.row_count == 10
        assert not buffer.more_available
        assert buffer.result_set.exact
        assert [r.cells[0].value for r in buffer.rows()] == list(range(10))

    @pytest.mark.asyncio
    async def test_exact_remaining_clears_flag(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 2, "SELECT id, name FROM t")
        buffer.append(rows(5))
        fetch, _ = self.source(5)
        assert await buffer.fetch_more(3, fetch) == 3
        assert not buffer.more_available

    @pytest.mark.asyncio
    async def test_invalid_without_more_rows(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 10, "SELECT id, name FROM t")
        buffer.append(rows(2))
        fetch, calls = self.source(2)
        with pytest.raises(ResultSetError):
            await buffer.fetch_more(5, fetch)
        assert calls == []

    @pytest.mark.asyncio
    async def test_only_queries_can_continue(self) -> None:
        buffer = ResultBuffer()
        buffer.begin(COLUMNS, 1, "CALL produce_rows()")
        buffer.append(rows(3))
        fetch, _ = self.source(3)
        with pytest.raises(ResultSetError):
            await buffer.fetch_more(5, fetch)

    @pytest.mark.asyncio
    async def test_bounded_by_max_rows(self) -> None:
        buffer = ResultBuffer(max_rows=6)
        buffer.begin(COLUMNS, 4, "SELECT id, name FROM t")
        buffer.append(rows(20))
        fetch, _ = self.source(20)
        assert await buffer.fetch_more(10, fetch) == 2
        assert buffer.row_count == 6
        with pytest.raises(ResultSetError):
            await buffer.fetch_more(10, fetch)
