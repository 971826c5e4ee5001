"""Tests for exporting the buffered window."""

import io
import json

import openpyxl
import pytest

from termbench.engine.buffer import ResultBuffer
from termbench.engine.export import export, export_csv, export_json, export_tsv, write_export
from termbench.engine.models import ColumnDescriptor, Row


@pytest.fixture
def loaded():
    buffer = ResultBuffer()
    buffer.begin([ColumnDescriptor("id", "integer", 0),
                  ColumnDescriptor("name", "text", 1),
                  ColumnDescriptor("meta", "jsonb", 2)], 10)
    buffer.append([
        (1, "Ann, Jr.", {"b": 1, "a": True}),
        (2, None, None),
        (3, "gone", None),
    ])
    row = buffer.row(2)
    buffer.replace_row(2, Row(2, row.cells, deleted=True))
    return buffer


class TestDelimited:
    def test_csv(self, loaded) -> None:
        assert export_csv(loaded) == (
            'id,name,meta\n'
            '1,"Ann, Jr.","{""a"":true,""b"":1}"\n'
            '2,NULL,NULL\n'
        )

    def test_tsv_custom_null(self, loaded) -> None:
        assert export_tsv(loaded, null_text="") == (
            'id\tname\tmeta\n'
            '1\tAnn, Jr.\t"{""a"":true,""b"":1}"\n'
            '2\t\t\n'
        )


class TestJson:
    def test_records(self, loaded) -> None:
        data = json.loads(export_json(loaded))
        assert data == [
            {"id": 1, "name": "Ann, Jr.", "meta": '{"a":true,"b":1}'},
            {"id": 2, "name": None, "meta": None},
        ]


class TestXlsx:
    def test_workbook(self, loaded) -> None:
        payload = export(loaded, "xlsx")
        ws = openpyxl.load_workbook(io.BytesIO(payload)).active
        values = [list(r) for r in ws.iter_rows(values_only=True)]
        assert values == [
            ["id", "name", "meta"],
            [1, "Ann, Jr.", '{"a":true,"b":1}'],
            [2, None, None],
        ]


class TestDispatch:
    def test_unknown_format(self, loaded) -> None:
        with pytest.raises(ValueError):
            export(loaded, "parquet")

    def test_write(self, loaded, tmp_path) -> None:
        path = write_export(tmp_path / "out.csv", export(loaded, "csv"))
        assert path.read_text(encoding="utf-8").startswith("id,name,meta\n")
