"""Export of the buffered window as delimited text, JSON records or XLSX."""

import csv
import io
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Union

from .cells import BOOLEAN, NULL, NUMBER

EXPORT_FORMATS = ("csv", "tsv", "json", "xlsx")


def _headers(buffer) -> List[str]:
    return [col.name for col in buffer.columns]


def _live_rows(buffer):
    # deleted rows no longer exist on the server
    return [row for row in buffer.rows() if not row.deleted]


def export_delimited(buffer, delimiter: str = ",", null_text: str = "NULL") -> str:
    out = io.StringIO()
    writer = csv.writer(out, delimiter=delimiter, lineterminator="\n")
    writer.writerow(_headers(buffer))
    for row in _live_rows(buffer):
        writer.writerow([cell.text(null_text) for cell in row.cells])
    return out.getvalue()


def export_csv(buffer, null_text: str = "NULL") -> str:
    return export_delimited(buffer, ",", null_text)


def export_tsv(buffer, null_text: str = "NULL") -> str:
    return export_delimited(buffer, "\t", null_text)


def _json_value(cell) -> Any:
    if cell.kind == NULL:
        return None
    if cell.kind == BOOLEAN:
        return bool(cell.value)
    if cell.kind == NUMBER and not isinstance(cell.value, Decimal):
        return cell.value
    # JSON cells are written as their canonical text
    return cell.text()


def export_json(buffer) -> str:
    """Rows as a JSON array of objects keyed by column name."""
    headers = _headers(buffer)
    data = [dict(zip(headers, (_json_value(c) for c in row.cells)))
            for row in _live_rows(buffer)]
    return json.dumps(data, indent=2, ensure_ascii=False)


def export_xlsx(buffer, null_text: str = "NULL") -> bytes:
    """Workbook bytes; requires openpyxl (pip install termbench[xlsx])."""
    import openpyxl

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Results"
    ws.append(_headers(buffer))
    for row in _live_rows(buffer):
        values = []
        for cell in row.cells:
            if cell.kind == NULL:
                values.append(None)
            elif cell.kind in (NUMBER, BOOLEAN):
                values.append(cell.value)
            else:
                values.append(cell.text(null_text))
        ws.append(values)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def export(buffer, fmt: str, null_text: str = "NULL") -> Union[str, bytes]:
    """Export payload for one of EXPORT_FORMATS."""
    if fmt == "csv":
        return export_csv(buffer, null_text)
    if fmt == "tsv":
        return export_tsv(buffer, null_text)
    if fmt == "json":
        return export_json(buffer)
    if fmt == "xlsx":
        return export_xlsx(buffer, null_text)
    raise ValueError(f"Unknown export format: {fmt}")


def write_export(path, payload: Union[str, bytes]) -> Path:
    path = Path(path)
    if isinstance(payload, bytes):
        path.write_bytes(payload)
    else:
        path.write_text(payload, encoding="utf-8")
    return path
