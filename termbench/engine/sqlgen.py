"""Statement generation scoped by an identity key.

Executed statements bind values as parameters in the adapter's placeholder
style. Templates and copy-as-SQL inline values as literals instead.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, List, Sequence, Tuple

from .cells import Cell, canonical_json


def escape_sql_value(value: Any) -> str:
    """Render a value as a SQL literal."""
    if isinstance(value, Cell):
        value = value.param()
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, (dict, list)):
        value = canonical_json(value)
    elif isinstance(value, (datetime, date, time)):
        value = value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


def format_sql_with_params(sql: str, params: Sequence[Any]) -> str:
    """Format SQL with parameter values substituted, for logging and copy."""
    params = list(params)
    out = []
    i = 0
    quote = None
    while i < len(sql):
        ch = sql[i]
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"', '`'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        if params and ch == "?":
            out.append(escape_sql_value(params.pop(0)))
            i += 1
            continue
        if params and sql.startswith("%s", i):
            out.append(escape_sql_value(params.pop(0)))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _where(adapter, key, values: Sequence[Cell], inline: bool) -> Tuple[str, List[Any]]:
    parts = []
    params = []
    for name, cell in zip(key.columns, values):
        col = adapter.quote_identifier(name)
        if cell.is_null:
            parts.append(f"{col} IS NULL")
        elif inline:
            parts.append(f"{col} = {escape_sql_value(cell)}")
        else:
            parts.append(f"{col} = {adapter.placeholder}")
            params.append(cell.param())
    return " AND ".join(parts), params


def _table(adapter, key) -> str:
    return adapter.qualify(key.relation.schema, key.relation.table)


def build_update(adapter, key, changes: Sequence[Tuple[str, Cell]],
                 identity_values: Sequence[Cell], inline: bool = False):
    """Single-row UPDATE of the changed columns. Returns (sql, params)."""
    set_parts = []
    params: List[Any] = []
    for name, cell in changes:
        col = adapter.quote_identifier(name)
        if inline:
            set_parts.append(f"{col} = {escape_sql_value(cell)}")
        else:
            set_parts.append(f"{col} = {adapter.placeholder}")
            params.append(cell.param())
    where, where_params = _where(adapter, key, identity_values, inline)
    sql = f"UPDATE {_table(adapter, key)} SET {', '.join(set_parts)} WHERE {where}"
    return sql, params + where_params


def build_delete(adapter, key, identity_values: Sequence[Cell], inline: bool = False):
    where, params = _where(adapter, key, identity_values, inline)
    return f"DELETE FROM {_table(adapter, key)} WHERE {where}", params


def build_select_by_identity(adapter, key, column_names: Sequence[str],
                             identity_values: Sequence[Cell]):
    """Re-select one row with the result set's column list and order."""
    cols = ", ".join(adapter.quote_identifier(name) for name in column_names)
    where, params = _where(adapter, key, identity_values, inline=False)
    return f"SELECT {cols} FROM {_table(adapter, key)} WHERE {where}", params


def build_insert(adapter, key, column_names: Sequence[str], cells: Sequence[Cell]) -> str:
    """INSERT template with the row's values inlined."""
    cols = ", ".join(adapter.quote_identifier(name) for name in column_names)
    values = ", ".join(escape_sql_value(cell) for cell in cells)
    return f"INSERT INTO {_table(adapter, key)} ({cols}) VALUES ({values})"
