"""Write-back of edited cells and row actions."""

import logging
import time
from typing import Any, Iterable, List, Optional, Sequence

from ..errors import (
    ConsistencyError,
    ConstraintViolation,
    NotEditable,
    NullNotConfirmed,
    ResultSetError,
    SessionConnectionError,
    TermbenchError,
    TypeCoercionError,
    WriteConflict,
)
from .cells import coerce
from .models import EditIntent, IdentityKey, Row
from .sqlgen import (
    build_delete,
    build_insert,
    build_select_by_identity,
    build_update,
    format_sql_with_params,
)

logger = logging.getLogger(__name__)


class WriteBackEngine:
    """Turns edit intents into scoped statements and reconciles the buffer."""

    def __init__(self, session, buffer, controller=None):
        self.session = session
        self.buffer = buffer
        self.controller = controller

    @property
    def adapter(self):
        return self.session.adapter

    def _identity(self) -> IdentityKey:
        rs = self.buffer.result_set
        if rs is None:
            raise NotEditable("No result set")
        if not rs.identity.is_resolved:
            raise NotEditable(f"Rows cannot be edited: {rs.identity.reason or 'identity unresolved'}")
        if rs.stale:
            raise NotEditable("Result set is stale; re-run the query")
        if self.session.needs_reconnect:
            raise NotEditable("Connection lost; reconnect and re-run the query")
        return rs.identity.key

    def is_editable(self) -> bool:
        try:
            self._identity()
        except NotEditable:
            return False
        return True

    def _live_rows(self, indices: Iterable[int]) -> List[Row]:
        rows = []
        for index in sorted(set(indices)):
            row = self.buffer.row(index)
            if not row.deleted:
                rows.append(row)
        return rows

    # ── Inline edits ───────────────────────────────────────

    def begin_edit(self, row_index: int, column_index: int, proposed: Any,
                   confirm_null: bool = False) -> EditIntent:
        """Validate a proposed cell value and capture an edit intent."""
        key = self._identity()
        row = self.buffer.row(row_index)
        if row.deleted:
            raise NotEditable(f"Row {row_index} was deleted")
        columns = self.buffer.columns
        if not 0 <= column_index < len(columns):
            raise ResultSetError(f"Column {column_index} is outside the result set")
        column = columns[column_index]
        if column.is_identity:
            raise NotEditable(f"Column {column.name} is part of the row identity")

        try:
            new = coerce(proposed, column.declared_type)
        except TypeCoercionError as e:
            raise TypeCoercionError(str(e), column=column.name, value=proposed)
        if new.is_null and not column.nullable and not confirm_null:
            raise NullNotConfirmed(f"Column {column.name} is NOT NULL",
                                   column=column.name, value=proposed)

        return EditIntent(
            result_set=self.buffer.handle,
            row_index=row_index,
            column=column,
            identity_values=key.values(row),
            old=row.cells[column_index],
            new=new,
        )

    def _locate(self, key: IdentityKey, identity_values) -> int:
        matches = self.buffer.find_rows(key.ordinals, identity_values)
        if len(matches) != 1:
            raise ConsistencyError(
                f"{len(matches)} buffered rows match identity {[c.text() for c in identity_values]}")
        return matches[0]

    async def _execute(self, sql: str, params: Sequence[Any]):
        try:
            return await self.session.run(sql, params)
        except TermbenchError:
            raise
        except Exception as e:
            raise ConstraintViolation(str(e)) from e

    def _log(self, sql, params, started, row_count=None, error=None):
        self.session.log(format_sql_with_params(sql, params),
                         duration=time.monotonic() - started, row_count=row_count,
                         status="error" if error else "success",
                         error_message=str(error) if error else None)

    async def commit(self, intent: EditIntent) -> Row:
        """Apply an edit intent in a transaction and reconcile the buffered row.

        The UPDATE is scoped by the identity values captured at edit time; the
        row is then re-selected to pick up defaults and trigger changes.
        """
        if self.controller is not None:
            await self.controller.wait_until_idle()
        if self.buffer.handle != intent.result_set:
            raise ConsistencyError("Result set was replaced before the edit was committed")
        key = self._identity()
        self._locate(key, intent.identity_values)
        if intent.is_noop:
            return self.buffer.row(intent.row_index)

        update_sql, update_params = build_update(
            self.adapter, key, [(intent.column.name, intent.new)], intent.identity_values)
        select_sql, select_params = build_select_by_identity(
            self.adapter, key, [c.name for c in self.buffer.columns], intent.identity_values)

        started = time.monotonic()
        try:
            async with self.session.transaction():
                updated, _ = await self._execute(update_sql, update_params)
                if updated is not None and updated > 1:
                    raise WriteConflict(f"UPDATE matched {updated} rows", matched=updated)
                _, rows = await self._execute(select_sql, select_params)
                rows = rows or []
                if len(rows) != 1:
                    raise WriteConflict(
                        f"Row no longer uniquely exists ({len(rows)} rows match)",
                        matched=len(rows))
        except WriteConflict as e:
            self.buffer.mark_stale()
            logger.warning("Write conflict on %s: %s", key.relation.qualified_name, e)
            self._log(update_sql, update_params, started, error=e)
            raise
        except SessionConnectionError as e:
            self.buffer.mark_stale()
            logger.error("Connection lost writing to %s: %s", key.relation.qualified_name, e)
            self._log(update_sql, update_params, started, error=e)
            raise
        except TermbenchError as e:
            logger.error("Write-back to %s failed: %s", key.relation.qualified_name, e)
            self._log(update_sql, update_params, started, error=e)
            raise
        except Exception as e:
            # commit itself can be rejected (deferred constraints)
            self._log(update_sql, update_params, started, error=e)
            raise ConstraintViolation(str(e)) from e

        self._log(update_sql, update_params, started, row_count=1)
        index = self._locate(key, intent.identity_values)
        return self.buffer.replace_row(index, rows[0])

    # ── Row actions ────────────────────────────────────────

    async def delete_rows(self, indices: Iterable[int]) -> int:
        """Delete rows on the server in one transaction; returns the count.

        Deleted rows stay in the window as tombstones so indices are stable.
        """
        if self.controller is not None:
            await self.controller.wait_until_idle()
        key = self._identity()
        targets = [key.values(row) for row in self._live_rows(indices)]
        if not targets:
            return 0

        statements = [build_delete(self.adapter, key, values) for values in targets]
        started = time.monotonic()
        try:
            async with self.session.transaction():
                for sql, params in statements:
                    deleted, _ = await self._execute(sql, params)
                    if deleted is not None and deleted >= 0 and deleted != 1:
                        raise WriteConflict(
                            f"DELETE matched {deleted} rows", matched=deleted)
        except WriteConflict as e:
            self.buffer.mark_stale()
            logger.warning("Write conflict on %s: %s", key.relation.qualified_name, e)
            self._log(*statements[0], started, error=e)
            raise
        except SessionConnectionError as e:
            self.buffer.mark_stale()
            logger.error("Connection lost deleting from %s: %s", key.relation.qualified_name, e)
            self._log(*statements[0], started, error=e)
            raise
        except TermbenchError as e:
            self._log(*statements[0], started, error=e)
            raise
        except Exception as e:
            self._log(*statements[0], started, error=e)
            raise ConstraintViolation(str(e)) from e

        for (sql, params), values in zip(statements, targets):
            self._log(sql, params, started, row_count=1)
            index = self._locate(key, values)
            row = self.buffer.row(index)
            self.buffer.replace_row(index, Row(index, row.cells, deleted=True))
        return len(targets)

    def generate_update_sql(self, indices: Iterable[int]) -> str:
        """UPDATE template per row, setting every non-key column to its current value."""
        key = self._identity()
        statements = []
        for row in self._live_rows(indices):
            changes = [(col.name, row.cells[col.ordinal])
                       for col in self.buffer.columns if col.ordinal not in key.ordinals]
            if not changes:
                continue
            sql, _ = build_update(self.adapter, key, changes, key.values(row), inline=True)
            statements.append(sql + ";")
        return "\n".join(statements)

    def generate_delete_sql(self, indices: Iterable[int]) -> str:
        key = self._identity()
        return "\n".join(
            build_delete(self.adapter, key, key.values(row), inline=True)[0] + ";"
            for row in self._live_rows(indices))

    def generate_insert_sql(self, indices: Iterable[int]) -> str:
        key = self._identity()
        names = [col.name for col in self.buffer.columns]
        return "\n".join(
            build_insert(self.adapter, key, names, row.cells) + ";"
            for row in self._live_rows(indices))

    def copy_as_sql(self, indices: Iterable[int], kind: Optional[str] = "insert") -> str:
        """Rows as SQL text for the clipboard; never executed."""
        generators = {
            "insert": self.generate_insert_sql,
            "update": self.generate_update_sql,
            "delete": self.generate_delete_sql,
        }
        if kind not in generators:
            raise ValueError(f"Unknown statement kind: {kind}")
        return generators[kind](indices)
