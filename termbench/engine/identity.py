"""Row identity resolution for single-table result sets."""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from ..adapters import strip_statement
from ..errors import SessionConnectionError
from .models import ColumnDescriptor, IdentityKey, IdentityState

logger = logging.getLogger(__name__)

_JOIN_KEYWORDS = (' JOIN ', ' INNER JOIN ', ' LEFT JOIN ', ' RIGHT JOIN ',
                  ' OUTER JOIN ', ' CROSS JOIN ', ' NATURAL JOIN ')
_SET_KEYWORDS = (' UNION ', ' INTERSECT ', ' EXCEPT ', ' MINUS ')
_AGGREGATE = re.compile(r'\b(COUNT|SUM|AVG|MIN|MAX|GROUP_CONCAT|STRING_AGG|ARRAY_AGG)\s*\(',
                        re.IGNORECASE)


def parse_single_table_select(sql: str) -> Tuple[Optional[str], Optional[str]]:
    """Parse SQL to detect a single-table SELECT. Returns (schema, table) or (None, None).

    Quotes around identifiers are kept so the adapter can tell quoted names
    from names the server folds.
    """
    sql_clean = strip_statement(sql)
    sql_upper = ' '.join(sql_clean.upper().split())

    if not sql_upper.startswith('SELECT '):
        return None, None
    if sql_upper.startswith('SELECT DISTINCT '):
        return None, None

    for kw in _JOIN_KEYWORDS + _SET_KEYWORDS:
        if kw in sql_upper:
            return None, None
    if ' GROUP BY ' in sql_upper or ' HAVING ' in sql_upper:
        return None, None
    if _AGGREGATE.search(sql_clean):
        return None, None

    from_pos = sql_upper.find(' FROM ')
    if from_pos == -1:
        return None, None
    # subqueries anywhere
    if sql_upper.count('SELECT ') > 1:
        return None, None

    after_from = sql_upper[from_pos + 6:].lstrip()
    if after_from.startswith('('):
        return None, None

    from_match = re.search(
        r'\bFROM\s+(["`\w]+(?:\.["`\w]+)?)\s*(?:AS\s+\w+|\w+)?'
        r'(?:\s+WHERE|\s+ORDER|\s+LIMIT|\s+FETCH|\s+OFFSET|\s*$)',
        sql_clean, re.IGNORECASE
    )
    if not from_match:
        return None, None

    table_ref = from_match.group(1)

    end_pos = len(sql_upper)
    for kw in (' WHERE ', ' ORDER ', ' LIMIT ', ' FETCH ', ' OFFSET '):
        pos = sql_upper.find(kw, from_pos)
        if pos > 0:
            end_pos = min(end_pos, pos)
    from_clause = sql_upper[from_pos + 6:end_pos]
    if ',' in from_clause:
        return None, None

    if '.' in table_ref:
        schema, table = table_ref.split('.', 1)
        return schema.strip("'"), table.strip("'")
    return None, table_ref.strip("'")


class IdentityResolver:
    """Decides whether rows of a result set map back to unique server rows.

    Tried in order: the table's primary key, its only unique constraint,
    then a configured override for the table. Every result column must be a
    plain column of that table so a row can be re-selected in the same shape.
    """

    def __init__(self, session, overrides: Optional[Dict[str, List[str]]] = None):
        self.session = session
        self.overrides = {k.lower(): list(v) for k, v in (overrides or {}).items()}

    def _override_for(self, schema, table) -> Optional[List[str]]:
        bare = table.strip('"`').lower()
        if schema:
            qualified = schema.strip('"`').lower() + "." + bare
            if qualified in self.overrides:
                return self.overrides[qualified]
        return self.overrides.get(bare)

    async def resolve(self, statement: str,
                      columns: Sequence[ColumnDescriptor]
                      ) -> Tuple[IdentityState, Tuple[ColumnDescriptor, ...]]:
        """Return the identity state and the columns enriched from metadata."""
        columns = tuple(columns)
        schema, table = parse_single_table_select(statement)
        if not table:
            return IdentityState.unavailable("not a single-table query"), columns

        relation = f"{schema}.{table}" if schema else table
        try:
            meta = await self.session.metadata(relation)
        except SessionConnectionError:
            raise
        except Exception as e:
            logger.warning("Metadata lookup for %s failed: %s", relation, e)
            return IdentityState.unavailable(f"no metadata for {relation}"), columns

        if not meta.columns:
            return IdentityState.unavailable(f"unknown table {relation}"), columns

        catalog = {name.lower(): name for name in meta.columns}
        result_names = [c.name.lower() for c in columns]
        if len(set(result_names)) != len(result_names):
            return IdentityState.unavailable("duplicate result columns"), columns
        if not all(name in catalog for name in result_names):
            return IdentityState.unavailable("result has computed columns"), columns

        enriched = []
        for col in columns:
            declared, nullable = meta.columns[catalog[col.name.lower()]]
            enriched.append(ColumnDescriptor(
                name=col.name,
                declared_type=col.declared_type or (declared or "").lower(),
                ordinal=col.ordinal,
                nullable=nullable,
            ))
        columns = tuple(enriched)

        def ordinals_of(key_columns):
            try:
                return tuple(result_names.index(c.lower()) for c in key_columns)
            except ValueError:
                return None

        candidates = []
        if meta.primary_key:
            candidates.append(("primary_key", meta.primary_key))
        if len(meta.unique_constraints) == 1:
            unique = meta.unique_constraints[0]
            if not any(meta.columns.get(c, ("", True))[1] for c in unique):
                candidates.append(("unique", unique))
        override = self._override_for(schema, table)
        if override:
            candidates.append(("override", tuple(override)))

        for source, key_columns in candidates:
            ordinals = ordinals_of(key_columns)
            if ordinals is None:
                logger.debug("%s key %s of %s not in result", source, key_columns, relation)
                continue
            key = IdentityKey(
                relation=meta,
                columns=tuple(catalog[c.lower()] for c in key_columns),
                ordinals=ordinals,
                source=source,
            )
            columns = tuple(c.with_identity(c.ordinal in ordinals) for c in columns)
            logger.debug("Identity for %s resolved from %s: %s", relation, source, key.columns)
            return IdentityState.resolved(key), columns

        return IdentityState.unavailable(f"no usable key for {relation}"), columns
