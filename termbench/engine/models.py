"""Value types shared by the engine components."""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .cells import Cell


@dataclass(frozen=True)
class ColumnDescriptor:
    """One result column, looked up by ordinal."""

    name: str
    declared_type: str = ""
    ordinal: int = 0
    nullable: bool = True
    is_identity: bool = False

    def with_identity(self, flag: bool) -> "ColumnDescriptor":
        return replace(self, is_identity=flag)


@dataclass(frozen=True)
class Row:
    """Ordered cells plus the window-local index of the row."""

    index: int
    cells: Tuple[Cell, ...]
    deleted: bool = False

    def __len__(self):
        return len(self.cells)

    def __getitem__(self, ordinal):
        return self.cells[ordinal]

    def values(self) -> List[Any]:
        return [cell.value for cell in self.cells]


@dataclass(frozen=True)
class QueryRequest:
    statement: str
    params: Tuple[Any, ...] = ()
    seq: int = 0


class QueryHandle:
    """In-flight statement token handed to the session for cancellation."""

    def __init__(self, seq: int, statement: str):
        self.seq = seq
        self.statement = statement
        self._cancelled = False

    def __repr__(self):
        return f"QueryHandle(seq={self.seq})"

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled

    def request_cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True)
class Summary:
    """Completion summary for one query.

    ``row_count`` is exact when ``exact`` is set, a lower bound otherwise.
    """

    elapsed: float
    row_count: int
    exact: bool = True
    partial: bool = False
    truncated: bool = False
    command_tag: Optional[str] = None


# ── Execution states ─────────────────────────────────────────


@dataclass(frozen=True)
class Idle:
    name = "Idle"


@dataclass(frozen=True)
class Running:
    handle: QueryHandle
    started_at: float = field(default_factory=time.monotonic)
    name = "Running"


@dataclass(frozen=True)
class Cancelling:
    handle: QueryHandle
    name = "Cancelling"


@dataclass(frozen=True)
class Completed:
    summary: Summary
    name = "Completed"


@dataclass(frozen=True)
class Failed:
    error: str
    connection_lost: bool = False
    name = "Failed"


@dataclass(frozen=True)
class Cancelled:
    summary: Summary
    acknowledged: bool = True
    name = "Cancelled"


ACTIVE_STATES = (Running, Cancelling)


# ── Controller events ────────────────────────────────────────


@dataclass(frozen=True)
class RowsArrived:
    seq: int
    count: int
    total: int


@dataclass(frozen=True)
class QueryCompleted:
    seq: int
    summary: Summary


@dataclass(frozen=True)
class QueryFailed:
    seq: int
    error: str
    connection_lost: bool = False


@dataclass(frozen=True)
class QueryCancelled:
    seq: int
    summary: Summary
    acknowledged: bool = True


# ── Relation metadata and identity ───────────────────────────


@dataclass(frozen=True)
class RelationMetadata:
    """Columns and keys of one table as reported by the server."""

    schema: Optional[str]
    table: str
    columns: Dict[str, Tuple[str, bool]] = field(default_factory=dict)
    primary_key: Tuple[str, ...] = ()
    unique_constraints: Tuple[Tuple[str, ...], ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}" if self.schema else self.table


@dataclass(frozen=True)
class IdentityKey:
    """Column set addressing exactly one server row."""

    relation: RelationMetadata
    columns: Tuple[str, ...]
    ordinals: Tuple[int, ...]
    source: str = "primary_key"

    def values(self, row: Row) -> Tuple[Cell, ...]:
        return tuple(row.cells[i] for i in self.ordinals)


class IdentityState:
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    UNAVAILABLE = "unavailable"

    def __init__(self, status, key=None, reason=None):
        self.status = status
        self.key = key
        self.reason = reason

    @classmethod
    def unresolved(cls):
        return cls(cls.UNRESOLVED)

    @classmethod
    def resolved(cls, key: IdentityKey):
        return cls(cls.RESOLVED, key=key)

    @classmethod
    def unavailable(cls, reason: str):
        return cls(cls.UNAVAILABLE, reason=reason)

    @property
    def is_resolved(self) -> bool:
        return self.status == self.RESOLVED and bool(self.key and self.key.columns)

    def __repr__(self):
        if self.status == self.RESOLVED:
            return f"Resolved({set(self.key.columns)})"
        if self.status == self.UNAVAILABLE:
            return f"Unavailable({self.reason})"
        return "Unresolved"


# ── Selection and edits ──────────────────────────────────────


@dataclass(frozen=True)
class Selection:
    """Window-local selection; never keyed by server identity."""

    CELL = "cell"
    ROW = "row"
    ROWS = "rows"
    RANGE = "range"

    mode: str
    rows: FrozenSet[int] = frozenset()
    top: int = 0
    left: int = 0
    bottom: int = 0
    right: int = 0

    def contains(self, row: int, col: int) -> bool:
        if self.mode in (self.ROW, self.ROWS):
            return row in self.rows
        return self.top <= row <= self.bottom and self.left <= col <= self.right

    @property
    def row_indices(self) -> List[int]:
        if self.mode in (self.ROW, self.ROWS):
            return sorted(self.rows)
        return list(range(self.top, self.bottom + 1))


@dataclass(frozen=True)
class EditIntent:
    """Pending change to a single cell, consumed by one write-back."""

    result_set: int
    row_index: int
    column: ColumnDescriptor
    identity_values: Tuple[Cell, ...]
    old: Cell
    new: Cell

    @property
    def is_noop(self) -> bool:
        return self.old == self.new
