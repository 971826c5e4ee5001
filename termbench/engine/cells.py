"""Typed cell values.

A cell keeps the value exactly as the driver returned it, tagged with a kind
and the declared type of the column it came from. Display text and
coercion of proposed edits are derived from the declared type's family.
"""

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..errors import TypeCoercionError

NULL = "null"
TEXT = "text"
NUMBER = "number"
BOOLEAN = "boolean"
BINARY = "binary"
JSON = "json"

KINDS = (NULL, TEXT, NUMBER, BOOLEAN, BINARY, JSON)

_INTEGER_TYPES = ("int", "serial", "integer", "bigint", "smallint", "tinyint", "mediumint")
_NUMBER_TYPES = ("numeric", "decimal", "real", "double", "float", "money", "number")
_TRUE_WORDS = ("true", "t", "yes", "y", "on", "1")
_FALSE_WORDS = ("false", "f", "no", "n", "off", "0")


def type_family(declared_type: Optional[str]) -> str:
    """Map a declared SQL type name to the cell kind it holds."""
    name = (declared_type or "").strip().lower()
    if not name:
        return TEXT
    if "json" in name:
        return JSON
    if name.startswith("bool"):
        return BOOLEAN
    if name in ("bytea", "blob", "longblob", "mediumblob", "tinyblob") or "binary" in name:
        return BINARY
    if any(word in name for word in _INTEGER_TYPES + _NUMBER_TYPES):
        # "interval" contains "int" but is not numeric
        if name.startswith("interval") or "point" in name:
            return TEXT
        return NUMBER
    return TEXT


def is_integer_type(declared_type: Optional[str]) -> bool:
    """Check if a declared type only admits whole numbers."""
    name = (declared_type or "").strip().lower()
    if type_family(name) != NUMBER:
        return False
    return any(word in name for word in _INTEGER_TYPES) and not any(
        word in name for word in _NUMBER_TYPES)


def canonical_json(value: Any) -> str:
    """Canonical text for a JSON value: sorted keys, compact separators."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True,
                      separators=(",", ":"), default=str)


class Cell:
    """Immutable typed value fetched from the server."""

    __slots__ = ("value", "kind", "declared_type")

    def __init__(self, value: Any, kind: str, declared_type: str = ""):
        if kind not in KINDS:
            raise ValueError(f"Unknown cell kind: {kind}")
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "declared_type", declared_type or "")

    def __setattr__(self, name, value):
        raise AttributeError("Cell is immutable")

    def __eq__(self, other):
        if not isinstance(other, Cell):
            return NotImplemented
        return self.kind == other.kind and self.value == other.value

    def __hash__(self):
        if self.kind == JSON:
            return hash((self.kind, canonical_json(self.value)))
        return hash((self.kind, self.value))

    def __repr__(self):
        return f"Cell({self.value!r}, {self.kind!r})"

    @property
    def is_null(self) -> bool:
        return self.kind == NULL

    @classmethod
    def null(cls, declared_type: str = "") -> "Cell":
        return cls(None, NULL, declared_type)

    @classmethod
    def from_db(cls, value: Any, declared_type: str = "") -> "Cell":
        """Wrap a raw driver value."""
        if value is None:
            return cls(None, NULL, declared_type)
        if isinstance(value, bool):
            return cls(value, BOOLEAN, declared_type)
        if isinstance(value, (int, float, Decimal)):
            return cls(value, NUMBER, declared_type)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls(bytes(value), BINARY, declared_type)
        if isinstance(value, (dict, list)):
            return cls(value, JSON, declared_type)
        if isinstance(value, str) and type_family(declared_type) == JSON:
            try:
                return cls(json.loads(value), JSON, declared_type)
            except ValueError:
                return cls(value, TEXT, declared_type)
        return cls(value, TEXT, declared_type)

    def text(self, null_text: str = "NULL") -> str:
        """Display text for the grid and for exports."""
        if self.kind == NULL:
            return null_text
        if self.kind == BOOLEAN:
            return "true" if self.value else "false"
        if self.kind == BINARY:
            return "\\x" + self.value.hex()
        if self.kind == JSON:
            return canonical_json(self.value)
        return str(self.value)

    def param(self) -> Any:
        """Value to bind as a statement parameter."""
        if self.kind == JSON:
            return canonical_json(self.value)
        return self.value


def _coerce_number(text: str, declared_type: str):
    stripped = text.strip()
    if not stripped:
        raise ValueError("empty")
    try:
        return int(stripped)
    except ValueError:
        pass
    try:
        number = Decimal(stripped)
    except InvalidOperation:
        raise ValueError(stripped)
    if not number.is_finite():
        raise ValueError(stripped)
    if is_integer_type(declared_type):
        if number != number.to_integral_value():
            raise ValueError(stripped)
        return int(number)
    return number


def _coerce_boolean(text: str) -> bool:
    word = text.strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(word)


def _coerce_binary(text: str) -> bytes:
    if text.startswith("\\x"):
        return bytes.fromhex(text[2:])
    return text.encode("utf-8")


def coerce(proposed: Any, declared_type: str = "") -> Cell:
    """Coerce a proposed value (usually editor text) into a cell.

    Raises TypeCoercionError when the value does not fit the declared type,
    e.g. non-numeric text for a numeric column.
    """
    if proposed is None:
        return Cell.null(declared_type)
    if isinstance(proposed, Cell):
        proposed = proposed.value
        if proposed is None:
            return Cell.null(declared_type)

    family = type_family(declared_type)
    try:
        if not isinstance(proposed, str):
            cell = Cell.from_db(proposed, declared_type)
            if family == TEXT or cell.kind == family:
                if family == NUMBER and is_integer_type(declared_type):
                    _coerce_number(str(cell.value), declared_type)
                return Cell(cell.value, family if family != TEXT else cell.kind,
                            declared_type)
            if family == JSON:
                return Cell(proposed, JSON, declared_type)
            raise ValueError(proposed)
        if family == NUMBER:
            return Cell(_coerce_number(proposed, declared_type), NUMBER, declared_type)
        if family == BOOLEAN:
            return Cell(_coerce_boolean(proposed), BOOLEAN, declared_type)
        if family == JSON:
            return Cell(json.loads(proposed), JSON, declared_type)
        if family == BINARY:
            return Cell(_coerce_binary(proposed), BINARY, declared_type)
        return Cell(proposed, TEXT, declared_type)
    except (ValueError, TypeError):
        raise TypeCoercionError(
            f"Cannot convert {proposed!r} to {declared_type or family}",
            value=proposed,
        )
