"""Change-feed filters.

A change filter selects which database change events a listener receives:
one event kind, or all of them, on one table, optionally narrowed to rows
where a single column equals a value. Filters are validated and compiled
into their wire token once, when the listener is registered.

Wire token format:
    postgres_changes:{schema}:{table}:{KIND | *}:{column=eq.value | *}
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from insforge_realtime.domain.model.events import EventKind
from insforge_realtime.exceptions import InvalidFilterError

if TYPE_CHECKING:
    from insforge_realtime.domain.model.events import Envelope

CHANGE_TOKEN_PREFIX = "postgres_changes"
WILDCARD = "*"

# Postgres identifiers: 63 bytes max, no leading digit
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]{0,62}$")

_SUPPORTED_OPERATORS = frozenset({"eq"})


def is_valid_identifier(name: str) -> bool:
    """Check a column name against the platform identifier syntax."""
    return bool(_IDENTIFIER_RE.match(name))


def _as_number(text: str) -> Decimal | None:
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def scalar_text(value: Any) -> str:
    """Render a JSON scalar the way it appears in a filter expression."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return str(value)


@dataclass(frozen=True)
class Predicate:
    """Single-column equality predicate, e.g. ``user_id=eq.U1``."""

    column: str
    value: str

    def __post_init__(self) -> None:
        if not is_valid_identifier(self.column):
            raise InvalidFilterError(f"Invalid column name in predicate: {self.column!r}")

    @classmethod
    def parse(cls, expression: str) -> Predicate:
        """Parse a ``column=op.value`` expression.

        Raises:
            InvalidFilterError: If the expression is malformed or uses an
                operator other than ``eq``
        """
        column, sep, rest = expression.strip().partition("=")
        if not sep or not column:
            raise InvalidFilterError(f"Predicate must look like 'column=eq.value': {expression!r}")

        operator, dot, value = rest.partition(".")
        if not dot:
            raise InvalidFilterError(f"Predicate is missing an operator: {expression!r}")
        if operator not in _SUPPORTED_OPERATORS:
            raise InvalidFilterError(
                f"Unsupported operator {operator!r}: only single-column equality (eq) is allowed"
            )

        return cls(column=column.strip(), value=value)

    def compile(self) -> str:
        return f"{self.column}=eq.{self.value}"

    def matches(self, record: dict[str, Any] | None) -> bool:
        """Re-check a row the server already selected.

        Only a present value that clearly differs rejects the row. Rows
        without the column pass, since delete events usually carry just the
        primary key of the old row. Numbers compare by value, so
        ``price=eq.10.50`` accepts ``10.5``.
        """
        if record is None or self.column not in record:
            return True
        actual = scalar_text(record[self.column])
        if actual == self.value:
            return True
        expected_number = _as_number(self.value)
        actual_number = _as_number(actual)
        if expected_number is None or actual_number is None:
            return False
        return expected_number == actual_number


@dataclass(frozen=True)
class ChangeFilter:
    """Immutable description of the change events a listener wants.

    Attributes:
        kind: INSERT, UPDATE or DELETE; None selects every change kind
        schema: Database schema
        table: Database table
        predicate: Optional row predicate; None means every row
        token: Compiled wire token
    """

    kind: EventKind | None
    schema: str
    table: str
    predicate: Predicate | None = None
    token: str = field(init=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind is not None and not self.kind.is_change:
            raise InvalidFilterError(f"{self.kind.name} is not a change event kind")
        if not self.schema or not self.schema.strip():
            raise InvalidFilterError("Change filter schema must not be empty")
        if not self.table or not self.table.strip():
            raise InvalidFilterError("Change filter table must not be empty")
        object.__setattr__(self, "token", self._build_token())

    @classmethod
    def build(
        cls,
        kind: EventKind | None,
        table: str,
        *,
        schema: str = "public",
        predicate: str | Predicate | None = None,
    ) -> ChangeFilter:
        """Validate inputs and build a filter.

        Raises:
            InvalidFilterError: On an empty schema/table or an invalid predicate
        """
        parsed: Predicate | None
        if predicate is None or isinstance(predicate, Predicate):
            parsed = predicate
        elif not predicate.strip():
            parsed = None
        else:
            parsed = Predicate.parse(predicate)
        return cls(kind=kind, schema=schema, table=table, predicate=parsed)

    @property
    def event_name(self) -> str:
        """Wire name of the selected kind, ``*`` for every change kind."""
        return self.kind.value if self.kind is not None else WILDCARD

    def _build_token(self) -> str:
        pred = self.predicate.compile() if self.predicate else WILDCARD
        return f"{CHANGE_TOKEN_PREFIX}:{self.schema}:{self.table}:{self.event_name}:{pred}"

    def compile(self) -> str:
        """Return the wire token for this filter."""
        return self.token

    def to_config(self) -> dict[str, str]:
        """Return the per-filter entry of a subscription request config."""
        config = {"event": self.event_name, "schema": self.schema, "table": self.table}
        if self.predicate is not None:
            config["filter"] = self.predicate.compile()
        return config

    def matches(self, envelope: Envelope) -> bool:
        """Check whether an inbound change envelope is selected by this filter."""
        if self.kind is None:
            if not envelope.kind.is_change:
                return False
        elif envelope.kind is not self.kind:
            return False
        if envelope.schema != self.schema or envelope.table != self.table:
            return False
        if self.predicate is None:
            return True
        return self.predicate.matches(envelope.subject_record)
