"""Subscription configs, row filters and channel key derivation.

A channel key names one logical change-feed subscription:

    realtime:<schema>:<table>:<event>:<filter or "all">

Each field is escaped (``%`` -> ``%25``, ``:`` -> ``%3A``) before joining so
that the five-field encoding is injective. A serialized filter always contains
``=``, so it can never read as the literal ``all``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from relaychat.core.exceptions import ConfigurationError
from relaychat.schemas.realtime import ChangeEventType

KEY_PREFIX = "realtime"
NO_FILTER = "all"


class FilterOperator(str, Enum):
    """Filter operators understood by the realtime change feed."""

    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"


@dataclass(frozen=True)
class RowFilter:
    """Structured ``column=operator.value`` filter on a change feed."""

    column: str
    operator: FilterOperator
    value: str

    def __post_init__(self) -> None:
        if not self.column or not self.column.strip():
            raise ConfigurationError("Filter column must not be empty", field="filter")
        if "=" in self.column:
            raise ConfigurationError(
                f"Filter column may not contain '=': {self.column}", field="filter"
            )
        try:
            operator = FilterOperator(self.operator)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported filter operator: {self.operator}", field="filter"
            ) from None
        object.__setattr__(self, "operator", operator)
        object.__setattr__(self, "value", str(self.value))

    @classmethod
    def eq(cls, column: str, value: Any) -> "RowFilter":
        return cls(column, FilterOperator.EQ, str(value))

    @classmethod
    def parse(cls, raw: str) -> "RowFilter":
        """Parse the transport's wire form, e.g. ``channel_id=eq.42``."""
        column, sep, rest = raw.partition("=")
        operator, dot, value = rest.partition(".")
        if not sep or not dot:
            raise ConfigurationError(f"Malformed filter: {raw!r}", field="filter")
        return cls(column, operator, value)

    def to_wire(self) -> str:
        return f"{self.column}={self.operator.value}.{self.value}"

    def matches(self, row: Optional[dict[str, Any]]) -> bool:
        """Evaluate the filter against a row the way the change feed does."""
        if not row or self.column not in row:
            return False
        actual = row[self.column]

        if self.operator is FilterOperator.IN:
            options = [item.strip() for item in self.value.strip("()").split(",")]
            return _as_text(actual) in options
        if self.operator is FilterOperator.EQ:
            return _as_text(actual) == self.value
        if self.operator is FilterOperator.NEQ:
            return _as_text(actual) != self.value

        left, right = _comparable(actual, self.value)
        if self.operator is FilterOperator.LT:
            return left < right
        if self.operator is FilterOperator.LTE:
            return left <= right
        if self.operator is FilterOperator.GT:
            return left > right
        return left >= right

    def __str__(self) -> str:
        return self.to_wire()


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _comparable(actual: Any, expected: str) -> tuple[Any, Any]:
    try:
        return float(actual), float(expected)
    except (TypeError, ValueError):
        return _as_text(actual), expected


@dataclass(frozen=True)
class SubscriptionConfig:
    """Logical coordinates of a change-feed subscription.

    ``filter`` accepts either a :class:`RowFilter` or its wire string.
    """

    table: str
    event: ChangeEventType = ChangeEventType.ANY
    schema: str = "public"
    filter: Optional[Union[RowFilter, str]] = None

    def __post_init__(self) -> None:
        if not self.table or not self.table.strip():
            raise ConfigurationError("Subscription table must not be empty", field="table")
        if not self.schema or not self.schema.strip():
            raise ConfigurationError("Subscription schema must not be empty", field="schema")
        try:
            event = ChangeEventType(self.event)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported change event: {self.event}", field="event"
            ) from None
        object.__setattr__(self, "event", event)
        if isinstance(self.filter, str):
            object.__setattr__(self, "filter", RowFilter.parse(self.filter))

    @property
    def wire_filter(self) -> Optional[str]:
        return self.filter.to_wire() if self.filter is not None else None


def _escape(part: str) -> str:
    return part.replace("%", "%25").replace(":", "%3A")


def channel_key(config: SubscriptionConfig) -> str:
    """Derive the canonical channel key for a subscription config."""
    parts = (
        config.schema,
        config.table,
        config.event.value,
        config.wire_filter or NO_FILTER,
    )
    return ":".join([KEY_PREFIX, *(_escape(part) for part in parts)])
