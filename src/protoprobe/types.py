# src/protoprobe/types.py
"""Semantic parameter types and value normalisation.

Scenario parameters are declared by meaning (integer, text, timestamp) rather
than by driver type. Values coming back from drivers are normalised so that
observations from different backends compare equal when they mean the same
thing.
"""

import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Sequence, Tuple


class _Now:
    """Placeholder resolved to the client clock at bind time.

    The value is sent as a bound parameter, so every backend stores the same
    instant; server-side ``now()`` belongs in the SQL text instead.
    """

    def __repr__(self):
        return "NOW"


NOW = _Now()


class ParamType(str, Enum):
    INTEGER = "integer"
    TEXT = "text"
    TIMESTAMP = "timestamp"

    def to_database(self, value: Any) -> Any:
        """Coerce a scenario value to the Python type the drivers bind natively."""
        if value is None:
            return None
        if self is ParamType.INTEGER:
            if isinstance(value, bool):
                raise TypeError("Boolean is not an integer parameter")
            return int(value)
        if self is ParamType.TEXT:
            return str(value)
        if value is NOW:
            return datetime.datetime.now().replace(microsecond=0)
        if isinstance(value, datetime.datetime):
            # Drivers expect naive datetimes for TIMESTAMP columns
            if value.tzinfo is not None:
                return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
            return value
        if isinstance(value, str):
            return datetime.datetime.fromisoformat(value)
        raise TypeError(f"Cannot bind {type(value).__name__} as a timestamp")


def bind_values(schema: Sequence[ParamType], values: Sequence[Any]) -> Tuple[Any, ...]:
    """Coerce positional values according to a parameter schema."""
    return tuple(param_type.to_database(value) for param_type, value in zip(schema, values))


def normalize_value(value: Any) -> Any:
    """Render a driver value in a backend-neutral, JSON-friendly form."""
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode('utf-8')
        except UnicodeDecodeError:
            return bytes(value).hex()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return str(value)
    if isinstance(value, Decimal):
        # Integral decimals compare equal to integers from other backends
        return int(value) if value == value.to_integral_value() else str(value)
    return value


def normalize_row(row: Sequence[Any]) -> Tuple[Any, ...]:
    return tuple(normalize_value(value) for value in row)
