"""Column type inference from a sample value, and value coercion to that type.

The type of a column is decided by the first record of a batch only. A column
whose first value is numeric but later values are text is therefore typed as
numeric, and the later rows fail coercion as row-level errors.
"""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
import re
from typing import Any

from sqlalchemy.types import (
    Boolean,
    DateTime,
    Integer,
    Numeric,
    Time,
    TypeEngine,
    Unicode,
    UnicodeText,
)

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")
SHORT_TEXT_LENGTH = 255
LONG_TEXT_LENGTH = 4000

TRUE_STRINGS = frozenset({"true", "yes", "1", "t", "y"})
FALSE_STRINGS = frozenset({"false", "no", "0", "f", "n"})


def _parse_iso_datetime(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def is_iso_date_string(value: str) -> bool:
    """True for strings that look like ISO dates and name a real calendar date."""

    return bool(ISO_DATE_PATTERN.match(value)) and _parse_iso_datetime(value) is not None


def infer_sql_type(sample: Any) -> TypeEngine:
    """Pick the storage type for a column from its sample value."""

    if sample is None:
        return UnicodeText()

    # bool is a subclass of int
    if isinstance(sample, bool):
        return Boolean()

    if isinstance(sample, int):
        return Integer()

    if isinstance(sample, float):
        return Integer() if sample.is_integer() else Numeric(18, 2)

    if isinstance(sample, Decimal):
        return Integer() if sample == sample.to_integral_value() else Numeric(18, 2)

    if isinstance(sample, (datetime, date)):
        return DateTime()

    if isinstance(sample, time):
        return Time()

    if isinstance(sample, str):
        if is_iso_date_string(sample):
            return DateTime()
        if len(sample) > LONG_TEXT_LENGTH:
            return UnicodeText()
        return Unicode(LONG_TEXT_LENGTH if len(sample) > SHORT_TEXT_LENGTH else SHORT_TEXT_LENGTH)

    return UnicodeText()


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Value {value!r} is not an integer")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"Value {value!r} is not an integer")
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            raise ValueError(f"Cannot convert {value!r} to integer") from None
    raise ValueError(f"Cannot convert {type(value).__name__} to integer")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("Cannot convert bool to decimal")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert {value!r} to decimal") from None
    raise ValueError(f"Cannot convert {type(value).__name__} to decimal")


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise ValueError(f"Cannot parse {value!r} as boolean")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, str):
        parsed = _parse_iso_datetime(value)
        if parsed is not None:
            return parsed
    raise ValueError(f"Cannot convert {value!r} to datetime")


def _to_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValueError(f"Cannot convert {value!r} to time")


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def coerce_value(value: Any, sql_type: TypeEngine) -> Any:
    """Convert ``value`` for binding against ``sql_type``.

    Raises ValueError when the value is incompatible with the inferred type.
    """

    if value is None:
        return None
    if isinstance(sql_type, Boolean):
        return _to_boolean(value)
    if isinstance(sql_type, Integer):
        return _to_integer(value)
    if isinstance(sql_type, Numeric):
        return _to_decimal(value)
    if isinstance(sql_type, DateTime):
        return _to_datetime(value)
    if isinstance(sql_type, Time):
        return _to_time(value)
    return _to_text(value)
