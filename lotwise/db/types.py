from __future__ import annotations

import datetime as dt
from decimal import Decimal, InvalidOperation

from sqlalchemy.types import DateTime as _DateTime
from sqlalchemy.types import String, TypeDecorator

from lotwise.utils.time import UTC


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as UTC and always return tz-aware UTC datetimes.

    SQLite has no timezone-aware datetime type; naive values are treated as UTC.
    """

    impl = _DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        v = value
        if v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        return v.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ExactDecimal(TypeDecorator):
    """
    Decimal column stored as its canonical string.

    SQLite keeps NUMERIC as binary floating point, which would leak rounding into
    cost basis. Strings round-trip every digit on every backend.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            value = str(value)
        try:
            d = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"Not a decimal value: {value!r}") from None
        if not d.is_finite():
            raise ValueError(f"Not a finite decimal: {value!r}")
        return str(d)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)
