from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from lotwise.core.errors import InvalidArgumentsError
from lotwise.utils.money import to_decimal


def validate_id(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgumentsError(f"{field} must be a positive integer, got {value!r}")
    return value


def validate_optional_id(value: Any, *, field: str) -> Optional[int]:
    return None if value is None else validate_id(value, field=field)


def validate_tax_year(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not (dt.MINYEAR < value < dt.MAXYEAR):
        raise InvalidArgumentsError(f"tax_year must be a calendar year, got {value!r}")
    return value


def validate_symbol(value: Any, *, field: str = "symbol") -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentsError(f"{field} must be a non-empty ticker, got {value!r}")
    return value.strip().upper()


def validate_rate(value: Any, *, field: str) -> Decimal:
    rate = to_decimal(value, field=field)
    if rate < 0 or rate > 1:
        raise InvalidArgumentsError(f"{field} must be between 0 and 1, got {rate}")
    return rate
