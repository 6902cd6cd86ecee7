from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from lotwise.core.errors import InvalidArgumentsError

ZERO = Decimal("0")


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Binary floats never enter the ledger; callers must pass str/int/Decimal.
        return None
    s = str(value).strip()
    if not s:
        return None
    s = s.replace(",", "").replace("$", "")
    try:
        return Decimal(s)
    except InvalidOperation:
        return None


def to_decimal(value: Any, *, field: str = "value") -> Decimal:
    """Strict coercion for ledger inputs. Floats are rejected, not rounded."""
    if isinstance(value, float):
        raise InvalidArgumentsError(f"{field} must be exact (str/int/Decimal), got float {value!r}")
    d = _to_decimal(value)
    if d is None or not d.is_finite():
        raise InvalidArgumentsError(f"{field} is not a decimal: {value!r}")
    return d


def dsum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for v in values:
        total += v
    return total


def safe_divide(dividend: Decimal, divisor: Decimal) -> Decimal:
    if divisor == 0:
        return ZERO
    return dividend / divisor


def format_usd(value: Any, digits: int = 2, dash: str = "—") -> str:
    """
    USD formatter for CLI/report output.

    - `None` -> em dash
    - numeric -> "$1,234.56" (or "$1,235" if digits=0)
    - non-numeric string -> returned as-is
    """
    d = _to_decimal(value)
    if d is None:
        if value is None:
            return dash
        s = str(value).strip()
        return s if s else dash

    digits = max(0, int(digits))
    q = Decimal(1) if digits == 0 else Decimal("1").scaleb(-digits)
    d = d.quantize(q, rounding=ROUND_HALF_UP)

    sign = "-" if d < 0 else ""
    d_abs = -d if d < 0 else d
    return f"{sign}${d_abs:,.{digits}f}"
