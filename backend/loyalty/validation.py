from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import InvalidInputError


# Maximum spend per purchase: $99,999.99
MAX_SPENT_CENTS = 9_999_999

UTORID_PATTERN = re.compile(r"^[a-zA-Z0-9]{7,8}$")
EMAIL_DOMAINS = ("@mail.utoronto.ca", "@utoronto.ca")


def parse_int(value: Any, field: str) -> int:
    """
    Strict integer coercion.

    Rejects bools, floats, decimals and scientific notation; accepts ints and
    plain digit strings with an optional leading minus.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if 'e' in stripped.lower():
            raise InvalidInputError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise InvalidInputError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise InvalidInputError(f"{field} must be an integer") from None
    if isinstance(value, float):
        raise InvalidInputError(f"{field} must be an integer, not a decimal")
    raise InvalidInputError(f"{field} must be an integer")


def parse_positive_int(value: Any, field: str) -> int:
    parsed = parse_int(value, field)
    if parsed <= 0:
        raise InvalidInputError(f"{field} must be a positive integer")
    return parsed


def parse_non_negative_int(value: Any, field: str) -> int:
    parsed = parse_int(value, field)
    if parsed < 0:
        raise InvalidInputError(f"{field} cannot be negative")
    return parsed


def parse_dollars_to_cents(value: Any, field: str) -> int:
    """
    Dollars (Decimal, int, float or numeric string) to integer cents, half-up.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field} must be a number") from None
    if not amount.is_finite():
        raise InvalidInputError(f"{field} must be a number")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_spent_cents(value: Any) -> int:
    cents = parse_dollars_to_cents(value, "spent")
    if cents <= 0:
        raise InvalidInputError("spent must be greater than zero")
    if cents > MAX_SPENT_CENTS:
        raise InvalidInputError("spent exceeds the maximum purchase amount")
    return cents


def parse_rate(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise InvalidInputError("rate must be a number")
    try:
        rate = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInputError("rate must be a number") from None
    if not rate.is_finite() or rate < 0:
        raise InvalidInputError("rate must be a non-negative number")
    return float(rate)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def validate_utorid(utorid: Any) -> str:
    if not isinstance(utorid, str) or not UTORID_PATTERN.match(utorid):
        raise InvalidInputError("utorid must be 7-8 alphanumeric characters")
    return utorid


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not (1 <= len(name.strip()) <= 50):
        raise InvalidInputError("name must be 1-50 characters")
    return name.strip()


def validate_email(email: Any) -> str:
    if not isinstance(email, str) or not email.lower().endswith(EMAIL_DOMAINS):
        raise InvalidInputError("email must be a University of Toronto address")
    return email.strip().lower()


def require_text(data: dict, field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"Missing required field: {field}")
    return value.strip()
