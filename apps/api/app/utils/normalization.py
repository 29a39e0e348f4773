"""Normalization of external payload values: money, names, emails."""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.core.exceptions import InvalidAmount


# =============================================================================
# Money
# =============================================================================

MONEY_PRECISION = 12
MONEY_PLACES = 2
CENTS = Decimal("0.01")
ZERO = Decimal("0.00")
# NUMERIC(12, 2) holds at most ten integer digits
MAX_ABS_AMOUNT = Decimal(10) ** (MONEY_PRECISION - MONEY_PLACES)

_PLAIN_AMOUNT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_GROUPED_AMOUNT_RE = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")


def to_money(value: Any) -> Decimal:
    """
    Coerce an exact numeric value to a two-place Decimal.

    Raises:
        ValueError: value is a float, non-finite, has sub-cent precision,
            or does not fit NUMERIC(12, 2)
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"{type(value).__name__} is not an exact amount type")
    if isinstance(value, int):
        value = Decimal(value)
    elif isinstance(value, str):
        value = Decimal(value)
    elif not isinstance(value, Decimal):
        raise ValueError(f"Unsupported amount type {type(value).__name__}")

    if not value.is_finite():
        raise ValueError("Amount must be finite")
    quantized = value.quantize(CENTS)
    if quantized != value:
        raise ValueError("Amount has more than two decimal places")
    if abs(quantized) >= MAX_ABS_AMOUNT:
        raise ValueError("Amount is out of range")
    # Normalise -0.00 to 0.00
    return quantized + ZERO


def parse_amount(raw: Any, field: str = "amount") -> Decimal:
    """
    Parse a monetary literal from an external payload.

    Accepts strings ("1234.5", "1,234.50", " -12 "), integers and Decimals.
    Binary floats are rejected outright; precision is never truncated.

    Args:
        raw: Raw value from the payload
        field: Payload field name, reported on failure

    Returns:
        Exact two-place Decimal

    Raises:
        InvalidAmount: value is not a well-formed finite amount
    """
    if raw is None:
        raise InvalidAmount(raw, field=field, reason="amount is required")
    if isinstance(raw, str):
        text = raw.strip()
        if _GROUPED_AMOUNT_RE.match(text):
            text = text.replace(",", "")
        elif not _PLAIN_AMOUNT_RE.match(text):
            raise InvalidAmount(raw, field=field, reason="not a numeric literal")
        raw_value: Any = text
    else:
        raw_value = raw

    try:
        return to_money(raw_value)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(raw, field=field, reason=str(exc)) from exc


def format_money(value: Decimal) -> str:
    """Render a Decimal amount for JSON responses and audit values."""
    return str(to_money(value))


# =============================================================================
# Text
# =============================================================================


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    return email.strip().lower()


def normalize_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize name by stripping whitespace and collapsing multiple spaces.

    Args:
        name: Raw name input

    Returns:
        Cleaned name or None if empty
    """
    if not name:
        return None
    # Strip leading/trailing whitespace and collapse internal spaces
    collapsed = " ".join(name.split())
    return collapsed or None


def normalize_reference(value: Optional[str]) -> Optional[str]:
    """Trim an external reference or account number; blank means absent."""
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def normalize_handler_name(value: Optional[str]) -> Optional[str]:
    """Casefolded handler name for matching a case's assignedTo to an admin."""
    collapsed = normalize_name(value)
    return collapsed.casefold() if collapsed else None
