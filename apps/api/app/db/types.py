"""Custom SQLAlchemy types for ledger amounts."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from sqlalchemy.types import Numeric, String, TypeDecorator

from app.utils.normalization import MONEY_PLACES, MONEY_PRECISION, to_money


class Money(TypeDecorator):
    """Exact two-place decimal amount.

    PostgreSQL stores NUMERIC(12, 2). SQLite has no exact decimal storage
    (NUMERIC columns round-trip through REAL), so the canonical string form
    is stored there instead. Values are always handed back as ``Decimal``.
    """

    impl = Numeric(MONEY_PRECISION, MONEY_PLACES)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(32))
        return dialect.type_descriptor(
            Numeric(MONEY_PRECISION, MONEY_PLACES, asdecimal=True)
        )

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("Money columns do not accept float values")
        amount = to_money(value)
        if dialect.name == "sqlite":
            return str(amount)
        return amount

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return to_money(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            raise ValueError(f"Stored amount {value!r} is not a valid decimal")
