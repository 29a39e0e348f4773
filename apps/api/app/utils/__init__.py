"""Utility modules."""

from app.utils.datetime_parsing import parse_date, parse_optional_date, utc_now
from app.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_reference,
    parse_amount,
)
from app.utils.pagination import PaginationParams, get_pagination, page_count, paginate

__all__ = [
    # Normalization
    "normalize_email",
    "normalize_name",
    "normalize_reference",
    "parse_amount",
    # Dates
    "parse_date",
    "parse_optional_date",
    "utc_now",
    # Pagination
    "PaginationParams",
    "get_pagination",
    "page_count",
    "paginate",
]
