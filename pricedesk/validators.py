"""
Input validation for user edits and view parameters.

All validators raise ValidationError on invalid input. Validation runs at
the edit boundary; the override layer and everything downstream trust the
values they receive.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Optional, Tuple

from pricedesk.config import config
from pricedesk.exceptions import ValidationError
from pricedesk.filters import PERIODS
from pricedesk.models import (
    DATE_FILTER_FIELDS,
    ITEM_FIELDS,
    MARKUP_FIELDS,
    RANGE_FIELDS,
    CategoryType,
)

MAX_COMMENT_LENGTH = 2000

_STRICT_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
_SPACES = re.compile(r"\s+")


def _parse_strict_number(value: Any, field: str) -> float:
    """Parse a number without any coercion of garbage input."""
    if isinstance(value, bool):
        raise ValidationError(field, "Must be a number", value)

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = _SPACES.sub("", value).replace(",", ".")
        if not _STRICT_NUMBER.match(text):
            raise ValidationError(field, "Must be a number", value)
        number = float(text)
    else:
        raise ValidationError(field, "Must be a number", value)

    if not math.isfinite(number):
        raise ValidationError(field, "Must be a finite number", value)
    return number


def validate_price(value: Any, field: str = "price") -> float:
    """
    Validate a manual price entered by the user.

    Accepts numbers and numeric strings (spaces as thousands separator,
    comma as decimal separator).

    Returns:
        Parsed price

    Raises:
        ValidationError: If the value is not a number or not positive
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field, "Price is required")

    price = _parse_strict_number(value, field)
    if price <= 0:
        raise ValidationError(field, "Must be greater than 0", value)
    return price


def validate_commission(value: Any, field: str = "commission") -> float:
    """
    Validate a commission percentage.

    Returns:
        Commission in percent, 0 <= value < 100

    Raises:
        ValidationError: If the value is not a number or out of range
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(field, "Commission is required")

    commission = _parse_strict_number(value, field)
    if not 0 <= commission < 100:
        raise ValidationError(field, "Must be between 0 and 100 (exclusive)", value)
    return commission


def validate_comment_text(value: Any, field: str = "comment") -> str:
    """
    Validate comment text.

    Returns:
        Stripped comment text

    Raises:
        ValidationError: If empty or too long
    """
    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    text = value.strip()
    if not text:
        raise ValidationError(field, "Comment cannot be empty")

    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationError(
            field,
            f"Must be at most {MAX_COMMENT_LENGTH} characters",
            f"{len(text)} characters"
        )
    return text


def validate_category_type(value: Any, field: str = "category") -> CategoryType:
    """
    Validate a manual category name.

    Raises:
        ValidationError: If the category is unknown
    """
    try:
        return CategoryType(value)
    except ValueError:
        raise ValidationError(
            field,
            f"Must be one of {[c.value for c in CategoryType]}",
            value
        )


def validate_sort_key(value: Any, field: str = "sort_key") -> str:
    """
    Validate a sortable/filterable column name.

    Raises:
        ValidationError: If the column is unknown
    """
    if value not in ITEM_FIELDS and value not in MARKUP_FIELDS:
        raise ValidationError(field, "Unknown column", value)
    return value


def validate_range_field(value: Any, field: str = "field") -> str:
    """
    Validate a column for a numeric range filter.

    Raises:
        ValidationError: If the column is unknown or not numeric
    """
    if value not in RANGE_FIELDS:
        raise ValidationError(field, "Not a numeric column", value)
    return value


def validate_range_bound(value: Any, field: str = "bound") -> Optional[float]:
    """Validate one range bound; None means unbounded."""
    if value is None:
        return None
    return _parse_strict_number(value, field)


def validate_date_field(value: Any, field: str = "date_field") -> str:
    """
    Validate the column a date filter applies to.

    Raises:
        ValidationError: If the column is not a date column
    """
    if value not in DATE_FILTER_FIELDS:
        raise ValidationError(field, f"Must be one of {list(DATE_FILTER_FIELDS)}", value)
    return value


def validate_period(value: Any, field: str = "period") -> str:
    """
    Validate a date period shortcut.

    Raises:
        ValidationError: If the period name is unknown
    """
    if value not in PERIODS:
        raise ValidationError(field, f"Must be one of {list(PERIODS)}", value)
    return value


def validate_page(value: Any, field: str = "page") -> int:
    """
    Validate a 1-indexed page number.

    Raises:
        ValidationError: If not a positive integer
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, "Must be an integer", value)

    if value < 1:
        raise ValidationError(field, "Must be at least 1", value)
    return value


def validate_items_per_page(
    value: Any,
    field: str = "items_per_page",
    max_value: int = config.filters.max_items_per_page
) -> int:
    """
    Validate a page size.

    Raises:
        ValidationError: If not an integer in [1, max_value]
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field, "Must be an integer", value)

    if value < 1 or value > max_value:
        raise ValidationError(field, f"Must be between 1 and {max_value}", value)
    return value


def validate_date_string(
    value: str,
    field: str = "date",
    format: str = "%Y-%m-%d"
) -> date:
    """
    Validate and parse a date string.

    Args:
        value: Date string to validate
        field: Field name for error messages
        format: Expected date format (default: YYYY-MM-DD)

    Returns:
        Parsed date object

    Raises:
        ValidationError: If date is invalid or in wrong format
    """
    if not value:
        raise ValidationError(field, "Date is required", value)

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    try:
        return datetime.strptime(value, format).date()
    except ValueError:
        raise ValidationError(
            field,
            f"Invalid date format. Expected {format}",
            value
        )


def validate_date_range(
    start_date: Optional[str],
    end_date: Optional[str],
) -> Tuple[Optional[date], Optional[date]]:
    """
    Validate an optional date range for view date filters.

    Either side may be empty (unbounded).

    Returns:
        Tuple of (start, end), each a date or None

    Raises:
        ValidationError: If a date is malformed or start is after end
    """
    start = validate_date_string(start_date, "start_date") if start_date else None
    end = validate_date_string(end_date, "end_date") if end_date else None

    if start and end and start > end:
        raise ValidationError(
            "date_range",
            "Start date must be before or equal to end date",
            f"{start_date} to {end_date}"
        )

    return start, end
