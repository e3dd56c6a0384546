"""
Filter composition for table and cross-table views.

Stages run strictly in this order:

    1. search by normalized id
    2. boolean toggles (marketplace only, zero / low CRM stock)
    3. hidden CRM categories            (table views)
    4. hide items with price changes    (table views)
    5. numeric ranges
    6. date range                       (cross-table views)

followed by sorting and pagination in ``compose``.
"""
import dataclasses
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from pricedesk.config import config
from pricedesk.models import DateFilter, FilterSpec, Item, RangeFilter, SortState, ViewKind
from pricedesk.normalizer import normalize_id
from pricedesk.pagination import Page, paginate
from pricedesk.sorting import sort_items

# A missing CRM stock is unknown, not out of range
RANGE_NULL_PASSES = frozenset({"crm_stock", "applications_month", "applications_2weeks"})
# Missing feed prices compare as 0
RANGE_NULL_AS_ZERO = frozenset({"crm_price", "prom_price"})


class ViewScope(str, Enum):
    TABLE = "table"
    GLOBAL = "global"


@dataclass
class ViewResult:
    """Every derived stage of one view."""
    filtered: List[Item]
    sorted: List[Item]
    page: Page[Item]


# ═══════════════════════════════════════════════════════════════════════════════
# FILTER SPEC UPDATES
# ═══════════════════════════════════════════════════════════════════════════════

def update_filters(spec: FilterSpec, **changes) -> FilterSpec:
    """
    Return ``spec`` with ``changes`` applied.

    Changing anything other than ``current_page`` moves back to page 1.
    """
    changed = {key for key, value in changes.items() if getattr(spec, key) != value}
    if not changed:
        return spec
    if changed - {"current_page"}:
        changes["current_page"] = 1
    return dataclasses.replace(spec, **changes)


def set_range(spec: FilterSpec, field: str, low: Optional[float], high: Optional[float]) -> FilterSpec:
    """Set or clear (both bounds None) the numeric range for ``field``."""
    ranges = dict(spec.ranges)
    rng = RangeFilter(low, high)
    if rng.is_empty:
        ranges.pop(field, None)
    else:
        ranges[field] = rng
    return update_filters(spec, ranges=ranges)


def clear_filters(spec: FilterSpec) -> FilterSpec:
    """Drop every filter but keep sort and page size."""
    return FilterSpec(sort=spec.sort, items_per_page=spec.items_per_page)


# ═══════════════════════════════════════════════════════════════════════════════
# DATE RANGES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class DateRange:
    """Represents a date range with both date objects and string formats."""
    start: date
    end: date

    @property
    def start_str(self) -> str:
        """Start date as YYYY-MM-DD string."""
        return self.start.strftime("%Y-%m-%d")

    @property
    def end_str(self) -> str:
        """End date as YYYY-MM-DD string."""
        return self.end.strftime("%Y-%m-%d")

    def as_tuple(self) -> Tuple[date, date]:
        """Return as (start, end) tuple of dates."""
        return (self.start, self.end)

    def to_filter(self, field: str = "last_price_change_date") -> DateFilter:
        return DateFilter(field=field, start=self.start, end=self.end)


PERIODS = ("today", "yesterday", "week", "last_week", "month", "last_month")


def parse_period(
    period: Optional[str] = None,
    reference_date: Optional[date] = None,
) -> DateRange:
    """
    Parse a period shortcut into a DateRange.

    Unknown or missing periods mean today.

    Args:
        period: today, yesterday, week, last_week, month, last_month
        reference_date: Reference date for calculations (default: today, UTC)

    Examples:
        >>> parse_period("today", reference_date=date(2026, 1, 13))
        DateRange(start=datetime.date(2026, 1, 13), end=datetime.date(2026, 1, 13))
    """
    today = reference_date or datetime.now(timezone.utc).date()

    if period == "yesterday":
        yesterday = today - timedelta(days=1)
        return DateRange(yesterday, yesterday)

    elif period == "week":
        start_of_week = today - timedelta(days=today.weekday())
        return DateRange(start_of_week, today)

    elif period == "last_week":
        start_of_this_week = today - timedelta(days=today.weekday())
        end_of_last_week = start_of_this_week - timedelta(days=1)
        start_of_last_week = end_of_last_week - timedelta(days=6)
        return DateRange(start_of_last_week, end_of_last_week)

    elif period == "month":
        start_of_month = today.replace(day=1)
        return DateRange(start_of_month, today)

    elif period == "last_month":
        first_of_this_month = today.replace(day=1)
        last_of_last_month = first_of_this_month - timedelta(days=1)
        first_of_last_month = last_of_last_month.replace(day=1)
        return DateRange(first_of_last_month, last_of_last_month)

    return DateRange(today, today)


# ═══════════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════════

def _in_range(item: Item, field: str, rng: RangeFilter) -> bool:
    value = item.field_value(field)
    if value is None:
        if field in RANGE_NULL_PASSES:
            return True
        if field in RANGE_NULL_AS_ZERO:
            value = 0
        else:
            return False
    return rng.contains(value)


def _in_date_range(item: Item, date_filter: DateFilter) -> bool:
    value = item.field_value(date_filter.field)
    if value is None:
        return False
    start, end = date_filter.bounds()
    day = value.astimezone(timezone.utc).date() if isinstance(value, datetime) else value
    return start <= day <= end


def apply_filters(
    items: Iterable[Item],
    spec: FilterSpec,
    scope: ViewScope = ViewScope.TABLE,
    low_stock_threshold: int = config.filters.low_stock_threshold,
) -> List[Item]:
    """Run the filter stages over ``items``; the input is not modified."""
    result = list(items)

    term = normalize_id(spec.search_id)
    if term:
        result = [item for item in result if term in item.normalized_id]

    if spec.show_only_marketplace:
        result = [item for item in result if item.prom_price and item.prom_price > 0]
    if spec.hide_zero_crm_stock:
        result = [item for item in result if item.crm_stock != 0]
    if spec.hide_low_crm_stock:
        result = [
            item for item in result
            if item.crm_stock is None or item.crm_stock >= low_stock_threshold
        ]

    if scope == ViewScope.TABLE:
        if spec.hidden_crm_categories:
            result = [item for item in result if item.crm_category_id not in spec.hidden_crm_categories]
        if spec.hide_price_changed:
            result = [item for item in result if not item.has_price_changes]

    for field, rng in spec.ranges.items():
        if rng.is_empty:
            continue
        result = [item for item in result if _in_range(item, field, rng)]

    if scope == ViewScope.GLOBAL and spec.date_filter is not None and spec.date_filter.is_active:
        result = [item for item in result if _in_date_range(item, spec.date_filter)]

    return result


def effective_sort(spec: FilterSpec, kind: Optional[ViewKind] = None) -> SortState:
    """User sort, or the view's default when none is chosen."""
    if spec.sort.is_active or kind is None:
        return spec.sort
    return kind.default_sort


def compose(
    items: Iterable[Item],
    spec: FilterSpec,
    scope: ViewScope = ViewScope.TABLE,
    kind: Optional[ViewKind] = None,
) -> ViewResult:
    """Filter, sort and paginate ``items`` according to ``spec``."""
    filtered = apply_filters(items, spec, scope)
    ordered = sort_items(filtered, effective_sort(spec, kind))
    return ViewResult(
        filtered=filtered,
        sorted=ordered,
        page=paginate(ordered, spec.current_page, spec.items_per_page),
    )
