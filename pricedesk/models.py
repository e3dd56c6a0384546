"""
Domain models for pricedesk.

Provides type-safe dataclasses for items, tables, override records, feed
offers and view/filter state. Every record serializes to the JSON shape of
the backend document store (camelCase keys) via ``to_dict`` / ``from_dict``.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pricedesk.config import config
from pricedesk.finance import MARKUP_STEPS, Financials, derive_financials, normalize_commission
from pricedesk.normalizer import normalize_id


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (``Z`` suffix allowed) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(result) else result


def _float(value: Any) -> float:
    result = _optional_float(value)
    return 0.0 if result is None else result


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class CategoryType(str, Enum):
    """Manual item categories."""
    NEW = "new"
    OPTIMIZATION = "optimization"
    AB = "ab"
    C_SALE = "c_sale"
    OFF_SEASON = "off_season"
    UNPROFITABLE = "unprofitable"

    @property
    def display_name(self) -> str:
        names = {
            CategoryType.NEW: "New",
            CategoryType.OPTIMIZATION: "Optimization",
            CategoryType.AB: "A/B",
            CategoryType.C_SALE: "C-sale",
            CategoryType.OFF_SEASON: "Off-season",
            CategoryType.UNPROFITABLE: "Unprofitable",
        }
        return names[self]


class LoadingStatus(str, Enum):
    """Feed cache loading state."""
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class FeedKind(str, Enum):
    """Supplier feed identifiers."""
    CRM = "crm"
    PROM = "prom"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


# ═══════════════════════════════════════════════════════════════════════════════
# HISTORY ENTRIES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PriceChange:
    """One entry of an item's append-only price history."""
    price: float
    date: datetime
    source_table_name: Optional[str] = None
    source_table_id: Optional[str] = None
    previous_price: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceChange":
        return cls(
            price=_float(data.get("price")),
            date=parse_datetime(data.get("date")) or utcnow(),
            source_table_name=_optional_str(data.get("sourceTableName")),
            source_table_id=_optional_str(data.get("sourceTableId")),
            previous_price=_optional_float(data.get("previousPrice")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "date": format_datetime(self.date),
            "sourceTableName": self.source_table_name,
            "sourceTableId": self.source_table_id,
            "previousPrice": self.previous_price,
        }


@dataclass(frozen=True)
class Comment:
    """User comment on an item."""
    id: str
    text: str
    date: datetime
    source_table_name: Optional[str] = None
    source_table_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text", "")),
            date=parse_datetime(data.get("date")) or utcnow(),
            source_table_name=_optional_str(data.get("sourceTableName")),
            source_table_id=_optional_str(data.get("sourceTableId")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "date": format_datetime(self.date),
            "sourceTableName": self.source_table_name,
            "sourceTableId": self.source_table_id,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ITEMS
# ═══════════════════════════════════════════════════════════════════════════════

# Columns addressable by filters and sorting besides markupNN
ITEM_FIELDS = (
    "id",
    "normalized_id",
    "base_cost",
    "commission",
    "total_cost",
    "stock",
    "days_stock",
    "sales_month",
    "sales_2weeks",
    "applications_month",
    "applications_2weeks",
    "crm_price",
    "crm_stock",
    "crm_category_id",
    "crm_category_name",
    "prom_price",
    "last_price",
    "last_price_change_date",
    "last_comment_text",
    "last_comment_date",
    "primary_table_name",
    "category_added_date",
)

MARKUP_FIELDS = tuple(f"markup{step}" for step in MARKUP_STEPS)

# Columns a numeric range filter can apply to
RANGE_FIELDS = (
    "base_cost",
    "commission",
    "total_cost",
    "stock",
    "days_stock",
    "sales_month",
    "sales_2weeks",
    "applications_month",
    "applications_2weeks",
    "crm_price",
    "crm_stock",
    "prom_price",
    "last_price",
) + MARKUP_FIELDS

DATE_FILTER_FIELDS = ("last_price_change_date", "last_comment_date")


@dataclass
class Item:
    """
    One inventory row.

    ``financials`` carries ``total_cost`` and all markup tiers; it is only
    ever replaced as a whole through :meth:`reprice` /
    :meth:`update_base_cost`.

    The ``last_*``, ``primary_table_*`` and ``category_added_date`` fields
    are filled by view builders only and are not persisted.
    """
    id: str
    normalized_id: str
    base_cost: float
    commission: float
    financials: Financials
    stock: float = 0.0
    days_stock: float = 0.0
    sales_month: float = 0.0
    sales_2weeks: float = 0.0
    applications_month: Optional[float] = None
    applications_2weeks: Optional[float] = None
    crm_price: Optional[float] = None
    crm_stock: Optional[float] = None
    crm_category_id: Optional[str] = None
    crm_category_name: Optional[str] = None
    prom_price: Optional[float] = None
    price_history: List[PriceChange] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)

    last_price: Optional[float] = None
    last_price_change_date: Optional[datetime] = None
    last_comment_text: Optional[str] = None
    last_comment_date: Optional[datetime] = None
    primary_table_name: Optional[str] = None
    primary_table_id: Optional[str] = None
    category_added_date: Optional[datetime] = None

    @classmethod
    def build(cls, raw_id: Any, base_cost: float, commission: float, **fields: Any) -> "Item":
        """Create an item, deriving its normalized id and financials."""
        raw = "" if raw_id is None else str(raw_id).strip()
        return cls(
            id=raw,
            normalized_id=normalize_id(raw),
            base_cost=base_cost,
            commission=commission,
            financials=derive_financials(base_cost, commission),
            **fields,
        )

    @property
    def total_cost(self) -> float:
        return self.financials.total_cost

    @property
    def markups(self) -> Dict[int, float]:
        return self.financials.markups

    def markup(self, percent: int) -> float:
        return self.financials.markup(percent)

    @property
    def has_price_changes(self) -> bool:
        return bool(self.price_history)

    @property
    def last_price_change(self) -> Optional[PriceChange]:
        return self.price_history[-1] if self.price_history else None

    @property
    def last_comment(self) -> Optional[Comment]:
        return self.comments[-1] if self.comments else None

    def reprice(self, commission: float) -> None:
        """Apply a new effective commission and recompute all derived prices."""
        self.financials = derive_financials(self.base_cost, commission)
        self.commission = commission

    def update_base_cost(self, base_cost: float) -> None:
        self.financials = derive_financials(base_cost, self.commission)
        self.base_cost = base_cost

    def field_value(self, key: str) -> Any:
        """
        Resolve a filter/sort column.

        Raises:
            KeyError: If ``key`` is not a known column
        """
        if key in MARKUP_FIELDS:
            return self.financials.markups[int(key[len("markup"):])]
        if key in ITEM_FIELDS:
            return getattr(self, key)
        raise KeyError(key)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        """
        Restore an item from its stored shape.

        Stored totals and markups are ignored and recomputed from
        ``baseCost`` and ``commission``.
        """
        base_cost = _float(data.get("baseCost"))
        commission = _float(data.get("commission"))
        if not 0 <= commission < 100:
            commission = normalize_commission(commission)
        item = cls.build(
            data.get("id"),
            base_cost,
            commission,
            stock=_float(data.get("stock")),
            days_stock=_float(data.get("daysStock")),
            sales_month=_float(data.get("salesMonth")),
            sales_2weeks=_float(data.get("sales2Weeks")),
            applications_month=_optional_float(data.get("applicationsMonth")),
            applications_2weeks=_optional_float(data.get("applications2Weeks")),
            crm_price=_optional_float(data.get("crmPrice")),
            crm_stock=_optional_float(data.get("crmStock")),
            crm_category_id=_optional_str(data.get("crmCategoryId")),
            crm_category_name=_optional_str(data.get("crmCategoryName")),
            prom_price=_optional_float(data.get("promPrice")),
            price_history=[PriceChange.from_dict(p) for p in data.get("priceHistory") or []],
            comments=[Comment.from_dict(c) for c in data.get("comments") or []],
        )
        if data.get("normalizedId"):
            item.normalized_id = str(data["normalizedId"])
        return item

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "normalizedId": self.normalized_id,
            "baseCost": self.base_cost,
            "commission": self.commission,
            "stock": self.stock,
            "daysStock": self.days_stock,
            "salesMonth": self.sales_month,
            "sales2Weeks": self.sales_2weeks,
            "applicationsMonth": self.applications_month,
            "applications2Weeks": self.applications_2weeks,
            "crmPrice": self.crm_price,
            "crmStock": self.crm_stock,
            "crmCategoryId": self.crm_category_id,
            "crmCategoryName": self.crm_category_name,
            "promPrice": self.prom_price,
            "priceHistory": [p.to_dict() for p in self.price_history],
            "comments": [c.to_dict() for c in self.comments],
        }
        result.update(self.financials.to_dict())
        return result


@dataclass
class OverrideRecord:
    """User edits shared by every copy of one physical product."""
    normalized_id: str
    commission: Optional[float] = None
    price_history: List[PriceChange] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)

    @property
    def last_price(self) -> Optional[float]:
        return self.price_history[-1].price if self.price_history else None

    def changes_to_dict(self) -> Dict[str, Any]:
        return {
            "priceHistory": [p.to_dict() for p in self.price_history],
            "comments": [c.to_dict() for c in self.comments],
        }


@dataclass(frozen=True)
class CrmOffer:
    """CRM feed entry for one normalized id."""
    price: Optional[float] = None
    stock: Optional[float] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrmOffer":
        return cls(
            price=_optional_float(data.get("price")),
            stock=_optional_float(data.get("stock")),
            category_id=_optional_str(data.get("categoryId")),
            category_name=_optional_str(data.get("categoryName")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "stock": self.stock,
            "categoryId": self.category_id,
            "categoryName": self.category_name,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# FILTER / SORT STATE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RangeFilter:
    """Inclusive numeric bounds; ``None`` means unbounded."""
    min: Optional[float] = None
    max: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.min is None and self.max is None

    def bounds(self) -> Tuple[float, float]:
        low = -math.inf if self.min is None else self.min
        high = math.inf if self.max is None else self.max
        return low, high

    def contains(self, value: float) -> bool:
        low, high = self.bounds()
        return low <= value <= high


@dataclass(frozen=True)
class DateFilter:
    """Inclusive date range applied to ``field`` of cross-table views."""
    field: str = "last_price_change_date"
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.start is not None or self.end is not None

    def bounds(self) -> Tuple[date, date]:
        return (
            self.start or config.filters.date_floor,
            self.end or config.filters.date_ceiling,
        )


@dataclass(frozen=True)
class SortState:
    """Column sort: unsorted, ascending or descending by ``key``."""
    key: Optional[str] = None
    direction: Optional[SortDirection] = None

    @property
    def is_active(self) -> bool:
        return self.key is not None and self.direction is not None

    @classmethod
    def asc(cls, key: str) -> "SortState":
        return cls(key, SortDirection.ASC)

    @classmethod
    def desc(cls, key: str) -> "SortState":
        return cls(key, SortDirection.DESC)

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "direction": self.direction.value if self.direction else None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SortState":
        if not data or not data.get("key") or not data.get("direction"):
            return cls()
        try:
            return cls(str(data["key"]), SortDirection(data["direction"]))
        except ValueError:
            return cls()


@dataclass(frozen=True)
class FilterSpec:
    """Everything that shapes one table or cross-table view."""
    search_id: str = ""
    ranges: Dict[str, RangeFilter] = field(default_factory=dict)
    show_only_marketplace: bool = False
    hide_zero_crm_stock: bool = False
    hide_low_crm_stock: bool = False
    hidden_crm_categories: FrozenSet[str] = frozenset()
    hide_price_changed: bool = False
    date_filter: Optional[DateFilter] = None
    sort: SortState = field(default_factory=SortState)
    current_page: int = 1
    items_per_page: int = field(default_factory=lambda: config.filters.items_per_page)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchId": self.search_id,
            "ranges": {k: {"min": v.min, "max": v.max} for k, v in self.ranges.items()},
            "showOnlyMarketplace": self.show_only_marketplace,
            "hideZeroCrmStock": self.hide_zero_crm_stock,
            "hideLowCrmStock": self.hide_low_crm_stock,
            "hiddenCrmCategories": sorted(self.hidden_crm_categories),
            "hidePriceChanged": self.hide_price_changed,
            "dateFilter": None if self.date_filter is None else {
                "field": self.date_filter.field,
                "from": self.date_filter.start.isoformat() if self.date_filter.start else None,
                "to": self.date_filter.end.isoformat() if self.date_filter.end else None,
            },
            "sortConfig": self.sort.to_dict(),
            "currentPage": self.current_page,
            "itemsPerPage": self.items_per_page,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterSpec":
        if not data:
            return cls()

        ranges = {}
        for key, bounds in (data.get("ranges") or {}).items():
            if isinstance(bounds, dict) and key in RANGE_FIELDS:
                rng = RangeFilter(_optional_float(bounds.get("min")), _optional_float(bounds.get("max")))
                if not rng.is_empty:
                    ranges[key] = rng

        date_filter = None
        raw_date = data.get("dateFilter")
        if isinstance(raw_date, dict):
            field = raw_date.get("field")
            date_filter = DateFilter(
                field=field if field in DATE_FILTER_FIELDS else "last_price_change_date",
                start=_parse_date(raw_date.get("from")),
                end=_parse_date(raw_date.get("to")),
            )

        per_page = data.get("itemsPerPage")
        return cls(
            search_id=str(data.get("searchId") or ""),
            ranges=ranges,
            show_only_marketplace=bool(data.get("showOnlyMarketplace")),
            hide_zero_crm_stock=bool(data.get("hideZeroCrmStock")),
            hide_low_crm_stock=bool(data.get("hideLowCrmStock")),
            hidden_crm_categories=frozenset(str(c) for c in data.get("hiddenCrmCategories") or []),
            hide_price_changed=bool(data.get("hidePriceChanged")),
            date_filter=date_filter,
            sort=SortState.from_dict(data.get("sortConfig")),
            current_page=max(1, int(data.get("currentPage") or 1)),
            items_per_page=int(per_page) if per_page else config.filters.items_per_page,
        )


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# TABLES AND VIEWS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Table:
    """Items produced by one spreadsheet upload."""
    id: str
    name: str
    original_file_name: str
    upload_time: datetime
    data: List[Item] = field(default_factory=list)
    header: List[Any] = field(default_factory=list)
    filters: FilterSpec = field(default_factory=FilterSpec)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fileName": self.original_file_name,
            "uploadTime": format_datetime(self.upload_time),
            "headers": list(self.header),
            "data": [item.to_dict() for item in self.data],
            "filters": self.filters.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Table":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            original_file_name=str(data.get("fileName") or data.get("originalFileName") or ""),
            upload_time=parse_datetime(data.get("uploadTime")) or utcnow(),
            data=[Item.from_dict(i) for i in data.get("data") or [] if isinstance(i, dict)],
            header=list(data.get("headers") or []),
            filters=FilterSpec.from_dict(data.get("filters")),
        )


@dataclass(frozen=True)
class ViewKind:
    """
    Cross-table view selector.

    String forms: ``price_changed``, ``commented``, ``category:<type>``.
    """
    name: str
    category: Optional[CategoryType] = None

    PRICE_CHANGED = "price_changed"
    COMMENTED = "commented"
    CATEGORY = "category"

    @classmethod
    def price_changed(cls) -> "ViewKind":
        return cls(cls.PRICE_CHANGED)

    @classmethod
    def commented(cls) -> "ViewKind":
        return cls(cls.COMMENTED)

    @classmethod
    def for_category(cls, category: CategoryType) -> "ViewKind":
        return cls(cls.CATEGORY, CategoryType(category))

    @classmethod
    def parse(cls, value: str) -> "ViewKind":
        """
        Parse a view kind string.

        Raises:
            ValueError: If the string names no known view
        """
        if value in (cls.PRICE_CHANGED, cls.COMMENTED):
            return cls(value)
        prefix = f"{cls.CATEGORY}:"
        if value.startswith(prefix):
            return cls.for_category(CategoryType(value[len(prefix):]))
        raise ValueError(f"Unknown view kind: {value!r}")

    @property
    def default_sort(self) -> "SortState":
        """Sort used when the user has not picked a column."""
        if self.name == self.PRICE_CHANGED:
            return SortState.desc("last_price_change_date")
        if self.name == self.COMMENTED:
            return SortState.desc("last_comment_date")
        return SortState()

    def __str__(self) -> str:
        if self.category is not None:
            return f"{self.name}:{self.category.value}"
        return self.name
