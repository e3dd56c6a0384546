"""
Supplier feed parsing, caching and reconciliation.

Two independent XML catalogues are merged onto items:

- CRM feed: price, stock and category per product code
- Marketplace (Prom) feed: price per product code

Both are cached per scope (one uploaded table, or the global scope used
by cross-table views) and keyed by normalized identifier.
"""
import dataclasses
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from pricedesk.events import EventBus, StoreEvent, events as default_events
from pricedesk.exceptions import FeedError, FeedParseError
from pricedesk.models import CrmOffer, FeedKind, Item, LoadingStatus, format_datetime, parse_datetime, utcnow
from pricedesk.normalizer import normalize_id
from pricedesk.observability import Timer, get_logger

logger = get_logger(__name__)

GLOBAL_SCOPE = "global"

_ID_TAGS = ("vendorCode", "article", "sku")
_STOCK_TAGS = ("quantity_in_stock", "stock_quantity", "quantity", "stock")

FeedFetch = Callable[[], Awaitable[str]]


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILIATION
# ═══════════════════════════════════════════════════════════════════════════════

def reconcile(
    item: Item,
    crm: Optional[Mapping[str, CrmOffer]],
    prom: Optional[Mapping[str, float]],
) -> Item:
    """
    Return a copy of ``item`` with feed fields taken from the given caches.

    Fields are ``None`` when the item is absent from a cache. The input item
    is never modified.
    """
    offer = crm.get(item.normalized_id) if crm else None
    return dataclasses.replace(
        item,
        crm_price=offer.price if offer else None,
        crm_stock=offer.stock if offer else None,
        crm_category_id=offer.category_id if offer else None,
        crm_category_name=offer.category_name if offer else None,
        prom_price=prom.get(item.normalized_id) if prom else None,
    )


def strip_feed_fields(item: Item) -> Item:
    """Copy of ``item`` without any feed data."""
    return reconcile(item, None, None)


# ═══════════════════════════════════════════════════════════════════════════════
# XML PARSING
# ═══════════════════════════════════════════════════════════════════════════════

def _parse_document(xml_text: str) -> ET.Element:
    if not xml_text or not xml_text.strip():
        raise FeedParseError("Feed is empty", expected="XML document")
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise FeedParseError("Malformed feed XML", str(e)) from e

    if root.tag != "offers" and root.find(".//offers") is None:
        raise FeedParseError("Feed has no offers section", expected="<offers>")
    return root


def _text(element: ET.Element, tag: str) -> Optional[str]:
    child = element.find(tag)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def _number(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text.replace(" ", "").replace(",", "."))
    except ValueError:
        return None


def _offer_id(offer: ET.Element) -> str:
    for tag in _ID_TAGS:
        value = _text(offer, tag)
        if value:
            return normalize_id(value)
    return normalize_id(offer.get("id"))


def parse_categories(root: ET.Element) -> Dict[str, str]:
    """Category id -> name mapping from the ``<categories>`` list."""
    categories = {}
    for category in root.iter("category"):
        category_id = category.get("id")
        if category_id:
            categories[category_id] = (category.text or "").strip()
    return categories


def parse_crm_feed(xml_text: str) -> Dict[str, CrmOffer]:
    """
    Parse the CRM catalogue.

    Returns:
        Normalized id -> CrmOffer. Stock is ``None`` when the offer carries
        no parseable stock element; ``0`` only when the feed says 0.

    Raises:
        FeedParseError: Malformed XML or no offers section
    """
    root = _parse_document(xml_text)
    categories = parse_categories(root)

    result: Dict[str, CrmOffer] = {}
    for offer in root.iter("offer"):
        key = _offer_id(offer)
        if not key:
            continue

        stock = None
        for tag in _STOCK_TAGS:
            stock = _number(_text(offer, tag))
            if stock is not None:
                break

        category_id = _text(offer, "categoryId")
        result[key] = CrmOffer(
            price=_number(_text(offer, "price")),
            stock=stock,
            category_id=category_id,
            category_name=categories.get(category_id) if category_id else None,
        )

    logger.info("CRM feed parsed", extra={"offers": len(result), "categories": len(categories)})
    return result


def parse_marketplace_feed(xml_text: str) -> Dict[str, float]:
    """
    Parse the marketplace catalogue.

    Returns:
        Normalized id -> price, for offers with a parseable price

    Raises:
        FeedParseError: Malformed XML or no offers section
    """
    root = _parse_document(xml_text)

    result: Dict[str, float] = {}
    for offer in root.iter("offer"):
        key = _offer_id(offer)
        price = _number(_text(offer, "price"))
        if key and price is not None:
            result[key] = price

    logger.info("Marketplace feed parsed", extra={"offers": len(result)})
    return result


FEED_PARSERS: Dict[FeedKind, Callable[[str], Dict[str, Any]]] = {
    FeedKind.CRM: parse_crm_feed,
    FeedKind.PROM: parse_marketplace_feed,
}


# ═══════════════════════════════════════════════════════════════════════════════
# CACHES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class FeedCache:
    """Parsed feed entries for one (kind, scope) pair."""
    kind: FeedKind
    scope: str = GLOBAL_SCOPE
    entries: Dict[str, Any] = field(default_factory=dict)
    status: LoadingStatus = LoadingStatus.NOT_LOADED
    last_updated: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_available(self) -> bool:
        """True when the cache holds data from some successful load."""
        return self.last_updated is not None or bool(self.entries)

    def entries_to_dict(self) -> Dict[str, Any]:
        if self.kind == FeedKind.CRM:
            return {k: v.to_dict() for k, v in self.entries.items()}
        return dict(self.entries)

    @classmethod
    def from_dict(
        cls,
        kind: FeedKind,
        scope: str,
        entries: Optional[Dict[str, Any]],
        status: Optional[str] = None,
        last_updated: Any = None,
    ) -> "FeedCache":
        parsed: Dict[str, Any] = {}
        for key, value in (entries or {}).items():
            if kind == FeedKind.CRM:
                if isinstance(value, dict):
                    parsed[key] = CrmOffer.from_dict(value)
            else:
                price = _number(str(value)) if value is not None else None
                if price is not None:
                    parsed[key] = price

        try:
            loading_status = LoadingStatus(status) if status else LoadingStatus.NOT_LOADED
        except ValueError:
            loading_status = LoadingStatus.NOT_LOADED
        # An interrupted refresh must not block the next one
        if loading_status == LoadingStatus.LOADING:
            loading_status = LoadingStatus.LOADED if parsed else LoadingStatus.NOT_LOADED

        return cls(
            kind=kind,
            scope=scope,
            entries=parsed,
            status=loading_status,
            last_updated=parse_datetime(last_updated),
        )


class FeedRegistry:
    """
    All feed caches of a workspace.

    Usage:
        registry = FeedRegistry()
        await registry.refresh(FeedKind.CRM, fetch_crm_text)
        crm = registry.entries(FeedKind.CRM)
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._caches: Dict[Tuple[FeedKind, str], FeedCache] = {}
        self._events = event_bus or default_events

    def get(self, kind: FeedKind, scope: str = GLOBAL_SCOPE) -> FeedCache:
        """Cache for (kind, scope), created empty on first access."""
        key = (FeedKind(kind), str(scope))
        cache = self._caches.get(key)
        if cache is None:
            cache = FeedCache(kind=key[0], scope=key[1])
            self._caches[key] = cache
        return cache

    def put(self, cache: FeedCache) -> None:
        self._caches[(cache.kind, cache.scope)] = cache

    def entries(self, kind: FeedKind, scope: str = GLOBAL_SCOPE) -> Optional[Dict[str, Any]]:
        """Entries of a cache, or None if it was never loaded."""
        cache = self._caches.get((FeedKind(kind), str(scope)))
        if cache is None or not cache.is_available:
            return None
        return cache.entries

    def status(self, kind: FeedKind, scope: str = GLOBAL_SCOPE) -> LoadingStatus:
        return self.get(kind, scope).status

    def caches(self) -> List[FeedCache]:
        return list(self._caches.values())

    async def refresh(self, kind: FeedKind, fetch: FeedFetch, scope: str = GLOBAL_SCOPE) -> bool:
        """
        Fetch, parse and store one feed.

        A refresh already in flight for the same cache makes this call a
        no-op. On failure the previous entries are kept, the cache is marked
        ``error`` and ``FEED_FAILED`` is emitted.

        Returns:
            True if a refresh was performed (successfully or not),
            False if it was skipped because one is already running
        """
        cache = self.get(kind, scope)
        if cache.status == LoadingStatus.LOADING:
            logger.info(
                "Feed refresh already in progress, ignoring",
                extra={"kind": cache.kind.value, "scope": cache.scope},
            )
            return False

        cache.status = LoadingStatus.LOADING
        cache.error = None

        try:
            with Timer(f"feed_refresh_{cache.kind.value}", logger):
                text = await fetch()
                entries = FEED_PARSERS[cache.kind](text)
        except FeedError as e:
            cache.status = LoadingStatus.ERROR
            cache.error = str(e)
            logger.error(
                f"Feed refresh failed: {e}",
                extra={"kind": cache.kind.value, "scope": cache.scope},
            )
            await self._events.emit(
                StoreEvent.FEED_FAILED,
                {"kind": cache.kind.value, "scope": cache.scope, "error": str(e)},
            )
            return True
        except Exception as e:
            cache.status = LoadingStatus.ERROR
            cache.error = str(e)
            raise

        cache.entries = entries
        cache.status = LoadingStatus.LOADED
        cache.last_updated = utcnow()

        await self._events.emit(
            StoreEvent.FEED_LOADED,
            {
                "kind": cache.kind.value,
                "scope": cache.scope,
                "count": len(entries),
                "last_updated": format_datetime(cache.last_updated),
            },
        )
        return True

    def drop_table(self, table_id: str) -> int:
        """
        Remove all caches scoped to a table.

        Returns:
            Number of caches removed
        """
        keys = [key for key in self._caches if key[1] == str(table_id)]
        for key in keys:
            del self._caches[key]
        return len(keys)

    def crm_categories(self, scope: str = GLOBAL_SCOPE) -> List[Tuple[str, str]]:
        """Distinct (category id, name) pairs present in a CRM cache."""
        entries = self.entries(FeedKind.CRM, scope) or {}
        seen: Dict[str, str] = {}
        for offer in entries.values():
            if offer.category_id and offer.category_id not in seen:
                seen[offer.category_id] = offer.category_name or ""
        return sorted(seen.items(), key=lambda pair: (pair[1].casefold(), pair[0]))
