"""
Workspace: the single owner of all loaded state.

Holds the uploaded tables, the global override and category stores, the
feed caches and every view's filter settings. User edits are validated
here before they reach the override layer; views are rebuilt only when
state or filters changed since the last call.

Usage:
    ws = Workspace()
    table = await ws.upload_table(rows, "March", "march.xlsx")
    await ws.set_commission("ABC-1", "12")
    page = ws.table_view(table.id).page
"""
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pricedesk.events import EventBus, StoreEvent, events as default_events
from pricedesk.exceptions import TableNotFoundError, ValidationError
from pricedesk.feeds import GLOBAL_SCOPE, FeedCache, FeedFetch, FeedRegistry, reconcile
from pricedesk.filters import ViewResult, ViewScope, compose, parse_period, set_range, update_filters
from pricedesk.ingestion import attach_override, create_table
from pricedesk.models import (
    Comment,
    DateFilter,
    FeedKind,
    FilterSpec,
    Item,
    PriceChange,
    Table,
    ViewKind,
    format_datetime,
    utcnow,
)
from pricedesk.normalizer import normalize_id
from pricedesk.observability import get_logger
from pricedesk.overrides import CategoryStore, ItemIndex, OverrideStore
from pricedesk.persistence import AppSnapshot, DebouncedSaver, StorageBackend
from pricedesk.sorting import toggle_sort
from pricedesk.spreadsheet import Source, read_rows
from pricedesk.validators import (
    validate_category_type,
    validate_comment_text,
    validate_commission,
    validate_date_field,
    validate_date_range,
    validate_items_per_page,
    validate_page,
    validate_period,
    validate_price,
    validate_range_bound,
    validate_range_field,
    validate_sort_key,
)
from pricedesk.views import build_view

logger = get_logger(__name__)

ViewKey = Tuple[str, str]


class Workspace:
    """Tables, global edits, feed caches and view state of one user."""

    def __init__(self, event_bus: Optional[EventBus] = None, clock: Callable = utcnow):
        self._events = event_bus or default_events
        self._clock = clock
        self.index = ItemIndex()
        self.overrides = OverrideStore(self.index, on_change=self._record_change, clock=clock)
        self.categories = CategoryStore(on_change=self._record_change, clock=clock)
        self.feeds = FeedRegistry(self._events)
        self._global_filters: Dict[str, FilterSpec] = {}
        self._revision = 0
        self._views: Dict[ViewKey, Tuple[int, FilterSpec, ViewResult]] = {}
        self._changes: List[Tuple[str, str]] = []
        self._saver: Optional[DebouncedSaver] = None

    @property
    def revision(self) -> int:
        """Counter bumped by every change that can alter a view."""
        return self._revision

    # ─── Change tracking ─────────────────────────────────────────────────

    def _record_change(self, normalized_id: str, kind: str) -> None:
        self._revision += 1
        self._changes.append((normalized_id, kind))

    def _touch(self) -> None:
        self._revision += 1

    def _request_save(self) -> None:
        if self._saver is not None:
            self._saver.request_save()

    async def _publish_changes(self) -> None:
        changes, self._changes = self._changes, []
        for normalized_id, kind in changes:
            await self._events.emit(
                StoreEvent.OVERRIDE_CHANGED,
                {"normalized_id": normalized_id, "change": kind},
            )
        if changes:
            self._request_save()

    # ─── Tables ──────────────────────────────────────────────────────────

    @property
    def tables(self) -> List[Table]:
        return self.index.tables

    def get_table(self, table_id: str) -> Table:
        """
        Raises:
            TableNotFoundError: If no table has that id
        """
        table = self.index.table(str(table_id))
        if table is None:
            raise TableNotFoundError(str(table_id))
        return table

    async def upload_table(self, rows: List[List[Any]], name: str, file_name: str) -> Table:
        """
        Ingest sheet rows as a new table.

        Existing global edits are attached to matching products.

        Raises:
            IngestionError: If the sheet has no data rows (nothing is added)
        """
        table = create_table(
            rows,
            name=name,
            file_name=file_name,
            overrides=self.overrides,
            existing_ids=[t.id for t in self.tables],
            upload_time=self._clock(),
        )
        self.index.add_table(table)
        self._touch()

        logger.info(
            "Table uploaded",
            extra={"table_id": table.id, "table_name": table.name, "items": len(table.data)},
        )
        await self._events.emit(
            StoreEvent.TABLE_UPLOADED,
            {"table_id": table.id, "name": table.name, "items": len(table.data)},
        )
        self._request_save()
        return table

    async def upload_file(self, source: Source, name: str = None, file_name: str = None) -> Table:
        """Read a spreadsheet (path or bytes) and upload its first sheet."""
        file_name = file_name or (str(source) if isinstance(source, str) else "upload.xlsx")
        rows = read_rows(source, file_name=file_name)
        return await self.upload_table(rows, name or file_name, file_name)

    async def delete_table(self, table_id: str) -> Table:
        """
        Remove a table and its table-scoped feed caches.

        Global edits and category membership are kept.

        Raises:
            TableNotFoundError: If no table has that id
        """
        table = self.index.remove_table(str(table_id))
        if table is None:
            raise TableNotFoundError(str(table_id))

        dropped = self.feeds.drop_table(table.id)
        self._views = {key: value for key, value in self._views.items() if key != ("table", table.id)}
        self._touch()

        logger.info("Table deleted", extra={"table_id": table.id, "feed_caches": dropped})
        await self._events.emit(StoreEvent.TABLE_DELETED, {"table_id": table.id, "name": table.name})
        self._request_save()
        return table

    # ─── Edits ───────────────────────────────────────────────────────────

    @staticmethod
    def _item_id(item_id: Any) -> str:
        nid = normalize_id(item_id)
        if not nid:
            raise ValidationError("item_id", "Item id is required", item_id)
        return nid

    def _source_table(self, table_id: Optional[str]) -> Optional[Table]:
        return self.get_table(table_id) if table_id is not None else None

    async def set_commission(self, item_id: Any, value: Any) -> float:
        """
        Set a product's commission everywhere it is loaded.

        Raises:
            ValidationError: If the id is blank or the value is outside [0, 100)
        """
        nid = self._item_id(item_id)
        commission = validate_commission(value)
        self.overrides.set_commission(nid, commission)
        await self._publish_changes()
        return commission

    async def change_price(self, item_id: Any, value: Any, table_id: Optional[str] = None) -> PriceChange:
        """
        Append a manual price to a product's history.

        Raises:
            ValidationError: If the price is not a positive number
            TableNotFoundError: If ``table_id`` names no loaded table
        """
        nid = self._item_id(item_id)
        price = validate_price(value)
        source = self._source_table(table_id)
        entry = self.overrides.append_price_change(nid, price, source)
        await self._publish_changes()
        return entry

    async def add_comment(self, item_id: Any, text: Any, table_id: Optional[str] = None) -> Comment:
        nid = self._item_id(item_id)
        comment_text = validate_comment_text(text)
        source = self._source_table(table_id)
        comment = self.overrides.append_comment(nid, comment_text, source)
        await self._publish_changes()
        return comment

    async def delete_comment(self, item_id: Any, comment_id: str) -> bool:
        nid = self._item_id(item_id)
        deleted = self.overrides.delete_comment(nid, comment_id)
        await self._publish_changes()
        return deleted

    async def add_to_category(self, item_id: Any, category: Any) -> bool:
        nid = self._item_id(item_id)
        added = self.categories.add(validate_category_type(category), nid)
        await self._publish_changes()
        return added

    async def remove_from_category(self, item_id: Any, category: Any) -> bool:
        nid = self._item_id(item_id)
        removed = self.categories.remove(validate_category_type(category), nid)
        await self._publish_changes()
        return removed

    async def clear_category(self, category: Any) -> int:
        cleared = self.categories.clear(validate_category_type(category))
        await self._publish_changes()
        return cleared

    # ─── Feeds ───────────────────────────────────────────────────────────

    async def refresh_feed(self, kind: FeedKind, fetch: FeedFetch, table_id: Optional[str] = None) -> bool:
        """
        Refresh the global feed cache, or a table's own cache.

        Returns:
            False if a refresh of the same cache was already running

        Raises:
            TableNotFoundError: If ``table_id`` names no loaded table
        """
        scope = self.get_table(table_id).id if table_id is not None else GLOBAL_SCOPE
        performed = await self.feeds.refresh(FeedKind(kind), fetch, scope)
        if performed:
            self._touch()
            self._request_save()
        return performed

    def available_crm_categories(self, table_id: Optional[str] = None) -> List[Tuple[str, str]]:
        scope = str(table_id) if table_id is not None else GLOBAL_SCOPE
        return self.feeds.crm_categories(scope)

    # ─── Views ───────────────────────────────────────────────────────────

    def _cached(self, key: ViewKey, spec: FilterSpec, build: Callable[[], ViewResult]) -> ViewResult:
        cached = self._views.get(key)
        if cached is not None and cached[0] == self._revision and cached[1] == spec:
            return cached[2]
        result = build()
        self._views[key] = (self._revision, spec, result)
        return result

    def _table_items(self, table: Table) -> List[Item]:
        crm = self.feeds.entries(FeedKind.CRM, table.id)
        prom = self.feeds.entries(FeedKind.PROM, table.id)
        if crm is None and prom is None:
            return list(table.data)
        return [reconcile(item, crm, prom) for item in table.data]

    def table_view(self, table_id: str) -> ViewResult:
        """Filtered, sorted and paginated items of one table."""
        table = self.get_table(table_id)
        return self._cached(
            ("table", table.id),
            table.filters,
            lambda: compose(self._table_items(table), table.filters, ViewScope.TABLE),
        )

    @staticmethod
    def _view_kind(kind: Union[ViewKind, str]) -> ViewKind:
        if isinstance(kind, ViewKind):
            return kind
        try:
            return ViewKind.parse(kind)
        except ValueError:
            raise ValidationError("view", "Unknown view", kind)

    def global_filters(self, kind: Union[ViewKind, str]) -> FilterSpec:
        return self._global_filters.get(str(self._view_kind(kind)), FilterSpec())

    def global_view(self, kind: Union[ViewKind, str]) -> ViewResult:
        """Deduplicated cross-table view with global feed data."""
        view_kind = self._view_kind(kind)
        spec = self.global_filters(view_kind)

        def build() -> ViewResult:
            items = build_view(
                self.tables,
                view_kind,
                crm=self.feeds.entries(FeedKind.CRM),
                prom=self.feeds.entries(FeedKind.PROM),
                categories=self.categories,
            )
            return compose(items, spec, ViewScope.GLOBAL, view_kind)

        return self._cached(("global", str(view_kind)), spec, build)

    # ─── Filter state ────────────────────────────────────────────────────

    @staticmethod
    def _validate_changes(changes: Dict[str, Any]) -> None:
        if "current_page" in changes:
            validate_page(changes["current_page"])
        if "items_per_page" in changes:
            validate_items_per_page(changes["items_per_page"])
        for key, rng in (changes.get("ranges") or {}).items():
            validate_range_field(key, "ranges")
            validate_range_bound(rng.min, "min")
            validate_range_bound(rng.max, "max")
        date_filter = changes.get("date_filter")
        if date_filter is not None:
            validate_date_field(date_filter.field)
        sort = changes.get("sort")
        if sort is not None and sort.key is not None:
            validate_sort_key(sort.key)

    @staticmethod
    def _validate_range(field: str, low: Any, high: Any) -> Tuple[Optional[float], Optional[float]]:
        validate_range_field(field)
        return validate_range_bound(low, "min"), validate_range_bound(high, "max")

    def _set_table_filters(self, table: Table, spec: FilterSpec) -> FilterSpec:
        if spec != table.filters:
            table.filters = spec
            self._request_save()
        return spec

    def update_table_filters(self, table_id: str, **changes) -> FilterSpec:
        """
        Change filter fields of a table view.

        Raises:
            ValidationError: If a page, page size or column is invalid
        """
        table = self.get_table(table_id)
        self._validate_changes(changes)
        return self._set_table_filters(table, update_filters(table.filters, **changes))

    def set_table_range(self, table_id: str, field: str, low: Optional[float], high: Optional[float]) -> FilterSpec:
        table = self.get_table(table_id)
        rng = self._validate_range(field, low, high)
        return self._set_table_filters(table, set_range(table.filters, field, *rng))

    def toggle_table_sort(self, table_id: str, key: str) -> FilterSpec:
        table = self.get_table(table_id)
        sort = toggle_sort(table.filters.sort, validate_sort_key(key))
        return self._set_table_filters(table, update_filters(table.filters, sort=sort))

    def set_table_page(self, table_id: str, page: int) -> FilterSpec:
        table = self.get_table(table_id)
        return self._set_table_filters(table, update_filters(table.filters, current_page=validate_page(page)))

    def _set_global_filters(self, kind: Union[ViewKind, str], spec: FilterSpec) -> FilterSpec:
        self._global_filters[str(self._view_kind(kind))] = spec
        return spec

    def update_global_filters(self, kind: Union[ViewKind, str], **changes) -> FilterSpec:
        self._validate_changes(changes)
        return self._set_global_filters(kind, update_filters(self.global_filters(kind), **changes))

    def set_global_range(self, kind: Union[ViewKind, str], field: str, low: Optional[float], high: Optional[float]) -> FilterSpec:
        rng = self._validate_range(field, low, high)
        return self._set_global_filters(kind, set_range(self.global_filters(kind), field, *rng))

    def toggle_global_sort(self, kind: Union[ViewKind, str], key: str) -> FilterSpec:
        spec = self.global_filters(kind)
        sort = toggle_sort(spec.sort, validate_sort_key(key))
        return self._set_global_filters(kind, update_filters(spec, sort=sort))

    def set_global_page(self, kind: Union[ViewKind, str], page: int) -> FilterSpec:
        spec = self.global_filters(kind)
        return self._set_global_filters(kind, update_filters(spec, current_page=validate_page(page)))

    def set_global_date_filter(
        self,
        kind: Union[ViewKind, str],
        start: Optional[str],
        end: Optional[str],
        field: str = None,
    ) -> FilterSpec:
        """
        Restrict a cross-table view to a date range (``YYYY-MM-DD`` strings).

        The date field defaults to the view's own date (last price change or
        last comment).
        """
        view_kind = self._view_kind(kind)
        start_date, end_date = validate_date_range(start, end)
        field = validate_date_field(field or (view_kind.default_sort.key or "last_price_change_date"))
        date_filter = DateFilter(field, start_date, end_date) if start_date or end_date else None
        return self._set_global_filters(view_kind, update_filters(self.global_filters(view_kind), date_filter=date_filter))

    def set_global_period(self, kind: Union[ViewKind, str], period: str, field: str = None) -> FilterSpec:
        """Date filter from a shortcut: today, yesterday, week, last_week, month, last_month."""
        view_kind = self._view_kind(kind)
        field = validate_date_field(field or (view_kind.default_sort.key or "last_price_change_date"))
        date_filter = parse_period(validate_period(period)).to_filter(field)
        return self._set_global_filters(view_kind, update_filters(self.global_filters(view_kind), date_filter=date_filter))

    # ─── Persistence ─────────────────────────────────────────────────────

    def snapshot(self) -> AppSnapshot:
        """Serialize the whole workspace into the stored document shape."""
        table_ids = [t.id for t in self.tables]
        table_xml_data: Dict[str, Dict[str, Any]] = {}
        table_xml_status: Dict[str, Dict[str, str]] = {}
        for cache in self.feeds.caches():
            if cache.scope == GLOBAL_SCOPE or cache.scope not in table_ids:
                continue
            table_xml_data.setdefault(cache.scope, {})[cache.kind.value] = cache.entries_to_dict()
            table_xml_status.setdefault(cache.scope, {})[cache.kind.value] = cache.status.value

        crm = self.feeds.get(FeedKind.CRM)
        prom = self.feeds.get(FeedKind.PROM)
        return AppSnapshot(
            tables=[t.to_dict() for t in self.tables],
            global_commissions=self.overrides.commissions_to_dict(),
            global_item_changes=self.overrides.changes_to_dict(),
            categories=self.categories.to_dict(),
            xml_last_update={
                "crm": format_datetime(crm.last_updated),
                "prom": format_datetime(prom.last_updated),
            },
            xml_data_counts={"crm": len(crm.entries), "prom": len(prom.entries)},
            available_crm_categories=[
                {"id": category_id, "name": name}
                for category_id, name in self.feeds.crm_categories()
            ],
            table_xml_data=table_xml_data,
            table_xml_loading_status=table_xml_status,
            global_crm_data=crm.entries_to_dict(),
            global_prom_data=prom.entries_to_dict(),
            global_xml_loading_status={"crm": crm.status.value, "prom": prom.status.value},
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Union[AppSnapshot, Dict[str, Any]],
        event_bus: Optional[EventBus] = None,
        clock: Callable = utcnow,
    ) -> "Workspace":
        """Rebuild a workspace from a stored document."""
        if not isinstance(snapshot, AppSnapshot):
            snapshot = AppSnapshot.from_dict(snapshot)

        ws = cls(event_bus=event_bus, clock=clock)
        ws.overrides.load(snapshot.global_commissions, snapshot.global_item_changes)
        ws.categories.load(snapshot.categories)

        for raw in snapshot.tables:
            if not isinstance(raw, dict):
                continue
            table = Table.from_dict(raw)
            if not table.id:
                logger.warning("Skipping stored table without id", extra={"table_name": table.name})
                continue
            for item in table.data:
                record = ws.overrides.get(item.normalized_id)
                if record is not None:
                    attach_override(item, record)
            ws.index.add_table(table)

        for kind in FeedKind:
            ws.feeds.put(FeedCache.from_dict(
                kind,
                GLOBAL_SCOPE,
                snapshot.global_crm_data if kind == FeedKind.CRM else snapshot.global_prom_data,
                snapshot.global_xml_loading_status.get(kind.value),
                snapshot.xml_last_update.get(kind.value),
            ))

        for table_id, data in snapshot.table_xml_data.items():
            if ws.index.table(table_id) is None or not isinstance(data, dict):
                continue
            statuses = snapshot.table_xml_loading_status.get(table_id)
            for kind in FeedKind:
                if kind.value not in data:
                    continue
                status = statuses.get(kind.value) if isinstance(statuses, dict) else statuses
                ws.feeds.put(FeedCache.from_dict(kind, table_id, data[kind.value], status))

        logger.info(
            "Workspace restored",
            extra={"tables": len(ws.tables), "overrides": len(ws.overrides)},
        )
        return ws

    @classmethod
    async def load(
        cls,
        storage: StorageBackend,
        event_bus: Optional[EventBus] = None,
        autosave: bool = True,
    ) -> "Workspace":
        """Load from a backend and, by default, save back to it on every change."""
        ws = cls.from_snapshot(await storage.load(), event_bus=event_bus)
        if autosave:
            ws.attach_storage(storage)
        return ws

    def attach_storage(self, storage: StorageBackend, delay: float = None) -> DebouncedSaver:
        self._saver = DebouncedSaver(storage, self.snapshot, delay=delay, event_bus=self._events)
        return self._saver

    @property
    def saver(self) -> Optional[DebouncedSaver]:
        return self._saver

    async def flush(self) -> None:
        """Write pending changes immediately."""
        if self._saver is not None:
            await self._saver.flush()
