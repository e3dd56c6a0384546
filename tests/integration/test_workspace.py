"""
Integration tests for pricedesk/workspace.py

Exercises upload, global edits, feed refresh, views and snapshots through
the Workspace facade.
"""
import pytest
from typing import Any, Dict, List

from pricedesk.events import StoreEvent
from pricedesk.exceptions import FeedConnectionError, IngestionError, TableNotFoundError, ValidationError
from pricedesk.models import (
    CategoryType,
    DateFilter,
    FeedKind,
    LoadingStatus,
    RangeFilter,
    SortState,
    ViewKind,
)
from pricedesk.persistence import AppSnapshot
from pricedesk.workspace import Workspace


def _source(text: str):
    async def fetch() -> str:
        return text
    return fetch


def _failing_source():
    async def fetch() -> str:
        raise FeedConnectionError("All feed sources failed", "timeout")
    return fetch


class MemoryStorage:
    """In-memory storage backend."""

    def __init__(self, snapshot: AppSnapshot = None):
        self.snapshot = snapshot or AppSnapshot()
        self.saved: List[Dict[str, Any]] = []

    async def load(self) -> AppSnapshot:
        return AppSnapshot.from_dict(self.snapshot.to_dict())

    async def save(self, snapshot: AppSnapshot) -> None:
        self.saved.append(snapshot.to_dict())

    async def delete_table(self, table_id: str) -> bool:
        return self.snapshot.remove_table(table_id)


async def _three_tables(ws, header, row):
    """Same product in three uploads, spelled differently."""
    tables = []
    for name, item_id in (("January", "X1"), ("February", "x1"), ("March", " X1 ")):
        rows = [header, row(item_id, 100, commission=0), row(f"only-{name}", 10)]
        tables.append(await ws.upload_table(rows, name, f"{name}.xlsx"))
    return tables


class TestUpload:
    """Tests for table upload."""

    @pytest.mark.asyncio
    async def test_derived_prices(self, workspace, header, row):
        table = await workspace.upload_table([header, row("X1", 100, commission=0)], "Stock", "stock.xlsx")

        item = table.data[0]
        assert item.commission == 17.0
        assert item.total_cost == pytest.approx(204.82, abs=0.01)
        assert item.markup(10) == pytest.approx(225.30, abs=0.01)

    @pytest.mark.asyncio
    async def test_header_only_rejected(self, workspace, header):
        with pytest.raises(IngestionError):
            await workspace.upload_table([header], "Empty", "empty.xlsx")
        assert workspace.tables == []

    @pytest.mark.asyncio
    async def test_upload_emits_event(self, workspace, bus, sample_rows):
        received = []

        @bus.on(StoreEvent.TABLE_UPLOADED)
        async def handler(data):
            received.append(data)

        table = await workspace.upload_table(sample_rows, "March", "march.xlsx")

        assert received == [{"table_id": table.id, "name": "March", "items": 3}]

    @pytest.mark.asyncio
    async def test_unique_table_ids(self, workspace, sample_rows):
        first = await workspace.upload_table(sample_rows, "A", "a.xlsx")
        second = await workspace.upload_table(sample_rows, "B", "b.xlsx")
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_new_upload_inherits_global_edits(self, workspace, header, row):
        await workspace.upload_table([header, row("X1")], "Old", "old.xlsx")
        await workspace.set_commission("x1", 10)
        await workspace.change_price("x1", 250)

        table = await workspace.upload_table([header, row("X1", commission=30)], "New", "new.xlsx")

        assert table.data[0].commission == 10.0
        assert [p.price for p in table.data[0].price_history] == [250.0]


class TestGlobalEdits:
    """Fan-out of commission, price and comment edits."""

    @pytest.mark.asyncio
    async def test_commission_reaches_every_copy(self, workspace, header, row):
        tables = await _three_tables(workspace, header, row)

        await workspace.set_commission("X1", "10")

        for table in tables:
            item = table.data[0]
            assert item.commission == 10.0
            assert item.total_cost == pytest.approx(170 / 0.9)
        assert tables[0].data[1].commission == 17.0

    @pytest.mark.asyncio
    async def test_previous_price(self, workspace, header, row):
        tables = await _three_tables(workspace, header, row)

        await workspace.change_price("x1", 50, table_id=tables[0].id)
        entry = await workspace.change_price("x1", 150, table_id=tables[2].id)

        assert entry.previous_price == 50.0
        assert entry.source_table_name == "March"
        assert tables[1].data[0].price_history[-1] == entry

    @pytest.mark.asyncio
    @pytest.mark.parametrize("call,args", [
        ("set_commission", ("X1", 100)),
        ("set_commission", ("X1", "abc")),
        ("change_price", ("X1", 0)),
        ("change_price", ("X1", "12abc")),
        ("add_comment", ("X1", "   ")),
        ("add_to_category", ("X1", "bestsellers")),
        ("set_commission", ("  ", 10)),
    ])
    async def test_invalid_input_changes_nothing(self, workspace, header, row, call, args):
        tables = await _three_tables(workspace, header, row)
        before = tables[0].data[0].to_dict()
        revision = workspace.revision

        with pytest.raises(ValidationError):
            await getattr(workspace, call)(*args)

        assert tables[0].data[0].to_dict() == before
        assert workspace.revision == revision
        assert len(workspace.overrides) == 0

    @pytest.mark.asyncio
    async def test_unknown_source_table(self, workspace, sample_rows):
        await workspace.upload_table(sample_rows, "A", "a.xlsx")
        with pytest.raises(TableNotFoundError):
            await workspace.change_price("ABC-1", 10, table_id="missing")

    @pytest.mark.asyncio
    async def test_comments(self, workspace, header, row):
        tables = await _three_tables(workspace, header, row)

        comment = await workspace.add_comment("x1", "  call supplier ")
        assert comment.text == "call supplier"
        assert all(t.data[0].comments == [comment] for t in tables)

        assert await workspace.delete_comment("X1", comment.id) is True
        assert all(t.data[0].comments == [] for t in tables)

    @pytest.mark.asyncio
    async def test_change_events(self, workspace, bus, sample_rows):
        received = []

        @bus.on(StoreEvent.OVERRIDE_CHANGED)
        async def handler(data):
            received.append(data)

        await workspace.upload_table(sample_rows, "A", "a.xlsx")
        await workspace.set_commission("АВС-1", 12)

        assert received == [{"normalized_id": "abc-1", "change": "commission"}]


class TestCategories:

    @pytest.mark.asyncio
    async def test_category_view(self, workspace, header, row):
        await _three_tables(workspace, header, row)

        assert await workspace.add_to_category("X1", "new") is True
        assert await workspace.add_to_category("x1", CategoryType.NEW) is False

        view = workspace.global_view("category:new")
        assert [item.normalized_id for item in view.filtered] == ["x1"]
        assert view.filtered[0].category_added_date is not None

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, workspace):
        await workspace.add_to_category("a", "ab")
        await workspace.add_to_category("b", "ab")

        assert await workspace.remove_from_category("a", "ab") is True
        assert await workspace.clear_category("ab") == 1
        assert workspace.categories.counts()["ab"] == 0


class TestDeleteTable:

    @pytest.mark.asyncio
    async def test_cascade(self, workspace, header, row, crm_xml):
        tables = await _three_tables(workspace, header, row)
        await workspace.change_price("x1", 99)
        await workspace.refresh_feed(FeedKind.CRM, _source(crm_xml), table_id=tables[0].id)

        await workspace.delete_table(tables[0].id)

        assert [t.id for t in workspace.tables] == [tables[1].id, tables[2].id]
        assert workspace.feeds.entries(FeedKind.CRM, tables[0].id) is None
        assert workspace.index.locate("x1") == [(tables[1].id, 0), (tables[2].id, 0)]
        assert workspace.overrides.get("x1").last_price == 99.0
        assert workspace.index.is_consistent()

    @pytest.mark.asyncio
    async def test_unknown(self, workspace):
        with pytest.raises(TableNotFoundError):
            await workspace.delete_table("nope")


class TestFeeds:

    @pytest.mark.asyncio
    async def test_global_feed_in_global_view(self, workspace, sample_rows, crm_xml, prom_xml):
        await workspace.upload_table(sample_rows, "A", "a.xlsx")
        await workspace.change_price("ABC-1", 300)

        assert await workspace.refresh_feed("crm", _source(crm_xml)) is True
        await workspace.refresh_feed(FeedKind.PROM, _source(prom_xml))

        record = workspace.global_view(ViewKind.price_changed()).filtered[0]
        assert record.crm_stock == 4.0
        assert record.crm_category_name == "Lamps"
        assert record.prom_price == 349.0

    @pytest.mark.asyncio
    async def test_table_feed_in_table_view(self, workspace, sample_rows, crm_xml):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        assert workspace.table_view(table.id).filtered[0].crm_stock is None

        await workspace.refresh_feed(FeedKind.CRM, _source(crm_xml), table_id=table.id)
        items = {item.id: item for item in workspace.table_view(table.id).filtered}

        assert items["ABC-1"].crm_stock == 4.0
        assert items["XYZ-2"].crm_stock == 0.0
        assert items["QWE-3"].crm_stock is None
        assert workspace.available_crm_categories(table.id) == [("20", "Cables"), ("10", "Lamps")]

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_old_entries(self, workspace, bus, crm_xml):
        failures = []

        @bus.on(StoreEvent.FEED_FAILED)
        async def handler(data):
            failures.append(data)

        await workspace.refresh_feed(FeedKind.CRM, _source(crm_xml))
        await workspace.refresh_feed(FeedKind.CRM, _failing_source())

        assert workspace.feeds.status(FeedKind.CRM) == LoadingStatus.ERROR
        assert "abc-1" in workspace.feeds.entries(FeedKind.CRM)
        assert failures[0]["kind"] == "crm"


class TestViews:
    """Tests for view composition and memoization."""

    @pytest.mark.asyncio
    async def test_dedup_across_tables(self, workspace, header, row):
        await _three_tables(workspace, header, row)
        await workspace.change_price("X1", 120)
        await workspace.add_comment("only-January", "check")

        assert [i.normalized_id for i in workspace.global_view("price_changed").filtered] == ["x1"]
        assert [i.normalized_id for i in workspace.global_view("commented").filtered] == ["only-january"]

    @pytest.mark.asyncio
    async def test_memoized_until_change(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        first = workspace.table_view(table.id)
        assert workspace.table_view(table.id) is first

        await workspace.set_commission("ABC-1", 5)
        second = workspace.table_view(table.id)
        assert second is not first

        workspace.toggle_table_sort(table.id, "base_cost")
        assert workspace.table_view(table.id) is not second

    @pytest.mark.asyncio
    async def test_table_filters(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        workspace.update_table_filters(table.id, search_id="xyz")
        assert [i.id for i in workspace.table_view(table.id).filtered] == ["XYZ-2"]

        workspace.update_table_filters(table.id, search_id="")
        workspace.set_table_range(table.id, "base_cost", None, 100)
        assert [i.id for i in workspace.table_view(table.id).filtered] == ["ABC-1", "QWE-3"]

    @pytest.mark.asyncio
    async def test_sort_cycle(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        assert workspace.toggle_table_sort(table.id, "base_cost").sort == SortState.asc("base_cost")
        assert [i.id for i in workspace.table_view(table.id).sorted] == ["QWE-3", "ABC-1", "XYZ-2"]
        workspace.toggle_table_sort(table.id, "base_cost")
        assert not workspace.toggle_table_sort(table.id, "base_cost").sort.is_active

    @pytest.mark.asyncio
    async def test_invalid_filter_input(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        with pytest.raises(ValidationError):
            workspace.update_table_filters(table.id, current_page=0)
        with pytest.raises(ValidationError):
            workspace.toggle_table_sort(table.id, "colour")
        with pytest.raises(ValidationError):
            workspace.global_view("everything")

    @pytest.mark.asyncio
    async def test_global_default_sort_and_page(self, workspace, header, row):
        rows = [header] + [row(f"P-{n}", 10 + n) for n in range(5)]
        await workspace.upload_table(rows, "A", "a.xlsx")
        for n in range(5):
            await workspace.change_price(f"P-{n}", 100 + n)

        workspace.update_global_filters("price_changed", items_per_page=2)
        view = workspace.global_view("price_changed")

        assert [i.normalized_id for i in view.page.items] == ["p-4", "p-3"]
        assert view.page.total_pages == 3

        workspace.set_global_page("price_changed", 3)
        assert [i.normalized_id for i in workspace.global_view("price_changed").page.items] == ["p-0"]

    @pytest.mark.asyncio
    async def test_global_date_filter(self, workspace, sample_rows):
        await workspace.upload_table(sample_rows, "A", "a.xlsx")
        await workspace.change_price("ABC-1", 10)

        workspace.set_global_date_filter("price_changed", "2026-03-01", "2026-03-01")
        assert len(workspace.global_view("price_changed").filtered) == 1

        workspace.set_global_date_filter("price_changed", "2026-03-02", None)
        assert workspace.global_view("price_changed").filtered == []

        workspace.set_global_date_filter("price_changed", None, None)
        assert workspace.global_filters("price_changed").date_filter is None

    @pytest.mark.asyncio
    async def test_global_period_and_range(self, workspace, header, row):
        await workspace.upload_table([header, row("A", 10), row("B", 500)], "T", "t.xlsx")
        await workspace.add_comment("A", "cheap")
        await workspace.add_comment("B", "pricey")

        spec = workspace.set_global_period("commented", "today")
        assert spec.date_filter.field == "last_comment_date"
        assert spec.date_filter.start == spec.date_filter.end
        workspace.set_global_date_filter("commented", None, None)

        workspace.set_global_range("commented", "base_cost", 100, None)
        assert [i.normalized_id for i in workspace.global_view("commented").filtered] == ["b"]

        workspace.set_global_range("commented", "base_cost", None, None)
        assert workspace.toggle_global_sort("commented", "base_cost").sort == SortState.asc("base_cost")
        assert workspace.global_filters("price_changed").sort == SortState()

    @pytest.mark.asyncio
    async def test_table_page(self, workspace, header, row):
        rows = [header] + [row(f"P-{n}") for n in range(7)]
        table = await workspace.upload_table(rows, "T", "t.xlsx")
        workspace.update_table_filters(table.id, items_per_page=5)

        workspace.set_table_page(table.id, 2)
        assert [i.id for i in workspace.table_view(table.id).page.items] == ["P-5", "P-6"]

        with pytest.raises(ValidationError):
            workspace.set_table_page(table.id, 0)

    def test_bad_date_range(self, workspace):
        with pytest.raises(ValidationError):
            workspace.set_global_date_filter("commented", "2026-03-05", "2026-03-01")

    @pytest.mark.asyncio
    async def test_non_numeric_range_rejected(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        with pytest.raises(ValidationError):
            workspace.set_table_range(table.id, "id", 1, 5)
        with pytest.raises(ValidationError):
            workspace.set_global_range("commented", "last_comment_date", 1, None)
        with pytest.raises(ValidationError):
            workspace.set_table_range(table.id, "base_cost", "cheap", None)
        with pytest.raises(ValidationError):
            workspace.update_table_filters(table.id, ranges={"crm_category_name": RangeFilter(1, 2)})

        assert table.filters.ranges == {}
        assert len(workspace.table_view(table.id).filtered) == 3

    @pytest.mark.asyncio
    async def test_range_bounds_parsed(self, workspace, sample_rows):
        table = await workspace.upload_table(sample_rows, "A", "a.xlsx")

        spec = workspace.set_table_range(table.id, "base_cost", "50", "1 000,5")

        assert spec.ranges["base_cost"] == RangeFilter(50.0, 1000.5)

    @pytest.mark.asyncio
    async def test_date_filter_field_must_be_date(self, workspace, sample_rows):
        await workspace.upload_table(sample_rows, "A", "a.xlsx")

        with pytest.raises(ValidationError):
            workspace.set_global_date_filter("price_changed", "2000-01-01", None, field="base_cost")
        with pytest.raises(ValidationError):
            workspace.set_global_period("price_changed", "week", field="stock")
        with pytest.raises(ValidationError):
            workspace.update_global_filters("price_changed", date_filter=DateFilter("crm_price"))

        assert workspace.global_filters("price_changed").date_filter is None
        assert workspace.global_view("price_changed").filtered == []

    def test_unknown_period_rejected(self, workspace):
        with pytest.raises(ValidationError):
            workspace.set_global_period("commented", "bogus")

        assert workspace.global_filters("commented").date_filter is None


class TestSnapshot:
    """Tests for snapshot and restore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, workspace, header, row, crm_xml):
        tables = await _three_tables(workspace, header, row)
        await workspace.set_commission("x1", 10)
        await workspace.change_price("x1", 120, table_id=tables[1].id)
        await workspace.add_to_category("x1", "optimization")
        await workspace.refresh_feed(FeedKind.CRM, _source(crm_xml), table_id=tables[2].id)
        workspace.toggle_table_sort(tables[0].id, "stock")

        document = workspace.snapshot().to_dict()
        restored = Workspace.from_snapshot(document)

        assert [t.name for t in restored.tables] == ["January", "February", "March"]
        item = restored.tables[1].data[0]
        assert item.commission == 10.0
        assert item.price_history[0].source_table_name == "February"
        assert restored.categories.contains(CategoryType.OPTIMIZATION, "x1")
        assert restored.tables[0].filters.sort == SortState.asc("stock")
        assert restored.feeds.entries(FeedKind.CRM, tables[2].id)["abc-1"].stock == 4.0
        assert restored.index.is_consistent()

    def test_document_keys(self, workspace):
        document = workspace.snapshot().to_dict()
        assert set(document) >= {
            "tables", "globalCommissions", "globalItemChanges", "categories",
            "xmlLastUpdate", "xmlDataCounts", "availableCrmCategories", "tableXmlData",
            "tableXmlLoadingStatus", "globalCrmData", "globalPromData", "globalXmlLoadingStatus",
        }

    def test_restore_from_garbage(self):
        ws = Workspace.from_snapshot({"tables": "oops", "globalCommissions": [1, 2]})
        assert ws.tables == []
        assert len(ws.overrides) == 0

    @pytest.mark.asyncio
    async def test_load_and_autosave(self, bus, sample_rows):
        storage = MemoryStorage()
        ws = await Workspace.load(storage, event_bus=bus)
        ws.saver.delay = 0

        await ws.upload_table(sample_rows, "A", "a.xlsx")
        await ws.set_commission("ABC-1", 20)
        await ws.flush()

        assert storage.saved
        assert not ws.saver.pending
        assert storage.saved[-1]["globalCommissions"] == {"abc-1": 20.0}
