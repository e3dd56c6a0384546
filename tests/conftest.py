"""
Pytest configuration and shared fixtures.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List

from pricedesk.events import EventBus
from pricedesk.models import Table
from pricedesk.workspace import Workspace

HEADER = [
    "ID", "Base cost", "Stock", "Days of stock", "Sales month",
    "Sales 2 weeks", "Applications month", "Applications 2 weeks", "Commission",
]


def make_row(
    item_id: Any,
    base_cost: Any = 100,
    stock: Any = 5,
    days_stock: Any = 10,
    sales_month: Any = 3,
    sales_2weeks: Any = 1,
    applications_month: Any = None,
    applications_2weeks: Any = None,
    commission: Any = 0,
) -> List[Any]:
    """Spreadsheet row in the fixed column order."""
    return [
        item_id, base_cost, stock, days_stock, sales_month,
        sales_2weeks, applications_month, applications_2weeks, commission,
    ]


class FakeClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def header() -> List[str]:
    return list(HEADER)


@pytest.fixture
def row() -> Callable[..., List[Any]]:
    return make_row


@pytest.fixture
def sample_rows() -> List[List[Any]]:
    """Header plus three data rows."""
    return [
        list(HEADER),
        make_row("ABC-1", 100, commission=0),
        make_row("XYZ-2", "1 234,50", stock="7", commission=0.2),
        make_row("QWE-3", 50, applications_month=0, commission=25),
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> EventBus:
    """Fresh event bus so tests never share handlers."""
    return EventBus()


@pytest.fixture
def workspace(bus, clock) -> Workspace:
    return Workspace(event_bus=bus, clock=clock)


@pytest.fixture
def crm_xml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<yml_catalog>
  <shop>
    <categories>
      <category id="10">Lamps</category>
      <category id="20">Cables</category>
    </categories>
    <offers>
      <offer id="1">
        <vendorCode>АВС-1</vendorCode>
        <price>310.5</price>
        <quantity_in_stock>4</quantity_in_stock>
        <categoryId>10</categoryId>
      </offer>
      <offer id="2">
        <article>XYZ-2</article>
        <price>99,90</price>
        <quantity_in_stock>0</quantity_in_stock>
        <categoryId>20</categoryId>
      </offer>
      <offer id="QWE-3">
        <price>75</price>
      </offer>
    </offers>
  </shop>
</yml_catalog>
"""


@pytest.fixture
def prom_xml() -> str:
    return """<?xml version="1.0" encoding="UTF-8"?>
<yml_catalog>
  <shop>
    <offers>
      <offer id="100"><vendorCode>abc-1</vendorCode><price>349</price></offer>
      <offer id="101"><vendorCode>NO-PRICE</vendorCode></offer>
    </offers>
  </shop>
</yml_catalog>
"""


def table_of(table_id: str, name: str, items) -> Table:
    return Table(
        id=table_id,
        name=name,
        original_file_name=f"{name}.xlsx",
        upload_time=datetime(2026, 3, 1, tzinfo=timezone.utc),
        data=list(items),
    )


@pytest.fixture
def make_table() -> Callable[..., Table]:
    return table_of
