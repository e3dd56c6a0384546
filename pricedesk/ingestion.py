"""
Spreadsheet row ingestion.

Turns the 2D cell array of an uploaded sheet into typed items. Column
positions are fixed:

    0 id | 1 base cost | 2 stock | 3 days of stock | 4 sales / month
    5 sales / 2 weeks | 6 applications / month | 7 applications / 2 weeks
    8 commission

Row 0 is the header and is kept only for export.
"""
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, List, Mapping, Optional, Sequence

from pricedesk.exceptions import IngestionError
from pricedesk.feeds import reconcile
from pricedesk.finance import normalize_commission
from pricedesk.models import CrmOffer, Item, OverrideRecord, Table, utcnow
from pricedesk.observability import Timer, get_logger

logger = get_logger(__name__)

COL_ID = 0
COL_BASE_COST = 1
COL_STOCK = 2
COL_DAYS_STOCK = 3
COL_SALES_MONTH = 4
COL_SALES_2WEEKS = 5
COL_APPLICATIONS_MONTH = 6
COL_APPLICATIONS_2WEEKS = 7
COL_COMMISSION = 8

_SPACES = re.compile(r"\s+")
_NON_NUMERIC = re.compile(r"[^0-9,.\-]")


@dataclass
class IngestionResult:
    """Items parsed from one sheet."""
    items: List[Item]
    header: List[Any] = field(default_factory=list)
    skipped_rows: int = 0


def parse_locale_number(value: Any) -> float:
    """
    Parse a spreadsheet cell as a number.

    Accepts ``1 234,56``, ``1.234,56``, ``1,234.56``, ``17%`` (-> 0.17) and
    strips currency signs and other noise. Anything unparseable is ``0``.

    Examples:
        >>> parse_locale_number("1 234,5")
        1234.5
        >>> parse_locale_number("17%")
        0.17
        >>> parse_locale_number("n/a")
        0.0
    """
    result = _parse_number(value)
    return 0.0 if result is None else result


def parse_optional_number(value: Any) -> Optional[float]:
    """
    Parse a nullable count cell.

    Empty or unparseable cells are ``None`` (not tracked); an explicit zero
    stays ``0``.
    """
    return _parse_number(value)


def _parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip()
    if not text:
        return None

    is_percent = text.endswith("%")
    text = _NON_NUMERIC.sub("", _SPACES.sub("", text))

    negative = text.startswith("-")
    text = text.replace("-", "")

    if "," in text and "." in text:
        # The separator that comes last is the decimal one
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", "") if text.count(",") > 1 else text.replace(",", ".")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        number = float(text)
    except ValueError:
        return None

    if negative:
        number = -number
    if is_percent:
        number = number / 100
    return number


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_empty_row(row: Optional[Sequence[Any]]) -> bool:
    """True when every cell of the row is empty."""
    return not row or all(_is_blank(cell) for cell in row)


def parse_row(
    row: Sequence[Any],
    overrides: Optional[Mapping[str, OverrideRecord]] = None,
) -> Item:
    """
    Build one item from a data row.

    Commission is normalized first; an existing override then replaces it
    (and its history/comments are copied onto the item).
    """
    commission = normalize_commission(parse_locale_number(_cell(row, COL_COMMISSION)))

    item = Item.build(
        _cell(row, COL_ID),
        parse_locale_number(_cell(row, COL_BASE_COST)),
        commission,
        stock=parse_locale_number(_cell(row, COL_STOCK)),
        days_stock=parse_locale_number(_cell(row, COL_DAYS_STOCK)),
        sales_month=parse_locale_number(_cell(row, COL_SALES_MONTH)),
        sales_2weeks=parse_locale_number(_cell(row, COL_SALES_2WEEKS)),
        applications_month=parse_optional_number(_cell(row, COL_APPLICATIONS_MONTH)),
        applications_2weeks=parse_optional_number(_cell(row, COL_APPLICATIONS_2WEEKS)),
    )

    override = overrides.get(item.normalized_id) if overrides is not None else None
    if override is not None:
        attach_override(item, override)

    return item


def attach_override(item: Item, override: OverrideRecord) -> None:
    """Apply a product's global edits to one freshly loaded copy."""
    if override.commission is not None and override.commission != item.commission:
        item.reprice(override.commission)
    item.price_history = list(override.price_history)
    item.comments = list(override.comments)


def ingest_rows(
    rows: Sequence[Sequence[Any]],
    overrides: Optional[Mapping[str, OverrideRecord]] = None,
    crm: Optional[Mapping[str, CrmOffer]] = None,
    prom: Optional[Mapping[str, float]] = None,
    file_name: Optional[str] = None,
) -> IngestionResult:
    """
    Convert raw sheet rows into items.

    Args:
        rows: Cell values, header first
        overrides: Global override records keyed by normalized id
        crm: Table-scoped CRM feed entries, if already loaded
        prom: Table-scoped marketplace prices, if already loaded
        file_name: Used in error messages and logs

    Returns:
        IngestionResult with items in sheet order

    Raises:
        IngestionError: If the sheet has no data rows
    """
    if not rows:
        raise IngestionError("File is empty", file_name=file_name)

    header = list(rows[0] or [])
    items: List[Item] = []
    skipped = 0

    with Timer("ingest_rows", logger):
        for position, row in enumerate(rows[1:], start=2):
            if is_empty_row(row):
                skipped += 1
                continue

            if _is_blank(_cell(row, COL_ID)):
                logger.warning(
                    "Skipping row without identifier",
                    extra={"row": position, "file_name": file_name},
                )
                skipped += 1
                continue

            item = parse_row(row, overrides)
            if crm is not None or prom is not None:
                item = reconcile(item, crm, prom)
            items.append(item)

    if not items:
        raise IngestionError(
            "File contains no data rows",
            details="only a header row was found",
            file_name=file_name,
            row_count=len(rows),
        )

    logger.info(
        "Sheet ingested",
        extra={"file_name": file_name, "items": len(items), "skipped_rows": skipped},
    )
    return IngestionResult(items=items, header=header, skipped_rows=skipped)


def new_table_id(existing: Collection[str] = ()) -> str:
    """Allocate a time-based table id not present in ``existing``."""
    stamp = int(time.time() * 1000)
    while str(stamp) in existing:
        stamp += 1
    return str(stamp)


def create_table(
    rows: Sequence[Sequence[Any]],
    name: str,
    file_name: str,
    overrides: Optional[Mapping[str, OverrideRecord]] = None,
    crm: Optional[Mapping[str, CrmOffer]] = None,
    prom: Optional[Mapping[str, float]] = None,
    existing_ids: Collection[str] = (),
    upload_time: Optional[datetime] = None,
) -> Table:
    """
    Ingest a sheet and wrap it in a new table.

    Raises:
        IngestionError: If the sheet has no data rows
    """
    result = ingest_rows(rows, overrides=overrides, crm=crm, prom=prom, file_name=file_name)
    return Table(
        id=new_table_id(existing_ids),
        name=name or file_name,
        original_file_name=file_name,
        upload_time=upload_time or utcnow(),
        data=result.items,
        header=result.header,
    )
