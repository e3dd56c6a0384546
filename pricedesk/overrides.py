"""
Global override layer.

User edits (commission, price history, comments, manual categories) belong
to a physical product, not to one uploaded table. They are keyed by
normalized id and every edit is written through to each loaded item with
that id ("fan-out"), located via ``ItemIndex``.
"""
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pricedesk.models import (
    CategoryType,
    Comment,
    Item,
    OverrideRecord,
    PriceChange,
    Table,
    format_datetime,
    parse_datetime,
    utcnow,
)
from pricedesk.normalizer import normalize_id
from pricedesk.observability import get_logger

logger = get_logger(__name__)

ChangeListener = Callable[[str, str], None]
Clock = Callable[[], datetime]


class ItemIndex:
    """
    ``normalized_id -> [(table_id, position)]`` over all loaded tables.

    Invariant: after every ``add_table`` / ``remove_table`` the index lists
    exactly the positions of items carrying that normalized id in the
    currently loaded tables, in table load order.
    """

    def __init__(self):
        self._tables: Dict[str, Table] = {}
        self._positions: Dict[str, List[Tuple[str, int]]] = {}

    def add_table(self, table: Table) -> None:
        if table.id in self._tables:
            self.remove_table(table.id)

        self._tables[table.id] = table
        for position, item in enumerate(table.data):
            self._positions.setdefault(item.normalized_id, []).append((table.id, position))

    def remove_table(self, table_id: str) -> Optional[Table]:
        table = self._tables.pop(table_id, None)
        if table is None:
            return None

        for item in table.data:
            entries = self._positions.get(item.normalized_id)
            if entries is None:
                continue
            remaining = [entry for entry in entries if entry[0] != table_id]
            if remaining:
                self._positions[item.normalized_id] = remaining
            else:
                del self._positions[item.normalized_id]
        return table

    def table(self, table_id: str) -> Optional[Table]:
        return self._tables.get(table_id)

    @property
    def tables(self) -> List[Table]:
        return list(self._tables.values())

    def locate(self, normalized_id: str) -> List[Tuple[str, int]]:
        return list(self._positions.get(normalized_id, ()))

    def items_for(self, normalized_id: str) -> List[Tuple[Table, Item]]:
        """Every loaded (table, item) pair for a normalized id."""
        return [
            (self._tables[table_id], self._tables[table_id].data[position])
            for table_id, position in self._positions.get(normalized_id, ())
        ]

    def __contains__(self, normalized_id: str) -> bool:
        return normalized_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def is_consistent(self) -> bool:
        """Rebuild the mapping from scratch and compare."""
        expected: Dict[str, List[Tuple[str, int]]] = {}
        for table in self._tables.values():
            for position, item in enumerate(table.data):
                expected.setdefault(item.normalized_id, []).append((table.id, position))
        return expected == self._positions


class OverrideStore:
    """
    Per-product user edits with fan-out to every loaded copy.

    All mutation of shared edit state goes through this class; the
    ``on_change`` listener is called with ``(normalized_id, change_kind)``
    after each mutation.
    """

    def __init__(
        self,
        index: ItemIndex,
        on_change: Optional[ChangeListener] = None,
        clock: Clock = utcnow,
    ):
        self._index = index
        self._records: Dict[str, OverrideRecord] = {}
        self._on_change = on_change
        self._clock = clock

    def get(self, normalized_id: str) -> Optional[OverrideRecord]:
        return self._records.get(normalized_id)

    def __contains__(self, normalized_id: str) -> bool:
        return normalized_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OverrideRecord]:
        return iter(self._records.values())

    def _record(self, normalized_id: str) -> OverrideRecord:
        record = self._records.get(normalized_id)
        if record is None:
            record = OverrideRecord(normalized_id=normalized_id)
            self._records[normalized_id] = record
        return record

    def _notify(self, normalized_id: str, kind: str) -> None:
        if self._on_change is not None:
            self._on_change(normalized_id, kind)

    def set_commission(self, normalized_id: str, commission: float) -> OverrideRecord:
        """Store a commission and reprice every loaded copy of the product."""
        nid = normalize_id(normalized_id)
        record = self._record(nid)
        record.commission = commission

        copies = self._index.items_for(nid)
        for _, item in copies:
            item.reprice(commission)

        logger.debug("Commission set", extra={"normalized_id": nid, "commission": commission, "copies": len(copies)})
        self._notify(nid, "commission")
        return record

    def append_price_change(
        self,
        normalized_id: str,
        price: float,
        source_table: Optional[Table] = None,
    ) -> PriceChange:
        """Append a price to the product history, recording the previous one."""
        nid = normalize_id(normalized_id)
        record = self._record(nid)

        entry = PriceChange(
            price=price,
            date=self._clock(),
            source_table_name=source_table.name if source_table else None,
            source_table_id=source_table.id if source_table else None,
            previous_price=record.last_price,
        )
        record.price_history.append(entry)

        for _, item in self._index.items_for(nid):
            item.price_history.append(entry)

        self._notify(nid, "price")
        return entry

    def append_comment(
        self,
        normalized_id: str,
        text: str,
        source_table: Optional[Table] = None,
    ) -> Comment:
        nid = normalize_id(normalized_id)
        record = self._record(nid)

        comment = Comment(
            id=uuid.uuid4().hex,
            text=text,
            date=self._clock(),
            source_table_name=source_table.name if source_table else None,
            source_table_id=source_table.id if source_table else None,
        )
        record.comments.append(comment)

        for _, item in self._index.items_for(nid):
            item.comments.append(comment)

        self._notify(nid, "comment")
        return comment

    def delete_comment(self, normalized_id: str, comment_id: str) -> bool:
        """
        Remove a comment everywhere.

        Returns:
            True if the comment existed in the override record or any copy
        """
        nid = normalize_id(normalized_id)
        found = False

        record = self._records.get(nid)
        if record is not None:
            kept = [c for c in record.comments if c.id != comment_id]
            found = len(kept) != len(record.comments)
            record.comments = kept

        for _, item in self._index.items_for(nid):
            kept = [c for c in item.comments if c.id != comment_id]
            if len(kept) != len(item.comments):
                found = True
                item.comments = kept

        if found:
            self._notify(nid, "comment_deleted")
        return found

    def apply_change(
        self,
        normalized_id: str,
        commission: Optional[float] = None,
        price: Optional[float] = None,
        comment: Optional[str] = None,
        delete_comment_id: Optional[str] = None,
        source_table: Optional[Table] = None,
    ) -> OverrideRecord:
        """Apply several already-validated edits to one product at once."""
        nid = normalize_id(normalized_id)
        if commission is not None:
            self.set_commission(nid, commission)
        if price is not None:
            self.append_price_change(nid, price, source_table)
        if comment is not None:
            self.append_comment(nid, comment, source_table)
        if delete_comment_id is not None:
            self.delete_comment(nid, delete_comment_id)
        return self._record(nid)

    # ─── Persistence shape ────────────────────────────────────────────────

    def commissions_to_dict(self) -> Dict[str, float]:
        return {
            nid: record.commission
            for nid, record in self._records.items()
            if record.commission is not None
        }

    def changes_to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            nid: record.changes_to_dict()
            for nid, record in self._records.items()
            if record.price_history or record.comments
        }

    def load(self, commissions: Dict[str, Any], changes: Dict[str, Any]) -> None:
        """Replace all records from stored dictionaries (no fan-out)."""
        self._records.clear()

        for nid, value in (commissions or {}).items():
            try:
                self._record(normalize_id(nid)).commission = float(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid stored commission", extra={"normalized_id": nid})

        for nid, change in (changes or {}).items():
            if not isinstance(change, dict):
                continue
            record = self._record(normalize_id(nid))
            record.price_history = [
                PriceChange.from_dict(p) for p in change.get("priceHistory") or [] if isinstance(p, dict)
            ]
            record.comments = [
                Comment.from_dict(c) for c in change.get("comments") or [] if isinstance(c, dict)
            ]


class CategoryStore:
    """Manual category membership: ``category -> {normalized_id: added_date}``."""

    def __init__(self, on_change: Optional[ChangeListener] = None, clock: Clock = utcnow):
        self._members: Dict[CategoryType, Dict[str, datetime]] = {c: {} for c in CategoryType}
        self._on_change = on_change
        self._clock = clock

    def add(self, category: CategoryType, normalized_id: str) -> bool:
        """
        Add a product to a category.

        Returns:
            False if it was already a member (added date is kept)
        """
        nid = normalize_id(normalized_id)
        members = self._members[CategoryType(category)]
        if nid in members:
            return False
        members[nid] = self._clock()
        if self._on_change is not None:
            self._on_change(nid, f"category:{CategoryType(category).value}")
        return True

    def remove(self, category: CategoryType, normalized_id: str) -> bool:
        nid = normalize_id(normalized_id)
        members = self._members[CategoryType(category)]
        if members.pop(nid, None) is None:
            return False
        if self._on_change is not None:
            self._on_change(nid, f"category:{CategoryType(category).value}")
        return True

    def contains(self, category: CategoryType, normalized_id: str) -> bool:
        return normalize_id(normalized_id) in self._members[CategoryType(category)]

    def members(self, category: CategoryType) -> Dict[str, datetime]:
        return dict(self._members[CategoryType(category)])

    def added_date(self, category: CategoryType, normalized_id: str) -> Optional[datetime]:
        return self._members[CategoryType(category)].get(normalize_id(normalized_id))

    def categories_of(self, normalized_id: str) -> List[CategoryType]:
        nid = normalize_id(normalized_id)
        return [category for category, members in self._members.items() if nid in members]

    def clear(self, category: CategoryType) -> int:
        members = self._members[CategoryType(category)]
        count = len(members)
        members.clear()
        if count and self._on_change is not None:
            self._on_change("", f"category:{CategoryType(category).value}")
        return count

    def counts(self) -> Dict[str, int]:
        return {category.value: len(members) for category, members in self._members.items()}

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            category.value: [
                {"id": nid, "addedDate": format_datetime(added)}
                for nid, added in members.items()
            ]
            for category, members in self._members.items()
        }

    def load(self, data: Dict[str, Any]) -> None:
        """
        Replace membership from stored data.

        Each category maps to a list of ``{"id", "addedDate"}`` objects or of
        bare ids (older backups).
        """
        for members in self._members.values():
            members.clear()

        for key, entries in (data or {}).items():
            try:
                category = CategoryType(key)
            except ValueError:
                logger.warning("Ignoring unknown stored category", extra={"category": key})
                continue
            if not isinstance(entries, list):
                continue

            for entry in entries:
                if isinstance(entry, dict):
                    nid = normalize_id(entry.get("id"))
                    added = parse_datetime(entry.get("addedDate")) or self._clock()
                else:
                    nid = normalize_id(entry)
                    added = self._clock()
                if nid:
                    self._members[category][nid] = added
