"""
Cross-table views.

A product uploaded in several tables appears once in the global views
(price changed, commented, manual category). The representative copy is
the one carrying the most recent edit; feed data always comes from the
global caches, never from a table's own snapshot.
"""
import dataclasses
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pricedesk.feeds import reconcile
from pricedesk.models import CategoryType, CrmOffer, Item, Table, ViewKind
from pricedesk.observability import Timer, get_logger
from pricedesk.overrides import CategoryStore

logger = get_logger(__name__)

Occurrence = Tuple[Table, Item]


def group_by_normalized_id(tables: Iterable[Table]) -> Dict[str, List[Occurrence]]:
    """All (table, item) occurrences per normalized id, in table order."""
    groups: Dict[str, List[Occurrence]] = {}
    for table in tables:
        for item in table.data:
            groups.setdefault(item.normalized_id, []).append((table, item))
    return groups


def _pick_latest(group: List[Occurrence], history) -> Optional[Occurrence]:
    """
    Occurrence whose own last entry is the newest entry of the group.

    Entries match on date and source table name. When no copy ends with
    that entry (copies went stale or got entries out of date order), the
    first copy with a non-empty history is used instead.
    """
    candidates = [(table, item, history(item)) for table, item in group]
    candidates = [c for c in candidates if c[2]]
    if not candidates:
        return None

    newest = max((entry for _, _, entries in candidates for entry in entries), key=lambda entry: entry.date)
    for table, item, entries in candidates:
        last = entries[-1]
        if last.date == newest.date and last.source_table_name == newest.source_table_name:
            return table, item

    # TODO: trace which stale fan-out copies reach this fallback
    logger.debug(
        "No copy ends with the newest entry, using fallback",
        extra={"normalized_id": candidates[0][1].normalized_id},
    )
    return candidates[0][0], candidates[0][1]


def _annotate(
    table: Table,
    item: Item,
    crm: Optional[Mapping[str, CrmOffer]],
    prom: Optional[Mapping[str, float]],
    category: Optional[CategoryType] = None,
    categories: Optional[CategoryStore] = None,
) -> Item:
    record = reconcile(item, crm, prom)
    last_change = item.last_price_change
    last_comment = item.last_comment
    return dataclasses.replace(
        record,
        last_price=last_change.price if last_change else None,
        last_price_change_date=last_change.date if last_change else None,
        last_comment_text=last_comment.text if last_comment else None,
        last_comment_date=last_comment.date if last_comment else None,
        primary_table_name=table.name,
        primary_table_id=table.id,
        category_added_date=(
            categories.added_date(category, item.normalized_id)
            if category is not None and categories is not None else None
        ),
    )


def build_view(
    tables: Iterable[Table],
    kind: ViewKind,
    crm: Optional[Mapping[str, CrmOffer]] = None,
    prom: Optional[Mapping[str, float]] = None,
    categories: Optional[CategoryStore] = None,
) -> List[Item]:
    """
    Build a deduplicated cross-table view.

    Args:
        tables: Loaded tables, in load order
        kind: Which view to build
        crm: Global CRM cache entries
        prom: Global marketplace cache entries
        categories: Category membership (required for category views)

    Returns:
        One annotated record per normalized id, in first-seen order
    """
    if kind.name == ViewKind.CATEGORY and categories is None:
        raise ValueError("Category views need a CategoryStore")

    result: List[Item] = []
    with Timer(f"build_view_{kind}", logger):
        for nid, group in group_by_normalized_id(tables).items():
            if kind.name == ViewKind.PRICE_CHANGED:
                chosen = _pick_latest(group, lambda item: item.price_history)
            elif kind.name == ViewKind.COMMENTED:
                chosen = _pick_latest(group, lambda item: item.comments)
            else:
                chosen = group[0] if categories.contains(kind.category, nid) else None

            if chosen is None:
                continue

            table, item = chosen
            result.append(_annotate(table, item, crm, prom, kind.category, categories))

    return result
