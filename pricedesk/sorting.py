"""
Three-state column sorting.

State machine (``toggle_sort``)::

    NONE      --click(k)-->  ASC(k)
    ASC(k)    --click(k)-->  DESC(k)
    DESC(k)   --click(k)-->  NONE
    ASC/DESC  --click(k2)--> ASC(k2)
"""
from typing import Any, Iterable, List, Tuple

from pricedesk.models import Item, SortDirection, SortState


def toggle_sort(state: SortState, key: str) -> SortState:
    """Next sort state after the user clicks column ``key``."""
    if not state.is_active or state.key != key:
        return SortState.asc(key)
    if state.direction == SortDirection.ASC:
        return SortState.desc(key)
    return SortState()


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        return value.casefold()
    return value


def sort_items(items: Iterable[Item], state: SortState) -> List[Item]:
    """
    Sort items by ``state``.

    Stable for equal keys in both directions; items whose value is ``None``
    always come last. An inactive state returns the input order.
    """
    items = list(items)
    if not state.is_active:
        return items

    present: List[Tuple[Any, Item]] = []
    missing: List[Item] = []
    for item in items:
        value = item.field_value(state.key)
        if value is None:
            missing.append(item)
        else:
            present.append((_comparable(value), item))

    # sorted() keeps equal elements in input order even with reverse=True
    present.sort(key=lambda pair: pair[0], reverse=state.direction == SortDirection.DESC)
    return [item for _, item in present] + missing
