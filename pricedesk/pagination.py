"""
Page slicing for item views.
"""
import math
from dataclasses import dataclass, field
from typing import Generic, List, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a sorted view."""
    items: List[T] = field(default_factory=list)
    page: int = 1
    per_page: int = 50
    total_items: int = 0

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_items / self.per_page))

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def first_index(self) -> int:
        """1-based position of the first item on this page (0 if empty)."""
        return (self.page - 1) * self.per_page + 1 if self.items else 0

    def to_dict(self) -> dict:
        return {
            "page": self.page,
            "per_page": self.per_page,
            "total_items": self.total_items,
            "total_pages": self.total_pages,
        }


def total_pages(total_items: int, per_page: int) -> int:
    return max(1, math.ceil(total_items / per_page))


def paginate(items: Sequence[T], page: int, per_page: int) -> Page[T]:
    """
    Slice ``items`` into a 1-indexed page.

    ``page`` is clamped into ``[1, total_pages]``, so a page that no longer
    exists after filtering shows the last one.

    Raises:
        ValueError: If per_page is not positive
    """
    if per_page < 1:
        raise ValueError(f"per_page must be positive, got {per_page}")

    pages = total_pages(len(items), per_page)
    page = min(max(1, page), pages)
    start = (page - 1) * per_page
    return Page(
        items=list(items[start:start + per_page]),
        page=page,
        per_page=per_page,
        total_items=len(items),
    )


def iter_pages(items: Sequence[T], per_page: int) -> List[Page[T]]:
    """All pages of ``items`` in order."""
    return [paginate(items, n, per_page) for n in range(1, total_pages(len(items), per_page) + 1)]
