"""
Identifier normalization for cross-source matching.

Supplier feeds, uploaded sheets and typed search terms spell the same
product code inconsistently: Cyrillic letters that look like Latin ones,
typographic dashes, stray (sometimes invisible) spaces, mixed case.
``normalize_id`` folds all of those to one canonical form.

Usage:
    from pricedesk.normalizer import normalize_id

    normalize_id("АВС-1")   # Cyrillic А, В, С -> "abc-1"
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pricedesk.config import config

NORMALIZER_CACHE_CAPACITY = config.normalizer.cache_capacity

_FAST_PATH = re.compile(r"^[a-zA-Z0-9\-_.]*$")

# Cyrillic look-alikes -> Latin, both cases
_LOOKALIKES = {
    "а": "a", "А": "A",
    "в": "b", "В": "B",
    "с": "c", "С": "C",
    "е": "e", "Е": "E",
    "н": "h", "Н": "H",
    "к": "k", "К": "K",
    "м": "m", "М": "M",
    "о": "o", "О": "O",
    "р": "p", "Р": "P",
    "т": "t", "Т": "T",
    "х": "x", "Х": "X",
    "у": "y", "У": "Y",
    "і": "i", "І": "I",
    "ј": "j", "Ј": "J",
    "ѕ": "s", "Ѕ": "S",
}

_DASHES = (
    "‐",  # hyphen
    "‑",  # non-breaking hyphen
    "‒",  # figure dash
    "–",  # en dash
    "—",  # em dash
    "―",  # horizontal bar
    "−",  # minus sign
    "﹘",  # small em dash
    "﹣",  # small hyphen-minus
    "－",  # fullwidth hyphen-minus
)

# \s does not cover zero-width characters
_SPACES = re.compile(r"[\s\u200b\u200c\u200d\u2060\ufeff]+")

_TRANSLATION = str.maketrans({**_LOOKALIKES, **{d: "-" for d in _DASHES}})


@dataclass
class CacheStats:
    """Normalizer cache statistics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        """Reset all counters."""
        self.hits = 0
        self.misses = 0
        self.evictions = 0


class IdentifierNormalizer:
    """
    Memoizing identifier normalizer.

    Results are memoized by raw input. Once the cache holds ``capacity``
    entries it is cleared as a whole before the next insert.
    """

    def __init__(self, capacity: int = NORMALIZER_CACHE_CAPACITY):
        self.capacity = capacity
        self._cache: Dict[str, str] = {}
        self._stats = CacheStats()

    def normalize(self, raw: Optional[Any]) -> str:
        """
        Return the canonical form of an identifier.

        Total: ``None`` and empty input yield ``""``; non-strings are
        converted with ``str()`` first.
        """
        if raw is None:
            return ""
        text = raw if isinstance(raw, str) else str(raw)
        if not text:
            return ""

        cached = self._cache.get(text)
        if cached is not None:
            self._stats.hits += 1
            return cached

        self._stats.misses += 1
        result = self._compute(text)

        if len(self._cache) >= self.capacity:
            self._cache.clear()
            self._stats.evictions += 1
        self._cache[text] = result
        return result

    __call__ = normalize

    @staticmethod
    def _compute(text: str) -> str:
        if _FAST_PATH.match(text):
            return text.strip().lower()
        folded = text.translate(_TRANSLATION)
        folded = _SPACES.sub("", folded)
        return folded.lower()

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def clear(self) -> None:
        self._cache.clear()


# Default instance shared by ingestion, filters and feed parsing
default_normalizer = IdentifierNormalizer()


def normalize_id(raw: Optional[Any]) -> str:
    """Normalize an identifier with the default normalizer."""
    return default_normalizer.normalize(raw)
