"""
Tests for pricedesk.normalizer module.
"""
import pytest

from pricedesk.normalizer import IdentifierNormalizer, normalize_id


class TestNormalizeId:
    """Tests for the canonical identifier form."""

    def test_plain_ascii_is_lowercased(self):
        assert normalize_id("ABC-123") == "abc-123"

    def test_empty_and_none(self):
        assert normalize_id(None) == ""
        assert normalize_id("") == ""

    def test_non_string_input(self):
        """Numbers from spreadsheet cells are stringified."""
        assert normalize_id(12345) == "12345"

    def test_cyrillic_lookalikes_fold_to_latin(self):
        """Cyrillic А, В, С match their Latin twins."""
        assert normalize_id("АВС-1") == normalize_id("ABC-1") == "abc-1"

    def test_lowercase_cyrillic_lookalikes(self):
        assert normalize_id("авс-1") == "abc-1"

    @pytest.mark.parametrize("dash", ["‐", "‑", "‒", "–", "—", "―", "−"])
    def test_dash_variants_become_hyphen(self, dash):
        assert normalize_id(f"AB{dash}12") == "ab-12"

    def test_inner_and_outer_whitespace_removed(self):
        assert normalize_id("  AB 12\t") == "ab12"

    def test_non_breaking_and_zero_width_spaces_removed(self):
        assert normalize_id("AB\u00a012\u200b") == "ab12"

    def test_idempotent(self):
        """Normalizing twice gives the same result as once."""
        for raw in ["АВС– 1", "x_y.z", " Mixed Case ", "ТЕСТ-7"]:
            once = normalize_id(raw)
            assert normalize_id(once) == once

    def test_non_lookalike_cyrillic_kept(self):
        """Letters with no Latin twin are only lowercased."""
        assert normalize_id("ЖЗ-1") == "жз-1"


class TestIdentifierNormalizer:
    """Tests for the bounded memoization cache."""

    def test_cache_hits_counted(self):
        normalizer = IdentifierNormalizer(capacity=10)
        normalizer.normalize("ABC")
        normalizer.normalize("ABC")

        assert normalizer.stats.misses == 1
        assert normalizer.stats.hits == 1
        assert normalizer.stats.hit_rate == 50.0

    def test_callable(self):
        normalizer = IdentifierNormalizer()
        assert normalizer("АВС") == "abc"

    def test_cache_cleared_when_full(self):
        """Reaching capacity clears the whole cache before inserting."""
        normalizer = IdentifierNormalizer(capacity=3)
        for raw in ["a", "b", "c"]:
            normalizer.normalize(raw)
        assert normalizer.size == 3

        normalizer.normalize("d")

        assert normalizer.size == 1
        assert normalizer.stats.evictions == 1

    def test_results_unchanged_after_eviction(self):
        normalizer = IdentifierNormalizer(capacity=2)
        first = normalizer.normalize("АВС-1")
        normalizer.normalize("x")
        normalizer.normalize("y")

        assert normalizer.normalize("АВС-1") == first

    def test_stats_reset(self):
        normalizer = IdentifierNormalizer()
        normalizer.normalize("a")
        normalizer.stats.reset()

        assert normalizer.stats.to_dict() == {
            "hits": 0, "misses": 0, "evictions": 0, "hit_rate_percent": 0.0,
        }

    def test_clear(self):
        normalizer = IdentifierNormalizer()
        normalizer.normalize("a")
        normalizer.clear()
        assert normalizer.size == 0
