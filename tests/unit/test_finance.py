"""
Tests for pricedesk.finance module.
"""
import pytest

from pricedesk.finance import (
    DEFAULT_COMMISSION_PERCENT,
    MARKUP_STEPS,
    calculate_markup,
    calculate_total_cost,
    derive_financials,
    normalize_commission,
)


class TestTotalCost:
    """Tests for total cost derivation."""

    def test_zero_commission(self):
        """Fees are added to the base cost."""
        assert calculate_total_cost(100, 0) == pytest.approx(170.0)

    def test_default_commission(self):
        """(100 + 20 + 50) / 0.83"""
        assert calculate_total_cost(100, 17) == pytest.approx(204.8193, rel=1e-4)

    def test_commission_of_100_rejected(self):
        with pytest.raises(ValueError):
            calculate_total_cost(100, 100)

    def test_custom_fees(self):
        assert calculate_total_cost(10, 50, logistics_fee=0, packaging_fee=0) == pytest.approx(20.0)


class TestMarkups:
    """Tests for the markup ladder."""

    def test_markup(self):
        assert calculate_markup(200, 10) == pytest.approx(220.0)

    def test_ladder_has_every_step(self):
        financials = derive_financials(100, 17)
        assert sorted(financials.markups) == list(MARKUP_STEPS)
        assert list(MARKUP_STEPS) == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]

    def test_ladder_derived_from_total(self):
        """Each tier equals total * (1 + p/100)."""
        financials = derive_financials(100, 17)
        for step in MARKUP_STEPS:
            assert financials.markup(step) == pytest.approx(financials.total_cost * (1 + step / 100))

    def test_markup10_value(self):
        assert derive_financials(100, 17).markup(10) == pytest.approx(225.30, abs=0.01)

    def test_to_dict_keys(self):
        data = derive_financials(100, 17).to_dict()
        assert "totalCost" in data
        assert "markup10" in data and "markup100" in data


class TestNormalizeCommission:
    """Tests for commission normalization rules."""

    def test_fraction_becomes_percent(self):
        assert normalize_commission(0.17) == 17.0

    def test_zero_uses_default(self):
        assert normalize_commission(0) == DEFAULT_COMMISSION_PERCENT

    def test_empty_uses_default(self):
        assert normalize_commission(None) == DEFAULT_COMMISSION_PERCENT
        assert normalize_commission("") == DEFAULT_COMMISSION_PERCENT

    def test_negative_uses_default(self):
        assert normalize_commission(-5) == DEFAULT_COMMISSION_PERCENT

    def test_regular_percent_kept(self):
        assert normalize_commission(45) == 45.0

    def test_one_is_one_percent(self):
        """Only values strictly below 1 are fractions."""
        assert normalize_commission(1) == 1.0

    def test_hundred_or_more_uses_default(self):
        assert normalize_commission(100) == DEFAULT_COMMISSION_PERCENT
        assert normalize_commission(250) == DEFAULT_COMMISSION_PERCENT

    def test_garbage_uses_default(self):
        assert normalize_commission("n/a") == DEFAULT_COMMISSION_PERCENT
