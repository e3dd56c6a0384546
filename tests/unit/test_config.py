"""
Tests for pricedesk.config module.
"""
import dataclasses
import importlib
import pytest

from pricedesk.config import AppConfig, ConfigurationError, FeedConfig, PricingConfig, validate_config

config_module = importlib.import_module("pricedesk.config")


class TestDefaults:

    def test_pricing_policy(self):
        pricing = PricingConfig()
        assert pricing.logistics_fee + pricing.packaging_fee == 70.0
        assert pricing.default_commission == 17.0
        assert pricing.markup_steps[0] == 10 and pricing.markup_steps[-1] == 100

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PRICEDESK_LOGISTICS_FEE", "25.5")
        assert PricingConfig().logistics_fee == 25.5

    def test_bad_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("PRICEDESK_ITEMS_PER_PAGE", "lots")
        assert AppConfig().filters.items_per_page == 50

    def test_proxy_prefixes(self, monkeypatch):
        monkeypatch.setenv("FEED_PROXY_PREFIXES", "https://a/?u=, ,https://b/?u=")
        assert FeedConfig().proxy_prefixes == ["https://a/?u=", "https://b/?u="]


class TestValidateConfig:

    def test_defaults_valid(self, monkeypatch):
        monkeypatch.setattr(config_module, "config", AppConfig())
        validate_config()

    def test_feeds_required(self, monkeypatch):
        monkeypatch.setattr(config_module, "config", AppConfig(feeds=FeedConfig(crm_url="", marketplace_url="")))
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(require_feeds=True)
        assert "CRM_FEED_URL" in str(exc_info.value)

    def test_bad_commission(self, monkeypatch):
        bad = dataclasses.replace(AppConfig(), pricing=PricingConfig(default_commission=100.0))
        monkeypatch.setattr(config_module, "config", bad)
        with pytest.raises(ConfigurationError, match="DEFAULT_COMMISSION"):
            validate_config()
