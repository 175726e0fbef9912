"""Tests for building the per-entry configuration."""

import pytest

from custom_components.ev_driver.data import EvDriverConfig
from custom_components.ev_driver.exceptions import ConfigurationError

DATA = {
    "email": "d@example.com",
    "password": "secret",
    "api_key": "key",
    "project_id": "proj",
    "database_url": "https://db.example.com/",
    "api_base_url": "https://csms.example.com/",
    "station_ids": "CP1, CP2,,",
}


class TestEvDriverConfig:
    def test_from_entry(self):
        config = EvDriverConfig.from_entry(DATA)
        assert config.station_ids == ("CP1", "CP2")
        assert config.database_url == "https://db.example.com"
        assert config.api_base_url == "https://csms.example.com"
        assert config.default_price_per_kwh == 3500
        assert config.update_interval == 60

    @pytest.mark.parametrize("key", ["api_key", "project_id", "database_url", "api_base_url"])
    def test_missing_required_key(self, key):
        data = {**DATA, key: ""}
        with pytest.raises(ConfigurationError, match=key):
            EvDriverConfig.from_entry(data)

    def test_options_override(self):
        options = {"station_ids": ["CP9"], "default_price_per_kwh": 4200, "update_interval": 2}
        config = EvDriverConfig.from_entry(DATA, options)
        assert config.station_ids == ("CP9",)
        assert config.default_price_per_kwh == 4200.0
        assert config.update_interval == 5

    def test_non_positive_price_falls_back(self):
        config = EvDriverConfig.from_entry(DATA, {"default_price_per_kwh": 0})
        assert config.default_price_per_kwh == 3500
