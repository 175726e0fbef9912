"""Tests for the live session metrics deriver."""

from datetime import UTC, datetime, timedelta

import pytest

from custom_components.ev_driver.metrics import (
    STATUS_LABELS,
    ConnectorStatus,
    MetricsConfig,
    derive_live_metrics,
    format_duration,
    round_half_up,
    status_label,
    to_epoch_ms,
)

NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=UTC)


class TestDeriveLiveMetrics:
    """Derived values for one connector snapshot."""

    def test_no_session_start_is_all_zero(self):
        m = derive_live_metrics(None, 0, 3500, NOW)
        assert m.elapsed_ms == 0
        assert m.estimated_cost == 0
        assert m.formatted_duration == "00:00"
        assert m.energy_kwh == 0.0
        assert m.average_power_kw == 0.0

    def test_ninety_seconds_of_charging(self):
        m = derive_live_metrics(NOW - timedelta(seconds=90), 0.05, 3500, NOW)
        assert m.elapsed_ms == 90_000
        assert m.formatted_duration == "01:30"
        assert m.estimated_cost == 175

    def test_start_in_future_clamps_to_zero(self):
        m = derive_live_metrics(NOW + timedelta(seconds=5), 0, 3500, NOW)
        assert m.elapsed_ms == 0
        assert m.formatted_duration == "00:00"

    @pytest.mark.parametrize("price", [0, None, -10, float("nan"), "abc"])
    def test_invalid_price_falls_back_to_default(self, price):
        m = derive_live_metrics(NOW - timedelta(hours=1), 10, price, NOW)
        assert m.price_per_kwh == 3500
        assert m.estimated_cost == 35_000

    def test_configured_default_price_is_used(self):
        config = MetricsConfig(default_price_per_kwh=4200)
        m = derive_live_metrics(NOW - timedelta(hours=1), 2, 0, NOW, config)
        assert m.estimated_cost == 8400

    def test_same_inputs_same_output(self):
        start = NOW - timedelta(minutes=42, seconds=7)
        first = derive_live_metrics(start, 3.21, 2999, NOW)
        second = derive_live_metrics(start, 3.21, 2999, NOW)
        assert first == second

    def test_epoch_milliseconds_accepted(self):
        now_ms = to_epoch_ms(NOW)
        m = derive_live_metrics(now_ms - 60_000, 1, 3500, now_ms)
        assert m.elapsed_ms == 60_000

    def test_average_power(self):
        m = derive_live_metrics(NOW - timedelta(minutes=30), 3.5, 3500, NOW)
        assert m.average_power_kw == 7.0

    def test_negative_energy_treated_as_zero(self):
        m = derive_live_metrics(NOW - timedelta(minutes=5), -2, 3500, NOW)
        assert m.energy_kwh == 0.0
        assert m.estimated_cost == 0


class TestFormatting:
    def test_hour_boundary(self):
        assert format_duration(3_600_000) == "01:00:00"
        assert format_duration(3_599_999) == "59:59"

    def test_long_session(self):
        assert format_duration((10 * 3600 + 5 * 60 + 9) * 1000) == "10:05:09"

    def test_half_up_rounding(self):
        assert round_half_up(0.5) == 1
        assert round_half_up(2.5) == 3
        assert round_half_up(174.49) == 174

    def test_iso_text_to_epoch(self):
        assert to_epoch_ms("2025-03-14T12:00:00Z") == to_epoch_ms(NOW)
        assert to_epoch_ms("not a date") is None


class TestStatusLabels:
    def test_every_status_has_a_label(self):
        assert set(STATUS_LABELS) == set(ConnectorStatus)
        for label in STATUS_LABELS.values():
            assert label.icon.startswith("mdi:")

    def test_known_status(self):
        assert status_label("Charging").icon == "mdi:battery-charging"

    def test_unknown_status_passes_text_through(self):
        label = status_label("VendorSpecific")
        assert label.text == "VendorSpecific"
        assert label.icon == "mdi:help-circle-outline"

    def test_enum_flags(self):
        assert ConnectorStatus.CHARGING.is_charging
        assert not ConnectorStatus.CHARGING.is_available
        assert ConnectorStatus.AVAILABLE.is_available
        assert not ConnectorStatus.SUSPENDED_EV.is_charging
