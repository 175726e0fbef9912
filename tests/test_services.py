"""Tests for the start/stop/refresh service handlers."""

from unittest.mock import AsyncMock, MagicMock

from homeassistant.config_entries import ConfigEntryState
from homeassistant.exceptions import HomeAssistantError, ServiceValidationError
import pytest

from custom_components.ev_driver.data import ConnectorState
from custom_components.ev_driver.exceptions import CsmsApiError
from custom_components.ev_driver.services import (
    CHARGING_SCHEMA,
    handle_refresh,
    handle_start_charging,
    handle_stop_charging,
)


def _runtime(*station_ids):
    rt = MagicMock()
    rt.config.station_ids = station_ids
    rt.coordinator.async_start_charging = AsyncMock()
    rt.coordinator.async_stop_charging = AsyncMock()
    rt.coordinator.async_request_refresh = AsyncMock()
    rt.coordinator.connector_state = MagicMock(return_value=ConnectorState("1", transaction_id="5"))
    return rt


def _hass(*runtimes, state=ConfigEntryState.LOADED):
    entries = [
        MagicMock(entry_id=f"e{i}", state=state, runtime_data=rt) for i, rt in enumerate(runtimes)
    ]
    hass = MagicMock()
    hass.config_entries.async_entries = MagicMock(return_value=entries)
    hass.config_entries.async_get_entry = MagicMock(
        side_effect=lambda eid: next((e for e in entries if e.entry_id == eid), None)
    )
    return hass


def _call(hass, **data):
    call = MagicMock()
    call.hass = hass
    call.data = data
    return call


class TestRuntimeResolution:
    @pytest.mark.asyncio
    async def test_single_entry(self):
        rt = _runtime("CP1")

        await handle_start_charging(_call(_hass(rt), station_id="CP1", connector_id="1"))

        rt.coordinator.async_start_charging.assert_awaited_once_with("CP1", "1")

    @pytest.mark.asyncio
    async def test_station_picks_the_watching_entry(self):
        first, second = _runtime("CP1"), _runtime("CP2")

        await handle_start_charging(_call(_hass(first, second), station_id="CP2", connector_id=2))

        second.coordinator.async_start_charging.assert_awaited_once_with("CP2", "2")
        first.coordinator.async_start_charging.assert_not_called()

    @pytest.mark.asyncio
    async def test_explicit_entry_id(self):
        first, second = _runtime("CP1"), _runtime("CP1")
        hass = _hass(first, second)

        await handle_refresh(_call(hass, config_entry_id="e1"))

        second.coordinator.prices.invalidate.assert_called_once_with()
        second.coordinator.async_request_refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ambiguous_without_entry_id(self):
        hass = _hass(_runtime("CP1"), _runtime("CP2"))

        with pytest.raises(ServiceValidationError):
            await handle_refresh(_call(hass))

    @pytest.mark.asyncio
    async def test_no_loaded_entry(self):
        hass = _hass(_runtime("CP1"), state=ConfigEntryState.SETUP_RETRY)

        with pytest.raises(ServiceValidationError):
            await handle_start_charging(_call(hass, station_id="CP1", connector_id="1"))


class TestHandlers:
    @pytest.mark.asyncio
    async def test_csms_error_surfaces_as_ha_error(self):
        rt = _runtime("CP1")
        rt.coordinator.async_start_charging = AsyncMock(side_effect=CsmsApiError("busy", 409))

        with pytest.raises(HomeAssistantError, match="busy"):
            await handle_start_charging(_call(_hass(rt), station_id="CP1", connector_id="1"))

    @pytest.mark.asyncio
    async def test_stop_unknown_connector(self):
        rt = _runtime("CP1")
        rt.coordinator.connector_state = MagicMock(return_value=None)

        with pytest.raises(ServiceValidationError):
            await handle_stop_charging(_call(_hass(rt), station_id="CP1", connector_id="9"))

        rt.coordinator.async_stop_charging.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop(self):
        rt = _runtime("CP1")

        await handle_stop_charging(_call(_hass(rt), station_id="CP1", connector_id="1"))

        rt.coordinator.async_stop_charging.assert_awaited_once_with("CP1", "1")

    def test_schema_coerces_connector_id(self):
        assert CHARGING_SCHEMA({"station_id": "CP1", "connector_id": 2})["connector_id"] == "2"
