from __future__ import annotations

import logging

from homeassistant.config_entries import ConfigEntry, ConfigEntryState
from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.exceptions import HomeAssistantError, ServiceValidationError
from homeassistant.helpers import config_validation as cv
import voluptuous as vol

from .const import DOMAIN, SERVICE_REFRESH, SERVICE_START_CHARGING, SERVICE_STOP_CHARGING
from .data import RuntimeData
from .exceptions import CsmsApiError

_LOGGER = logging.getLogger(__name__)

# ----------------------------
# Helpers to find the right runtime
# ----------------------------


def _iter_loaded_entries(hass: HomeAssistant) -> list[ConfigEntry]:
    return [
        e for e in hass.config_entries.async_entries(DOMAIN) if e.state is ConfigEntryState.LOADED
    ]


def _runtime_by_entry_id(hass: HomeAssistant, entry_id: str | None) -> RuntimeData | None:
    if not entry_id:
        return None
    entry = hass.config_entries.async_get_entry(entry_id)
    if not entry or entry.state is not ConfigEntryState.LOADED:
        return None
    return getattr(entry, "runtime_data", None)


def _resolve_runtime(hass: HomeAssistant, call: ServiceCall) -> RuntimeData:
    """Return the runtime for the call.

    Precedence:
    1. If config_entry_id provided, use that entry (must be loaded).
    2. Else if station_id provided, the first loaded entry watching that station.
    3. Else the only loaded entry.
    """
    entry_id = call.data.get("config_entry_id")
    if entry_id:
        rt = _runtime_by_entry_id(hass, entry_id)
        if rt is None:
            raise ServiceValidationError(f"config_entry_id {entry_id} is not loaded")
        return rt

    runtimes: list[RuntimeData] = [
        rt
        for e in _iter_loaded_entries(hass)
        if (rt := getattr(e, "runtime_data", None)) is not None
    ]
    station_id = call.data.get("station_id")
    if station_id:
        for rt in runtimes:
            if station_id in rt.config.station_ids:
                return rt
    if len(runtimes) == 1:
        return runtimes[0]
    if not runtimes:
        raise ServiceValidationError("No loaded EV Driver account")
    raise ServiceValidationError("Multiple accounts loaded. Provide 'config_entry_id'.")


# ----------------------------
# Service handlers
# ----------------------------


async def handle_start_charging(call: ServiceCall) -> None:
    rt = _resolve_runtime(call.hass, call)
    station_id = call.data["station_id"]
    connector_id = str(call.data["connector_id"])
    try:
        await rt.coordinator.async_start_charging(station_id, connector_id)
    except CsmsApiError as err:
        raise HomeAssistantError(f"Start charging failed: {err.message}") from err


async def handle_stop_charging(call: ServiceCall) -> None:
    rt = _resolve_runtime(call.hass, call)
    station_id = call.data["station_id"]
    connector_id = str(call.data["connector_id"])
    if rt.coordinator.connector_state(station_id, connector_id) is None:
        raise ServiceValidationError(f"Unknown connector {station_id}/{connector_id}")
    try:
        await rt.coordinator.async_stop_charging(station_id, connector_id)
    except CsmsApiError as err:
        raise HomeAssistantError(f"Stop charging failed: {err.message}") from err


async def handle_refresh(call: ServiceCall) -> None:
    rt = _resolve_runtime(call.hass, call)
    rt.coordinator.prices.invalidate()
    await rt.coordinator.async_request_refresh()


# ----------------------------
# Service registration
# ----------------------------

CHARGING_SCHEMA = vol.Schema({
    vol.Optional("config_entry_id"): cv.string,
    vol.Required("station_id"): cv.string,
    vol.Required("connector_id"): vol.All(vol.Coerce(str), cv.string),
})

REFRESH_SCHEMA = vol.Schema({
    vol.Optional("config_entry_id"): cv.string,
})


async def register_services(hass: HomeAssistant) -> None:
    _LOGGER.info("Registering EV Driver services")
    hass.services.async_register(
        DOMAIN, SERVICE_START_CHARGING, handle_start_charging, CHARGING_SCHEMA
    )
    hass.services.async_register(
        DOMAIN, SERVICE_STOP_CHARGING, handle_stop_charging, CHARGING_SCHEMA
    )
    hass.services.async_register(DOMAIN, SERVICE_REFRESH, handle_refresh, REFRESH_SCHEMA)


async def unregister_services(hass: HomeAssistant) -> None:
    _LOGGER.info("Unregistering EV Driver services")
    hass.services.async_remove(DOMAIN, SERVICE_START_CHARGING)
    hass.services.async_remove(DOMAIN, SERVICE_STOP_CHARGING)
    hass.services.async_remove(DOMAIN, SERVICE_REFRESH)
