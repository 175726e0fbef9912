"""Diagnostics support for EV Driver integration.

Provides redacted runtime information for troubleshooting via HA UI.
"""

from __future__ import annotations

from typing import Any

from homeassistant.components.diagnostics import async_redact_data
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.loader import async_get_integration

from .const import CONF_API_KEY, CONF_EMAIL, CONF_PASSWORD
from .data import RuntimeData

REDACT_KEYS = {
    CONF_API_KEY,
    CONF_EMAIL,
    CONF_PASSWORD,
    "tokens",
    "id_token",
    "refresh_token",
    "uid",
    "email",
}


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


async def async_get_config_entry_diagnostics(
    hass: HomeAssistant, entry: ConfigEntry
) -> dict[str, Any]:
    """Return diagnostics for a config entry."""

    out: dict[str, Any] = {
        "config_entry_data": async_redact_data(dict(entry.data), REDACT_KEYS),
        "options": async_redact_data(dict(entry.options), REDACT_KEYS),
    }

    integration = await async_get_integration(hass, entry.domain)
    out["meta"] = {
        "entry_id": entry.entry_id,
        "title": "**REDACTED**",
        "state": entry.state.name,
        "domain": entry.domain,
        "version_manifest": str(integration.version) if integration.version else None,
    }

    rt: RuntimeData | None = getattr(entry, "runtime_data", None)
    if rt is None:
        return out

    coord = rt.coordinator
    data = coord.data
    out["signed_in"] = rt.identity.current_user is not None
    out["coordinator"] = {
        "last_update_success": coord.last_update_success,
        "update_interval": coord.update_interval.total_seconds()
        if coord.update_interval
        else None,
        "stream_connected": data.stream_connected if data else None,
        "sessions_loaded": len(data.sessions) if data else 0,
        "active_session": data.active_session.session_id
        if data and data.active_session
        else None,
    }

    stations_out: list[dict[str, Any]] = []
    for sid, st in (data.stations if data else {}).items():
        stations_out.append({
            "station_id": sid,
            "found": st.found,
            "online": st.online,
            "vendor": st.vendor,
            "model": st.model,
            "price_per_kwh": st.price_per_kwh,
            "price_cached": coord.prices.cached(sid) is not None,
            "stream_up": coord.stream_up(sid),
            "last_heartbeat": _iso(st.last_heartbeat),
            "connectors": [
                {
                    "connector_id": cid,
                    "status": c.status,
                    "error_code": c.error_code,
                    "transaction_id": c.transaction_id,
                    "pending_transaction_id": c.pending_transaction_id,
                    "power_w": c.power_w,
                    "energy_total_kwh": c.energy_total_kwh,
                    "session_energy_kwh": c.session_energy_kwh,
                    "session_start_time": _iso(c.session_start_time),
                    "last_update": _iso(c.last_update),
                }
                for cid, c in st.connectors.items()
            ],
        })
    out["stations"] = stations_out
    return out
