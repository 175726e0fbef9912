# custom_components/ev_driver/helpers.py

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .const import CO2_EMISSION_FACTOR, DOMAIN
from .data import SessionRecord
from .metrics import round_half_up


def make_device_info(entry_id: str, station_id: str, name: str | None = None) -> dict:
    """Return a Home Assistant device_info dict for a given station."""
    return {
        "identifiers": {(DOMAIN, f"{entry_id}:{station_id}")},
        "name": name or f"EV station {station_id}",
        "manufacturer": "EV Driver",
    }


def make_account_device_info(entry_id: str, email: str | None) -> dict:
    """Device grouping the account-wide entities (history, CO2)."""
    return {
        "identifiers": {(DOMAIN, f"{entry_id}:account")},
        "name": f"EV Driver {email}" if email else "EV Driver account",
        "manufacturer": "EV Driver",
    }


def make_unique_id(
    entry_id: str,
    station_id: str | None,
    connector_id: str | None,
    metric: str,
) -> str:
    """
    Generate a globally unique ID for any entity.

    Args:
        entry_id: config entry id (one per signed-in account)
        station_id: station id (None for account-wide entities)
        connector_id: connector id (None for station-wide entities)
        metric: suffix for the entity type, e.g. "session_cost", "stream_connected"
    """
    if station_id is None:
        return f"{entry_id}:account:{metric}"
    if connector_id:
        return f"{entry_id}:{station_id}:{connector_id}:{metric}"
    return f"{entry_id}:{station_id}:{metric}"


def build_connector_label(connector_id: str) -> str:
    return f"Connector {connector_id}"


def update_total_increasing(last: float | None, candidate: float | None) -> float | None:
    """
    Enforce monotonic increasing semantics for total energy-like sensors.

    Rules:
      * If candidate is None -> keep last
      * If last exists and candidate < last or candidate == 0 -> keep last (guards resets)
      * Else accept candidate
    """
    if candidate is None:
        return last
    if last is not None and (candidate < last or candidate == 0):
        return last
    return candidate


def safe_float(value: Any) -> float | None:
    """Coerce numbers and numeric strings to float; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _same_month(moment: datetime | None, now: datetime) -> bool:
    if moment is None:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    moment = moment.astimezone(now.tzinfo)
    return moment.year == now.year and moment.month == now.month


def count_monthly_charges(history: Iterable[SessionRecord] | None, now: datetime) -> int:
    """Number of sessions started in the calendar month of ``now``."""
    if not history:
        return 0
    return sum(1 for item in history if _same_month(item.start_time, now))


def total_monthly_energy(history: Iterable[SessionRecord] | None, now: datetime) -> float:
    """Sum of energy consumed (kWh) by sessions started in ``now``'s month."""
    if not history:
        return 0.0
    total = 0.0
    for item in history:
        energy = safe_float(item.energy_consumed)
        if energy is None or energy != energy:  # NaN
            continue
        if _same_month(item.start_time, now):
            total += energy
    return total


def calculate_co2_saved(total_kwh: float, emission_factor: float = CO2_EMISSION_FACTOR) -> float:
    """kg CO2 saved for the given energy, rounded to 2 decimals."""
    return round(float(total_kwh) * emission_factor, 2)



def completed_sessions(history: Iterable[SessionRecord] | None) -> list[SessionRecord]:
    return [item for item in history or () if (item.status or "").lower() == "completed"]


def count_completed_sessions(history: Iterable[SessionRecord] | None) -> int:
    return len(completed_sessions(history))


def total_completed_cost(history: Iterable[SessionRecord] | None) -> int:
    """Total spend over completed sessions, rounded to whole currency units."""
    total = 0.0
    for item in completed_sessions(history):
        cost = safe_float(item.total_cost)
        if cost is not None and cost == cost:
            total += cost
    return round_half_up(total)


def average_session_minutes(history: Iterable[SessionRecord] | None) -> int:
    """
    Mean duration of completed sessions in whole minutes.

    Sessions missing either timestamp count as zero length; 0 when nothing completed.
    """
    done = completed_sessions(history)
    if not done:
        return 0
    total_seconds = 0.0
    for item in done:
        if item.start_time and item.end_time:
            total_seconds += max(0.0, (item.end_time - item.start_time).total_seconds())
    return round_half_up(total_seconds / 60 / len(done))


__all__ = [
    "make_device_info",
    "make_account_device_info",
    "make_unique_id",
    "build_connector_label",
    "update_total_increasing",
    "safe_float",
    "count_monthly_charges",
    "total_monthly_energy",
    "calculate_co2_saved",
    "completed_sessions",
    "count_completed_sessions",
    "total_completed_cost",
    "average_session_minutes",
]
