"""Live charging session metrics derived from connector telemetry snapshots.

Everything here is pure: the caller supplies ``now`` so repeated calls with the
same inputs always produce the same result.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import StrEnum
import math
from typing import Any

from .const import DEFAULT_PRICE_PER_KWH

MS_PER_HOUR = 3_600_000


class ConnectorStatus(StrEnum):
    """Connector states pushed by the CSMS; transitions are owned externally."""

    AVAILABLE = "Available"
    PREPARING = "Preparing"
    CHARGING = "Charging"
    SUSPENDED_EV = "SuspendedEV"
    SUSPENDED_EVSE = "SuspendedEVSE"
    FINISHING = "Finishing"
    RESERVED = "Reserved"
    UNAVAILABLE = "Unavailable"
    FAULTED = "Faulted"

    @property
    def is_charging(self) -> bool:
        return self is ConnectorStatus.CHARGING

    @property
    def is_available(self) -> bool:
        return self is ConnectorStatus.AVAILABLE


@dataclass(frozen=True)
class StatusLabel:
    text: str
    icon: str


STATUS_LABELS: dict[ConnectorStatus, StatusLabel] = {
    ConnectorStatus.AVAILABLE: StatusLabel("Available", "mdi:ev-station"),
    ConnectorStatus.PREPARING: StatusLabel("Preparing", "mdi:timer-sand"),
    ConnectorStatus.CHARGING: StatusLabel("Charging", "mdi:battery-charging"),
    ConnectorStatus.SUSPENDED_EV: StatusLabel("Paused (vehicle)", "mdi:car-clock"),
    ConnectorStatus.SUSPENDED_EVSE: StatusLabel("Paused (station)", "mdi:pause-circle"),
    ConnectorStatus.FINISHING: StatusLabel("Finishing", "mdi:flag-checkered"),
    ConnectorStatus.RESERVED: StatusLabel("Reserved", "mdi:bookmark-outline"),
    ConnectorStatus.UNAVAILABLE: StatusLabel("Unavailable", "mdi:power-plug-off"),
    ConnectorStatus.FAULTED: StatusLabel("Faulted", "mdi:alert-circle"),
}

_UNKNOWN_ICON = "mdi:help-circle-outline"


def status_label(status: str | None) -> StatusLabel:
    """Return the display label/icon for a connector status (unknown -> raw text)."""
    try:
        return STATUS_LABELS[ConnectorStatus(status)]
    except ValueError:
        return StatusLabel(status or "Unknown", _UNKNOWN_ICON)


@dataclass(frozen=True)
class MetricsConfig:
    """Single source for the fallback tariff used by every caller."""

    default_price_per_kwh: float = DEFAULT_PRICE_PER_KWH


@dataclass(frozen=True)
class LiveMetrics:
    elapsed_ms: int
    energy_kwh: float
    estimated_cost: int
    formatted_duration: str
    average_power_kw: float
    price_per_kwh: float


def round_half_up(value: float) -> int:
    """Round to the nearest integer currency unit, halves away from zero."""
    try:
        return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return 0


def format_duration(elapsed_ms: int) -> str:
    """Render elapsed milliseconds as HH:MM:SS (>= 1 hour) or MM:SS."""
    seconds = max(0, int(elapsed_ms)) // 1000
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def to_epoch_ms(value: Any) -> int | None:
    """Accept datetime, epoch milliseconds or ISO-8601 text; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp() * 1000)
    if isinstance(value, int | float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return to_epoch_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _positive_or(value: Any, fallback: float) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(num) or num <= 0:
        return fallback
    return num


def _non_negative(value: Any) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(num) or num < 0:
        return 0.0
    return num


def derive_live_metrics(
    session_start_time: datetime | int | float | None,
    session_energy_kwh: float | None,
    price_per_kwh: float | None,
    now: datetime | int | float,
    config: MetricsConfig | None = None,
) -> LiveMetrics:
    """Compute display values for one connector snapshot.

    A missing start time means "not charging" and yields zeroed output. Clock
    skew (start in the future) clamps elapsed time to zero. A missing or
    non-positive price falls back to ``config.default_price_per_kwh``.
    """
    config = config or MetricsConfig()
    price = _positive_or(price_per_kwh, _positive_or(config.default_price_per_kwh, 0.0))

    start_ms = to_epoch_ms(session_start_time)
    now_ms = to_epoch_ms(now)
    if start_ms is None or now_ms is None:
        return LiveMetrics(
            elapsed_ms=0,
            energy_kwh=0.0,
            estimated_cost=0,
            formatted_duration=format_duration(0),
            average_power_kw=0.0,
            price_per_kwh=price,
        )

    elapsed_ms = max(0, now_ms - start_ms)
    energy = _non_negative(session_energy_kwh)
    average_kw = energy / (elapsed_ms / MS_PER_HOUR) if elapsed_ms > 0 else 0.0

    return LiveMetrics(
        elapsed_ms=elapsed_ms,
        energy_kwh=energy,
        estimated_cost=round_half_up(energy * price),
        formatted_duration=format_duration(elapsed_ms),
        average_power_kw=round(average_kw, 3),
        price_per_kwh=price,
    )


__all__ = [
    "ConnectorStatus",
    "LiveMetrics",
    "MetricsConfig",
    "STATUS_LABELS",
    "StatusLabel",
    "derive_live_metrics",
    "format_duration",
    "round_half_up",
    "status_label",
    "to_epoch_ms",
]
