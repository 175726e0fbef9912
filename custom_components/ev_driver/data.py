# custom_components/ev_driver/data.py
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .const import (
    CONF_API_BASE_URL,
    CONF_API_KEY,
    CONF_DATABASE_URL,
    CONF_DEFAULT_PRICE,
    CONF_PROJECT_ID,
    CONF_STATION_IDS,
    CONF_UPDATE_INTERVAL,
    DEFAULT_PRICE_PER_KWH,
    UPDATE_INTERVAL_DEFAULT,
)
from .exceptions import ConfigurationError
from .metrics import ConnectorStatus

if TYPE_CHECKING:
    from .api_client import CsmsApiClient
    from .auth import IdentityClient
    from .coordinator import EvDriverCoordinator
    from .documents import DocumentStore
    from .realtime import RealtimeDatabase


@dataclass(frozen=True)
class EvDriverConfig:
    """Explicit configuration built once per config entry."""

    api_key: str
    project_id: str
    database_url: str
    api_base_url: str
    station_ids: tuple[str, ...] = ()
    default_price_per_kwh: float = DEFAULT_PRICE_PER_KWH
    update_interval: int = UPDATE_INTERVAL_DEFAULT

    @classmethod
    def from_entry(
        cls, data: Mapping[str, Any], options: Mapping[str, Any] | None = None
    ) -> EvDriverConfig:
        """Build from config entry data/options; missing provider keys are fatal."""
        options = options or {}
        missing = [
            key
            for key in (CONF_API_KEY, CONF_PROJECT_ID, CONF_DATABASE_URL, CONF_API_BASE_URL)
            if not str(data.get(key) or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        raw_ids = options.get(CONF_STATION_IDS, data.get(CONF_STATION_IDS)) or ()
        if isinstance(raw_ids, str):
            raw_ids = raw_ids.split(",")
        station_ids = tuple(s for s in (str(x).strip() for x in raw_ids) if s)

        try:
            price = float(options.get(CONF_DEFAULT_PRICE, DEFAULT_PRICE_PER_KWH))
        except (TypeError, ValueError):
            price = DEFAULT_PRICE_PER_KWH
        try:
            interval = int(options.get(CONF_UPDATE_INTERVAL, UPDATE_INTERVAL_DEFAULT))
        except (TypeError, ValueError):
            interval = UPDATE_INTERVAL_DEFAULT

        return cls(
            api_key=str(data[CONF_API_KEY]).strip(),
            project_id=str(data[CONF_PROJECT_ID]).strip(),
            database_url=str(data[CONF_DATABASE_URL]).strip().rstrip("/"),
            api_base_url=str(data[CONF_API_BASE_URL]).strip().rstrip("/"),
            station_ids=station_ids,
            default_price_per_kwh=price if price > 0 else DEFAULT_PRICE_PER_KWH,
            update_interval=max(interval, 5),
        )


@dataclass
class ConnectorState:
    """Display-only mirror of one connector's live telemetry."""

    connector_id: str
    status: str | None = None  # Available / Charging / Faulted ...
    error_code: str | None = None  # NoError / ...
    transaction_id: str | None = None

    power_w: float | None = None  # instantaneous, advisory
    energy_total_kwh: float | None = None  # lifetime counter
    session_energy_kwh: float | None = None
    session_start_time: datetime | None = None
    last_update: datetime | None = None

    # txId returned by a start request before telemetry confirmed it
    pending_transaction_id: str | None = None

    @property
    def is_charging(self) -> bool:
        return self.status == ConnectorStatus.CHARGING

    @property
    def is_available(self) -> bool:
        return self.status == ConnectorStatus.AVAILABLE

    @property
    def has_error(self) -> bool:
        return bool(self.error_code) and self.error_code != "NoError"


@dataclass
class StationState:
    """Holds state for one watched station (applies to all connectors)."""

    station_id: str
    name: str | None = None
    address: str | None = None
    vendor: str | None = None
    model: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    online: bool | None = None
    last_heartbeat: datetime | None = None

    found: bool = False  # False until the stream delivered a non-null snapshot
    price_per_kwh: float | None = None
    connectors: dict[str, ConnectorState] = field(default_factory=dict)

    @property
    def available_connectors(self) -> int:
        return sum(1 for c in self.connectors.values() if c.is_available)

    @property
    def charging_connectors(self) -> int:
        return sum(1 for c in self.connectors.values() if c.is_charging)


@dataclass
class SessionRecord:
    """One persisted charging session from the history collection."""

    session_id: str
    station_id: str | None = None
    connector_id: str | None = None
    status: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    energy_consumed: float | None = None
    total_cost: float | None = None
    transaction_id: str | None = None


@dataclass
class IntegrationData:
    """Top-level state container for the integration."""

    stations: dict[str, StationState]
    sessions: list[SessionRecord] = field(default_factory=list)
    active_session: SessionRecord | None = None
    stream_connected: bool | None = None


@dataclass
class RuntimeData:
    """Clients constructed once per config entry and shared with platforms."""

    config: EvDriverConfig
    identity: IdentityClient
    api: CsmsApiClient
    realtime: RealtimeDatabase
    documents: DocumentStore
    coordinator: EvDriverCoordinator
    last_options: dict[str, Any] = field(default_factory=dict)
