# custom_components/ev_driver/coordinator.py
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta
from functools import partial
import logging
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.exceptions import ConfigEntryAuthFailed
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed
from homeassistant.util import dt as dt_util

from .api_client import CsmsApiClient, StartChargingResult
from .auth import IdentityClient
from .data import ConnectorState, EvDriverConfig, IntegrationData, SessionRecord, StationState
from .documents import DocumentStore, DocumentStoreError
from .exceptions import AuthError, CsmsApiError
from .helpers import safe_float
from .metrics import LiveMetrics, MetricsConfig, derive_live_metrics, to_epoch_ms
from .pricing import PriceProvider
from .realtime import RealtimeDatabase, Subscription, station_path

_LOGGER = logging.getLogger(__name__)


def _to_datetime(value: Any) -> datetime | None:
    ms = to_epoch_ms(value)
    if ms is None:
        return None
    try:
        return dt_util.utc_from_timestamp(ms / 1000)
    except (OverflowError, OSError, ValueError):
        _LOGGER.debug("Timestamp out of range: %r", value)
        return None


def _tx_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def parse_connector(
    connector_id: str, raw: Mapping[str, Any], previous: ConnectorState | None = None
) -> ConnectorState:
    """Build a ConnectorState from one telemetry snapshot.

    Telemetry is authoritative: a txId in the snapshot clears any pending
    transaction recorded from a start response, whichever arrived first.
    """
    tx = _tx_str(raw.get("txId"))
    pending = previous.pending_transaction_id if previous else None
    if tx is not None:
        pending = None

    energy_total = None
    wh_total = safe_float(raw.get("Wh_total"))
    if wh_total is not None:
        energy_total = wh_total / 1000.0
    else:
        energy_total = safe_float(raw.get("kwh"))

    start = _to_datetime(raw.get("sessionStartTime"))
    if start is None and previous and previous.session_start_time:
        same_tx = tx is None or tx in (previous.transaction_id, previous.pending_transaction_id)
        if (tx is not None or pending is not None) and same_tx:
            start = previous.session_start_time

    session_energy = safe_float(raw.get("session_kwh"))
    if tx is None and pending is None:
        session_energy = session_energy if start else None

    return ConnectorState(
        connector_id=connector_id,
        status=raw.get("status"),
        error_code=raw.get("errorCode"),
        transaction_id=tx,
        power_w=safe_float(raw.get("W_now")),
        energy_total_kwh=energy_total,
        session_energy_kwh=session_energy,
        session_start_time=start,
        last_update=_to_datetime(raw.get("lastUpdate")),
        pending_transaction_id=pending,
    )


def parse_station(
    station_id: str, value: Any, previous: StationState | None = None
) -> StationState:
    """Merge a streamed station subtree into a StationState (None -> not found)."""
    station = StationState(station_id=station_id)
    if previous:
        station.price_per_kwh = previous.price_per_kwh
    if not isinstance(value, Mapping):
        return station

    station.found = True
    station.name = value.get("stationName") or value.get("name")
    station.address = value.get("address")
    station.vendor = value.get("vendor")
    station.model = value.get("model")
    station.latitude = safe_float(value.get("latitude"))
    station.longitude = safe_float(value.get("longitude"))
    online = value.get("online")
    station.online = None if online is None else online is not False
    station.last_heartbeat = _to_datetime(value.get("lastHeartbeat"))

    raw_connectors = value.get("connectors") or {}
    if isinstance(raw_connectors, list):
        # integer-keyed children come back as a list with holes
        raw_connectors = {str(i): c for i, c in enumerate(raw_connectors) if c is not None}
    prev_conns = previous.connectors if previous else {}
    for cid, raw in raw_connectors.items():
        if not isinstance(raw, Mapping):
            continue
        cid = str(cid)
        station.connectors[cid] = parse_connector(cid, raw, prev_conns.get(cid))
    return station


class EvDriverCoordinator(DataUpdateCoordinator[IntegrationData]):
    """Single source of truth: history/price polling plus pushed station snapshots."""

    def __init__(
        self,
        hass: HomeAssistant,
        *,
        config: EvDriverConfig,
        identity: IdentityClient,
        api: CsmsApiClient,
        documents: DocumentStore,
        realtime: RealtimeDatabase,
        config_entry: ConfigEntry | None = None,
    ) -> None:
        super().__init__(
            hass,
            _LOGGER,
            name="EV Driver Coordinator",
            update_interval=timedelta(seconds=config.update_interval),
            config_entry=config_entry,
        )
        self.config = config
        self.identity = identity
        self.api = api
        self.documents = documents
        self.realtime = realtime
        self.metrics_config = MetricsConfig(default_price_per_kwh=config.default_price_per_kwh)
        self.prices = PriceProvider(api, self.metrics_config)

        self._subscriptions: dict[str, Subscription] = {}
        self._stream_up: dict[str, bool] = {}
        self._closing = False

    # -----------------------------
    # Polling (history + price)
    # -----------------------------
    def _empty_data(self) -> IntegrationData:
        return IntegrationData(
            stations={sid: StationState(station_id=sid) for sid in self.config.station_ids}
        )

    async def _async_update_data(self) -> IntegrationData:
        data = self.data or self._empty_data()
        user = self.identity.current_user
        try:
            await self.identity.ensure_token_valid()
        except AuthError as err:
            if err.code == "network_request_failed":
                raise UpdateFailed(f"Session refresh failed: {err.message}") from err
            raise ConfigEntryAuthFailed(f"Auth failed: {err.message}") from err
        user = self.identity.current_user or user

        sessions: list[SessionRecord] = data.sessions
        if user:
            try:
                sessions = await self.documents.user_sessions(user.uid)
            except DocumentStoreError as err:
                # history is display-only; keep the last known list
                _LOGGER.warning("Charging history refresh failed: %s", err)

        station_ids = list(data.stations)
        prices = await asyncio.gather(*(self.prices.get_price(sid) for sid in station_ids))
        for sid, price in zip(station_ids, prices, strict=True):
            data.stations[sid].price_per_kwh = price

        data.sessions = sessions
        data.active_session = next((s for s in sessions if s.status == "active"), None)
        return data

    # -----------------------------
    # Realtime streams
    # -----------------------------
    def start_streams(self) -> None:
        """Subscribe to every watched station (idempotent per station)."""
        for sid in self.config.station_ids:
            if sid in self._subscriptions:
                continue
            self._subscriptions[sid] = self.realtime.subscribe(
                station_path(sid),
                partial(self._on_station_snapshot, sid),
                on_connection_change=partial(self._on_stream_connection, sid),
            )

    async def stop_streams(self) -> None:
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            await sub.unsubscribe()

    @callback
    def _on_station_snapshot(self, station_id: str, value: Any) -> None:
        if self._closing:
            return
        if self.data is None:
            self.data = self._empty_data()
        self.apply_station_snapshot(station_id, value)
        self.async_update_listeners()

    @callback
    def _on_stream_connection(self, station_id: str, up: bool) -> None:
        self._stream_up[station_id] = up
        if self.data is None or self._closing:
            return
        self.data.stream_connected = bool(self._stream_up) and all(self._stream_up.values())
        self.async_update_listeners()

    def apply_station_snapshot(self, station_id: str, value: Any) -> StationState:
        """Replace one station's live state with a freshly streamed snapshot."""
        if self.data is None:
            self.data = self._empty_data()
        previous = self.data.stations.get(station_id)
        station = parse_station(station_id, value, previous)
        if value is None:
            _LOGGER.debug("Station %s not found in live tree", station_id)
        self.data.stations[station_id] = station
        return station

    # -----------------------------
    # Derived values
    # -----------------------------
    def stream_up(self, station_id: str) -> bool:
        return self._stream_up.get(station_id, False)

    def connector_state(self, station_id: str, connector_id: str) -> ConnectorState | None:
        if not self.data:
            return None
        station = self.data.stations.get(station_id)
        return station.connectors.get(connector_id) if station else None

    def live_metrics(
        self, station_id: str, connector_id: str, now: datetime | None = None
    ) -> LiveMetrics:
        station = self.data.stations.get(station_id) if self.data else None
        conn = station.connectors.get(connector_id) if station else None
        return derive_live_metrics(
            conn.session_start_time if conn else None,
            conn.session_energy_kwh if conn else None,
            station.price_per_kwh if station else None,
            now or dt_util.utcnow(),
            self.metrics_config,
        )

    # -----------------------------
    # Commands
    # -----------------------------
    async def async_start_charging(
        self, station_id: str, connector_id: str
    ) -> StartChargingResult | None:
        user = self.identity.current_user
        if not user:
            raise CsmsApiError("Not signed in", status=401)
        # idTag is the signed-in user's id
        result = await self.api.start_charging(station_id, connector_id, user.uid)
        if self._closing:
            _LOGGER.debug("Ignoring start result for %s/%s after shutdown", station_id, connector_id)
            return None

        conn = self.connector_state(station_id, connector_id)
        station = self.data.stations.get(station_id) if self.data else None
        if conn is None and station is not None and result.transaction_id:
            # start response beat the first telemetry for this connector
            conn = station.connectors[connector_id] = ConnectorState(connector_id)
        if conn is not None and conn.transaction_id is None and result.transaction_id:
            conn.pending_transaction_id = result.transaction_id
            if conn.session_start_time is None:
                conn.session_start_time = dt_util.utcnow()
            self.async_update_listeners()
        return result

    async def async_stop_charging(self, station_id: str, connector_id: str) -> None:
        conn = self.connector_state(station_id, connector_id)
        tx = (conn.transaction_id or conn.pending_transaction_id) if conn else None
        if tx is None:
            raise CsmsApiError(f"No active transaction on {station_id}/{connector_id}")
        await self.api.stop_charging(station_id, connector_id, tx)
        if self._closing:
            return
        if conn is not None:
            conn.pending_transaction_id = None
        self.async_update_listeners()
        await self.async_request_refresh()

    async def async_shutdown(self) -> None:
        """Release every realtime subscription exactly once."""
        self._closing = True
        await self.stop_streams()
        await super().async_shutdown()
