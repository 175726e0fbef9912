from __future__ import annotations

from datetime import datetime, timedelta

from homeassistant.components.sensor import SensorDeviceClass, SensorEntity, SensorStateClass
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import UnitOfEnergy, UnitOfMass, UnitOfPower, UnitOfTime
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.event import async_track_time_interval
from homeassistant.util import dt as dt_util

from .base_entities import (
    EvDriverAccountEntity,
    EvDriverConnectorEntity,
    EvDriverStationEntity,
    track_connectors,
)
from .const import LIVE_METRICS_REFRESH_INTERVAL
from .coordinator import EvDriverCoordinator
from .data import RuntimeData
from .helpers import (
    build_connector_label,
    average_session_minutes,
    calculate_co2_saved,
    count_completed_sessions,
    count_monthly_charges,
    total_completed_cost,
    total_monthly_energy,
    update_total_increasing,
)
from .metrics import STATUS_LABELS, LiveMetrics, status_label


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    runtime: RuntimeData = config_entry.runtime_data  # type: ignore[attr-defined]
    coord = runtime.coordinator
    entry_id = config_entry.entry_id

    entities: list[SensorEntity] = [
        MonthlyChargesSensor(coord, entry_id),
        MonthlyEnergySensor(coord, entry_id),
        Co2SavedSensor(coord, entry_id),
        CompletedSessionsSensor(coord, entry_id),
        TotalSpendSensor(coord, entry_id),
        AverageSessionDurationSensor(coord, entry_id),
    ]
    # ---- Station sensors ----
    for sid in runtime.config.station_ids:
        entities.append(StationPriceSensor(coord, entry_id, sid))
    async_add_entities(entities)

    # ---- Connector sensors (connectors are discovered from the live stream) ----
    def _connector_sensors(sid: str, cid: str) -> list[SensorEntity]:
        return [
            ConnectorStatusSensor(coord, entry_id, sid, cid),
            ConnectorPowerSensor(coord, entry_id, sid, cid),
            SessionEnergySensor(coord, entry_id, sid, cid),
            SessionDurationSensor(coord, entry_id, sid, cid),
            SessionCostSensor(coord, entry_id, sid, cid),
            ConnEnergyTotal(coord, entry_id, sid, cid),
        ]

    config_entry.async_on_unload(track_connectors(coord, _connector_sensors, async_add_entities))


############################################################
# Station sensors
############################################################


class StationPriceSensor(EvDriverStationEntity, SensorEntity):
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = "/kWh"
    _attr_icon = "mdi:cash"

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str, station_id: str) -> None:
        EvDriverStationEntity.__init__(
            self,
            coordinator,
            entry_id,
            station_id,
            unique_suffix="sensor:price_per_kwh",
            name="Price per kWh",
        )

    @property
    def native_value(self) -> float | None:
        st = self._station
        return st.price_per_kwh if st else None

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        return {
            "station_id": self._station_id,
            "fallback": self.coordinator.prices.cached(self._station_id) is None,
        }


############################################################
# Connector sensors
############################################################


class ConnectorStatusSensor(EvDriverConnectorEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.ENUM
    _attr_options = [str(s) for s in STATUS_LABELS]

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:status",
            name=f"{build_connector_label(cid)} Status",
        )

    @property
    def native_value(self) -> str | None:
        st = self._conn_state
        status = st.status if st else None
        # unknown vendor states would break the enum options list
        return status if status in self._attr_options else None

    @property
    def icon(self) -> str:
        st = self._conn_state
        return status_label(st.status if st else None).icon

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        st = self._conn_state
        if not st:
            return {}
        return {
            "label": status_label(st.status).text,
            "raw_status": st.status,
            "error_code": st.error_code,
            "transaction_id": st.transaction_id or st.pending_transaction_id,
            "last_update": st.last_update.isoformat() if st.last_update else None,
        }


class ConnectorPowerSensor(EvDriverConnectorEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.POWER
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = UnitOfPower.WATT

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:power",
            name=f"{build_connector_label(cid)} Power",
        )

    @property
    def native_value(self) -> float | None:
        st = self._conn_state
        return st.power_w if st else None


class ConnEnergyTotal(EvDriverConnectorEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.ENERGY
    _attr_state_class = SensorStateClass.TOTAL_INCREASING
    _attr_native_unit_of_measurement = UnitOfEnergy.KILO_WATT_HOUR

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:energy_total_kwh",
            name=f"{build_connector_label(cid)} Energy total",
        )
        self._last_value: float | None = None

    @property
    def native_value(self) -> float | None:
        st = self._conn_state
        candidate = st.energy_total_kwh if st else None
        value = update_total_increasing(self._last_value, candidate)
        self._last_value = value
        return value


class _LiveSessionSensor(EvDriverConnectorEntity, SensorEntity):
    """Session sensors derived from live metrics; re-rendered while charging."""

    async def async_added_to_hass(self) -> None:
        await super().async_added_to_hass()
        self.async_on_remove(
            async_track_time_interval(
                self.hass, self._tick, timedelta(seconds=LIVE_METRICS_REFRESH_INTERVAL)
            )
        )

    @callback
    def _tick(self, _now: datetime) -> None:
        st = self._conn_state
        if st and st.session_start_time:
            self.async_write_ha_state()

    def _metrics(self) -> LiveMetrics:
        return self.coordinator.live_metrics(self._station_id, self._connector_id, dt_util.utcnow())

    def _in_session(self) -> bool:
        st = self._conn_state
        return bool(st and st.session_start_time)


class SessionEnergySensor(_LiveSessionSensor):
    _attr_device_class = SensorDeviceClass.ENERGY
    _attr_state_class = SensorStateClass.TOTAL
    _attr_native_unit_of_measurement = UnitOfEnergy.KILO_WATT_HOUR

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:session_energy",
            name=f"{build_connector_label(cid)} Session energy",
        )

    @property
    def native_value(self) -> float | None:
        if not self._in_session():
            return None
        return self._metrics().energy_kwh

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        if not self._in_session():
            return {}
        return {"average_power_kw": self._metrics().average_power_kw}


class SessionDurationSensor(_LiveSessionSensor):
    _attr_icon = "mdi:timer-outline"

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:session_duration",
            name=f"{build_connector_label(cid)} Session duration",
        )

    @property
    def native_value(self) -> str | None:
        if not self._in_session():
            return None
        return self._metrics().formatted_duration

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        st = self._conn_state
        if not st or not st.session_start_time:
            return {}
        return {
            "elapsed_ms": self._metrics().elapsed_ms,
            "session_start": st.session_start_time.isoformat(),
        }


class SessionCostSensor(_LiveSessionSensor):
    _attr_state_class = SensorStateClass.TOTAL
    _attr_icon = "mdi:cash-clock"

    def __init__(self, c: EvDriverCoordinator, entry_id: str, sid: str, cid: str) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            c,
            entry_id,
            sid,
            cid,
            unique_suffix="sensor:session_cost",
            name=f"{build_connector_label(cid)} Estimated cost",
        )

    @property
    def native_value(self) -> int | None:
        if not self._in_session():
            return None
        return self._metrics().estimated_cost

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        if not self._in_session():
            return {}
        return {"price_per_kwh": self._metrics().price_per_kwh}


############################################################
# Account sensors
############################################################


class MonthlyChargesSensor(EvDriverAccountEntity, SensorEntity):
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_icon = "mdi:counter"

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(
            coordinator, entry_id, unique_suffix="sensor:monthly_charges", name="Charges this month"
        )

    @property
    def native_value(self) -> int:
        data = self.coordinator.data
        return count_monthly_charges(data.sessions if data else None, dt_util.now())

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        data = self.coordinator.data
        active = data.active_session if data else None
        return {
            "sessions_loaded": len(data.sessions) if data else 0,
            "active_session": active.session_id if active else None,
        }


class MonthlyEnergySensor(EvDriverAccountEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.ENERGY
    _attr_state_class = SensorStateClass.TOTAL
    _attr_native_unit_of_measurement = UnitOfEnergy.KILO_WATT_HOUR

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(
            coordinator, entry_id, unique_suffix="sensor:monthly_energy", name="Energy this month"
        )

    @property
    def native_value(self) -> float:
        data = self.coordinator.data
        return round(total_monthly_energy(data.sessions if data else None, dt_util.now()), 3)


class Co2SavedSensor(EvDriverAccountEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.WEIGHT
    _attr_state_class = SensorStateClass.TOTAL
    _attr_native_unit_of_measurement = UnitOfMass.KILOGRAMS
    _attr_icon = "mdi:molecule-co2"

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(
            coordinator, entry_id, unique_suffix="sensor:co2_saved", name="CO2 saved this month"
        )

    @property
    def native_value(self) -> float:
        data = self.coordinator.data
        energy = total_monthly_energy(data.sessions if data else None, dt_util.now())
        return calculate_co2_saved(energy)


class CompletedSessionsSensor(EvDriverAccountEntity, SensorEntity):
    _attr_state_class = SensorStateClass.TOTAL
    _attr_icon = "mdi:check-circle-outline"

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(
            coordinator, entry_id, unique_suffix="sensor:completed_sessions", name="Completed sessions"
        )

    @property
    def native_value(self) -> int:
        data = self.coordinator.data
        return count_completed_sessions(data.sessions if data else None)


class TotalSpendSensor(EvDriverAccountEntity, SensorEntity):
    """Spend over the completed sessions in the loaded history window."""

    _attr_state_class = SensorStateClass.TOTAL
    _attr_icon = "mdi:cash-multiple"

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(coordinator, entry_id, unique_suffix="sensor:total_spend", name="Total spend")

    @property
    def native_value(self) -> int:
        data = self.coordinator.data
        return total_completed_cost(data.sessions if data else None)


class AverageSessionDurationSensor(EvDriverAccountEntity, SensorEntity):
    _attr_device_class = SensorDeviceClass.DURATION
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = UnitOfTime.MINUTES

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str) -> None:
        super().__init__(
            coordinator,
            entry_id,
            unique_suffix="sensor:average_session_duration",
            name="Average session duration",
        )

    @property
    def native_value(self) -> int:
        data = self.coordinator.data
        return average_session_minutes(data.sessions if data else None)
