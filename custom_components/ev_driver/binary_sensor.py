from __future__ import annotations

from homeassistant.components.binary_sensor import BinarySensorDeviceClass, BinarySensorEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import EntityCategory
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .base_entities import EvDriverStationEntity
from .coordinator import EvDriverCoordinator
from .data import RuntimeData


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    runtime: RuntimeData = config_entry.runtime_data  # type: ignore[attr-defined]
    coord = runtime.coordinator

    entities: list[BinarySensorEntity] = []
    for sid in runtime.config.station_ids:
        entities.append(StreamConnectivity(coord, config_entry.entry_id, sid))
        entities.append(StationOnline(coord, config_entry.entry_id, sid))

    async_add_entities(entities, True)


class StreamConnectivity(EvDriverStationEntity, BinarySensorEntity):
    _attr_device_class = BinarySensorDeviceClass.CONNECTIVITY
    _attr_entity_category = EntityCategory.DIAGNOSTIC

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str, station_id: str) -> None:
        EvDriverStationEntity.__init__(
            self,
            coordinator,
            entry_id,
            station_id,
            unique_suffix="stream_connected",
            name="Live stream connected",
        )

    @property
    def is_on(self) -> bool:
        return self.coordinator.stream_up(self._station_id)

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        st = self._station
        return {
            "station_id": self._station_id,
            "found": bool(st and st.found),
        }


class StationOnline(EvDriverStationEntity, BinarySensorEntity):
    _attr_device_class = BinarySensorDeviceClass.CONNECTIVITY

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str, station_id: str) -> None:
        EvDriverStationEntity.__init__(
            self,
            coordinator,
            entry_id,
            station_id,
            unique_suffix="online",
            name="Online",
        )

    @property
    def is_on(self) -> bool | None:
        st = self._station
        if not st or not st.found:
            return None
        return st.online

    @property
    def extra_state_attributes(self) -> dict[str, object]:
        st = self._station
        if not st or not st.found:
            return {}
        return {
            "address": st.address,
            "vendor": st.vendor,
            "model": st.model,
            "latitude": st.latitude,
            "longitude": st.longitude,
            "available_connectors": st.available_connectors,
            "charging_connectors": st.charging_connectors,
            "last_heartbeat": st.last_heartbeat.isoformat() if st.last_heartbeat else None,
        }
