from __future__ import annotations

from collections.abc import Callable
from typing import Any

from homeassistant.core import callback
from homeassistant.helpers.entity import Entity
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .coordinator import EvDriverCoordinator
from .data import ConnectorState, StationState
from .helpers import make_account_device_info, make_device_info, make_unique_id

__all__ = [
    "EvDriverAccountEntity",
    "EvDriverBaseEntity",
    "EvDriverStationEntity",
    "EvDriverConnectorEntity",
    "track_connectors",
]


class EvDriverBaseEntity(CoordinatorEntity[EvDriverCoordinator]):
    """Common base providing entry/station id storage and device_info."""

    _attr_has_entity_name = True

    def __init__(self, coordinator: EvDriverCoordinator, entry_id: str, station_id: str) -> None:
        super().__init__(coordinator)
        self._entry_id = entry_id
        self._station_id = station_id

    @property
    def _station(self) -> StationState | None:
        data = self.coordinator.data
        return data.stations.get(self._station_id) if data else None

    @property
    def device_info(self) -> dict[str, Any]:  # type: ignore[override]
        st = self._station
        return make_device_info(self._entry_id, self._station_id, st.name if st else None)


class EvDriverStationEntity(EvDriverBaseEntity):
    """Base for station-scope entities (no connector)."""

    def __init__(
        self,
        coordinator: EvDriverCoordinator,
        entry_id: str,
        station_id: str,
        unique_suffix: str,
        name: str,
    ) -> None:
        super().__init__(coordinator, entry_id, station_id)
        self._attr_unique_id = make_unique_id(entry_id, station_id, None, unique_suffix)
        self._attr_name = name


class EvDriverConnectorEntity(EvDriverBaseEntity):
    """Base for connector-scope entities."""

    def __init__(
        self,
        coordinator: EvDriverCoordinator,
        entry_id: str,
        station_id: str,
        connector_id: str,
        unique_suffix: str,
        name: str,
    ) -> None:
        super().__init__(coordinator, entry_id, station_id)
        self._connector_id = connector_id
        self._attr_unique_id = make_unique_id(entry_id, station_id, connector_id, unique_suffix)
        self._attr_name = name

    @property
    def connector_id(self) -> str:
        return self._connector_id

    @property
    def _conn_state(self) -> ConnectorState | None:
        return self.coordinator.connector_state(self._station_id, self._connector_id)

    @property
    def available(self) -> bool:
        # connectors vanish from the live tree when a station is removed
        return super().available and self._conn_state is not None


class EvDriverAccountEntity(CoordinatorEntity[EvDriverCoordinator]):
    """Base for account-wide entities (history statistics)."""

    _attr_has_entity_name = True

    def __init__(
        self,
        coordinator: EvDriverCoordinator,
        entry_id: str,
        unique_suffix: str,
        name: str,
    ) -> None:
        super().__init__(coordinator)
        self._entry_id = entry_id
        self._attr_unique_id = make_unique_id(entry_id, None, None, unique_suffix)
        self._attr_name = name

    @property
    def device_info(self) -> dict[str, Any]:  # type: ignore[override]
        return make_account_device_info(self._entry_id, self.coordinator.identity.email)


def track_connectors(
    coordinator: EvDriverCoordinator,
    factory: Callable[[str, str], list[Entity]],
    async_add_entities: AddEntitiesCallback,
) -> Callable[[], None]:
    """Add entities for every connector now and whenever a new one shows up in the stream."""
    known: set[tuple[str, str]] = set()

    @callback
    def _check() -> None:
        data = coordinator.data
        if not data:
            return
        new: list[Entity] = []
        for station_id, station in data.stations.items():
            for connector_id in station.connectors:
                key = (station_id, connector_id)
                if key in known:
                    continue
                known.add(key)
                new.extend(factory(station_id, connector_id))
        if new:
            async_add_entities(new)

    _check()
    return coordinator.async_add_listener(_check)
