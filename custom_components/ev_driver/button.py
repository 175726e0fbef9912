from __future__ import annotations

import logging

from homeassistant.components.button import ButtonEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .base_entities import EvDriverConnectorEntity, track_connectors
from .coordinator import EvDriverCoordinator
from .data import RuntimeData
from .exceptions import CsmsApiError
from .helpers import build_connector_label

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant, config_entry: ConfigEntry, async_add_entities: AddEntitiesCallback
) -> None:
    """Set up EV Driver buttons (one start/stop pair per connector)."""
    runtime: RuntimeData = config_entry.runtime_data  # type: ignore[attr-defined]
    coord = runtime.coordinator

    def _buttons(sid: str, cid: str) -> list[ButtonEntity]:
        lbl = build_connector_label(cid)
        return [
            EvDriverActionButton(
                coordinator=coord,
                entry_id=config_entry.entry_id,
                station_id=sid,
                connector_id=cid,
                name=f"Start charging {lbl}",
                action="start_charging",
            ),
            EvDriverActionButton(
                coordinator=coord,
                entry_id=config_entry.entry_id,
                station_id=sid,
                connector_id=cid,
                name=f"Stop charging {lbl}",
                action="stop_charging",
            ),
        ]

    config_entry.async_on_unload(track_connectors(coord, _buttons, async_add_entities))


class EvDriverActionButton(EvDriverConnectorEntity, ButtonEntity):
    """Start/stop action button for a connector."""

    def __init__(
        self,
        *,
        coordinator: EvDriverCoordinator,
        entry_id: str,
        station_id: str,
        connector_id: str,
        name: str,
        action: str,
    ) -> None:
        EvDriverConnectorEntity.__init__(
            self,
            coordinator,
            entry_id,
            station_id,
            connector_id,
            unique_suffix=f"button:{action}",
            name=name,
        )
        self._action = action
        self._attr_icon = "mdi:play-circle" if action == "start_charging" else "mdi:stop-circle"

    async def async_press(self) -> None:
        """Execute the action on press."""
        try:
            if self._action == "start_charging":
                await self.coordinator.async_start_charging(self._station_id, self._connector_id)
            elif self._action == "stop_charging":
                await self.coordinator.async_stop_charging(self._station_id, self._connector_id)
            else:
                _LOGGER.debug("Unknown action for button: %s", self._action)
        except CsmsApiError as err:
            raise HomeAssistantError(f"{self.name}: {err.message}") from err
