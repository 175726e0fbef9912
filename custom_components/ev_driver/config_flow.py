from __future__ import annotations

from typing import Any

from homeassistant import config_entries
from homeassistant.config_entries import ConfigEntry, ConfigFlowResult
from homeassistant.core import callback
from homeassistant.helpers.aiohttp_client import async_get_clientsession
import voluptuous as vol

from .auth import IdentityClient
from .const import (
    CONF_API_BASE_URL,
    CONF_API_KEY,
    CONF_DATABASE_URL,
    CONF_DEFAULT_PRICE,
    CONF_EMAIL,
    CONF_PASSWORD,
    CONF_PROJECT_ID,
    CONF_STATION_IDS,
    CONF_UPDATE_INTERVAL,
    DEFAULT_PRICE_PER_KWH,
    DOMAIN,
    UPDATE_INTERVAL_DEFAULT,
)

# sign-in error codes surfaced as form errors; anything else is "unknown"
_FORM_ERRORS = {
    "invalid_email",
    "user_disabled",
    "user_not_found",
    "wrong_password",
    "invalid_credential",
    "too_many_requests",
    "network_request_failed",
    "missing_password",
}


def _user_schema(defaults: dict[str, Any]) -> vol.Schema:
    return vol.Schema({
        vol.Required(CONF_EMAIL, default=defaults.get(CONF_EMAIL, "")): str,
        vol.Required(CONF_PASSWORD): str,
        vol.Required(CONF_API_KEY, default=defaults.get(CONF_API_KEY, "")): str,
        vol.Required(CONF_PROJECT_ID, default=defaults.get(CONF_PROJECT_ID, "")): str,
        vol.Required(CONF_DATABASE_URL, default=defaults.get(CONF_DATABASE_URL, "")): str,
        vol.Required(CONF_API_BASE_URL, default=defaults.get(CONF_API_BASE_URL, "")): str,
        vol.Optional(CONF_STATION_IDS, default=defaults.get(CONF_STATION_IDS, "")): str,
    })


class EvDriverConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for EV Driver."""

    VERSION = 1
    reauth_entry: ConfigEntry | None = None

    async def async_step_user(self, user_input: dict[str, Any] | None = None) -> ConfigFlowResult:
        """Handle the initial step (and reauth)."""

        errors: dict[str, str] = {}
        defaults = dict(self.reauth_entry.data) if self.reauth_entry else {}
        data_schema = _user_schema(defaults)

        if user_input is None:
            return self.async_show_form(step_id="user", data_schema=data_schema)

        user_input = {k: v.strip() if isinstance(v, str) else v for k, v in user_input.items()}
        session = async_get_clientsession(self.hass)
        identity = IdentityClient(user_input[CONF_API_KEY], session)
        result = await identity.sign_in(user_input[CONF_EMAIL], user_input[CONF_PASSWORD])
        if not result.success:
            errors["base"] = (
                result.error_code if result.error_code in _FORM_ERRORS else "unknown"
            )
            return self.async_show_form(step_id="user", data_schema=data_schema, errors=errors)

        # persist tokens
        user_input = dict(user_input)
        user_input["tokens"] = identity.tokens

        unique = f"ev_driver:{user_input[CONF_EMAIL].lower()}"
        await self.async_set_unique_id(unique)
        if self.reauth_entry:
            self.hass.config_entries.async_update_entry(self.reauth_entry, data=user_input)
            self.hass.async_create_task(
                self.hass.config_entries.async_reload(self.reauth_entry.entry_id)
            )
            return self.async_abort(reason="reauth_successful")

        self._abort_if_unique_id_configured()
        return self.async_create_entry(
            title=f"EV Driver ({user_input[CONF_EMAIL]})", data=user_input
        )

    async def async_step_reauth(self, entry_data: dict[str, Any]) -> ConfigFlowResult:  # type: ignore[override]
        """Begin re-authentication flow."""
        self.reauth_entry = self.hass.config_entries.async_get_entry(self.context["entry_id"])  # type: ignore[index]
        return await self.async_step_user()

    @staticmethod
    @callback
    def async_get_options_flow(config_entry: ConfigEntry) -> config_entries.OptionsFlow:
        return EvDriverOptionsFlow(config_entry)


class EvDriverOptionsFlow(config_entries.OptionsFlow):
    """Handle the options flow (watched stations, fallback price, polling interval)."""

    def __init__(self, config_entry: config_entries.ConfigEntry) -> None:
        self._entry = config_entry

    def _options_schema(self) -> vol.Schema:
        opts = self._entry.options
        stations = opts.get(CONF_STATION_IDS, self._entry.data.get(CONF_STATION_IDS, ""))
        if isinstance(stations, list | tuple):
            stations = ",".join(stations)
        return vol.Schema({
            vol.Optional(CONF_STATION_IDS, default=stations or ""): str,
            vol.Optional(
                CONF_DEFAULT_PRICE,
                default=opts.get(CONF_DEFAULT_PRICE, DEFAULT_PRICE_PER_KWH),
            ): vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False)),
            vol.Optional(
                CONF_UPDATE_INTERVAL,
                default=opts.get(CONF_UPDATE_INTERVAL, UPDATE_INTERVAL_DEFAULT),
            ): vol.All(vol.Coerce(int), vol.Range(min=5, max=3600)),
        })

    async def async_step_init(self, user_input: dict[str, Any] | None = None) -> ConfigFlowResult:
        schema = self._options_schema()
        if user_input is None:
            return self.async_show_form(step_id="init", data_schema=schema)
        return self.async_create_entry(title="EV Driver", data=user_input)
