import logging

from aiohttp import ClientSession
from homeassistant.config_entries import ConfigEntry, ConfigEntryState
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryAuthFailed, ConfigEntryError, ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.typing import ConfigType

from .api_client import CsmsApiClient
from .auth import IdentityClient, User
from .const import CONF_EMAIL, CONF_PASSWORD, DOMAIN
from .coordinator import EvDriverCoordinator
from .data import EvDriverConfig, RuntimeData
from .documents import DocumentStore, DocumentStoreError
from .exceptions import AuthError, ConfigurationError
from .realtime import RealtimeDatabase
from .services import register_services, unregister_services

_LOGGER = logging.getLogger(__name__)
PLATFORMS = [
    Platform.SENSOR,
    Platform.BUTTON,
    Platform.BINARY_SENSOR,
]

# Allow multiple parallel updates per platform (entities rely on single coordinator)
PARALLEL_UPDATES = 0

CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)

TOKENS_KEY = "tokens"


async def async_setup(hass: HomeAssistant, config: ConfigType) -> bool:
    """Set up the EV Driver component."""
    hass.data.setdefault(DOMAIN, {})
    # Register services once domain-wide (multi-entry safe)
    if not hass.data[DOMAIN].get("services_registered"):
        await register_services(hass)
        hass.data[DOMAIN]["services_registered"] = True
    return True


def _token_persister(hass: HomeAssistant, entry: ConfigEntry, identity: IdentityClient):
    """Keep the refresh token in the entry so restarts skip the password sign-in."""

    def _on_auth(user: User | None) -> None:
        if user is None:
            return
        tokens = identity.tokens
        if entry.data.get(TOKENS_KEY) == tokens:
            return
        hass.config_entries.async_update_entry(entry, data={**entry.data, TOKENS_KEY: tokens})

    return _on_auth


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up one signed-in driver account."""
    _LOGGER.debug("Setting up EV Driver entry: %s", entry.title)

    hass.data.setdefault(DOMAIN, {})
    # services are dropped when the last entry unloads; a re-added entry needs them back
    if not hass.data[DOMAIN].get("services_registered"):
        await register_services(hass)
        hass.data[DOMAIN]["services_registered"] = True

    try:
        config = EvDriverConfig.from_entry(entry.data, entry.options)
    except ConfigurationError as err:
        # identity provider keys / URLs are mandatory
        raise ConfigEntryError(str(err)) from err

    # Use HA's aiohttp session
    session: ClientSession = async_get_clientsession(hass)

    identity = IdentityClient(
        config.api_key,
        session,
        email=entry.data.get(CONF_EMAIL),
        password=entry.data.get(CONF_PASSWORD),
        tokens=entry.data.get(TOKENS_KEY),
    )

    try:
        await identity.ensure_token_valid()
    except AuthError as err:
        if err.code == "network_request_failed":
            raise ConfigEntryNotReady(f"Identity provider unreachable: {err.message}") from err
        raise ConfigEntryAuthFailed(f"Auth failed: {err.message}") from err

    entry.async_on_unload(identity.on_auth_state_changed(_token_persister(hass, entry, identity)))
    _token_persister(hass, entry, identity)(identity.current_user)

    api = CsmsApiClient(identity, config.api_base_url, session=session)
    documents = DocumentStore(config.project_id, identity, session=session)
    realtime = RealtimeDatabase(config.database_url, identity, session=session)

    if identity.current_user:
        try:
            await documents.upsert_user_profile(identity.current_user)
        except (DocumentStoreError, AuthError) as err:
            _LOGGER.debug("Profile update skipped: %s", err)

    coordinator = EvDriverCoordinator(
        hass,
        config=config,
        identity=identity,
        api=api,
        documents=documents,
        realtime=realtime,
        config_entry=entry,
    )
    await coordinator.async_config_entry_first_refresh()

    entry.runtime_data = RuntimeData(  # type: ignore[attr-defined]
        config=config,
        identity=identity,
        api=api,
        realtime=realtime,
        documents=documents,
        coordinator=coordinator,
        last_options=dict(entry.options),
    )

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)
    # streams start only once platforms are up; a failed forward leaves nothing to release
    coordinator.start_streams()

    entry.async_on_unload(entry.add_update_listener(async_entry_update_listener))

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload an EV Driver config entry."""
    _LOGGER.debug("Unloading EV Driver config entry: %s", entry.entry_id)
    rd: RuntimeData | None = getattr(entry, "runtime_data", None)

    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
    if isinstance(rd, RuntimeData):
        # releases every live subscription
        await rd.coordinator.async_shutdown()
    else:
        _LOGGER.debug(
            "Unload requested for %s but no runtime_data present (may have failed early)",
            entry.entry_id,
        )

    if unload_ok:
        active_entries = [
            e
            for e in hass.config_entries.async_entries(DOMAIN)
            if e.state is ConfigEntryState.LOADED and e.entry_id != entry.entry_id
        ]
        if not active_entries and hass.data.get(DOMAIN, {}).get("services_registered"):
            await unregister_services(hass)
            hass.data.pop(DOMAIN, None)
    return unload_ok


async def async_entry_update_listener(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Reload when options change (token persistence only touches data)."""
    try:
        rd: RuntimeData = entry.runtime_data  # type: ignore[attr-defined]
    except AttributeError:
        _LOGGER.debug("ConfigEntry update before runtime_data available")
        return

    cur = dict(entry.options)
    if cur == rd.last_options:
        _LOGGER.debug("ConfigEntry options unchanged")
        return

    rd.last_options = cur
    await hass.config_entries.async_reload(entry.entry_id)
