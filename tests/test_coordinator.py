"""Tests for the coordinator: commands, live metrics, polling and stream lifecycle."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from homeassistant.exceptions import ConfigEntryAuthFailed
from homeassistant.helpers.update_coordinator import UpdateFailed
import pytest

from custom_components.ev_driver.api_client import StartChargingResult
from custom_components.ev_driver.auth import User
from custom_components.ev_driver.coordinator import EvDriverCoordinator
from custom_components.ev_driver.data import EvDriverConfig, SessionRecord
from custom_components.ev_driver.documents import DocumentStoreError
from custom_components.ev_driver.exceptions import AuthError, CsmsApiError

CONFIG = EvDriverConfig(
    api_key="key",
    project_id="proj",
    database_url="https://db.example.com",
    api_base_url="https://csms.example.com",
    station_ids=("CP1", "CP2"),
    default_price_per_kwh=3500,
)

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
START_MS = int((NOW - timedelta(hours=1)).timestamp() * 1000)


@pytest.fixture
def api():
    client = MagicMock()
    client.start_charging = AsyncMock(return_value=StartChargingResult("981", {"txId": 981}))
    client.stop_charging = AsyncMock(return_value={})
    client.get_effective_price = AsyncMock(return_value=4000.0)
    return client


@pytest.fixture
def realtime():
    rt = MagicMock()
    rt.subscribe = MagicMock(side_effect=lambda path, *a, **kw: MagicMock(path=path, unsubscribe=AsyncMock()))
    return rt


@pytest.fixture
def coordinator(identity, api, realtime):
    identity.current_user = User("uid-1", "d@example.com")
    documents = MagicMock()
    documents.user_sessions = AsyncMock(return_value=[])
    coord = EvDriverCoordinator(
        MagicMock(),
        config=CONFIG,
        identity=identity,
        api=api,
        documents=documents,
        realtime=realtime,
        config_entry=None,
    )
    coord.async_request_refresh = AsyncMock()
    return coord


def _charging(tx=981, **extra):
    return {"connectors": {"1": {"status": "Charging", "txId": tx, **extra}}}


class TestStartCharging:
    @pytest.mark.asyncio
    async def test_start_response_before_first_telemetry(self, coordinator, api):
        coordinator.apply_station_snapshot("CP1", {"online": True})

        result = await coordinator.async_start_charging("CP1", "1")

        assert result.transaction_id == "981"
        api.start_charging.assert_awaited_once_with("CP1", "1", "uid-1")
        conn = coordinator.connector_state("CP1", "1")
        assert conn.pending_transaction_id == "981"
        provisional = conn.session_start_time
        assert provisional is not None

        coordinator.apply_station_snapshot("CP1", _charging(session_kwh=0.4))

        conn = coordinator.connector_state("CP1", "1")
        assert conn.transaction_id == "981"
        assert conn.pending_transaction_id is None
        assert conn.session_start_time == provisional

    @pytest.mark.asyncio
    async def test_start_response_after_telemetry(self, coordinator):
        coordinator.apply_station_snapshot("CP1", _charging(sessionStartTime=START_MS))

        await coordinator.async_start_charging("CP1", "1")

        conn = coordinator.connector_state("CP1", "1")
        assert conn.transaction_id == "981"
        assert conn.pending_transaction_id is None
        assert conn.session_start_time == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_result_after_shutdown_is_ignored(self, coordinator, api):
        coordinator.apply_station_snapshot("CP1", {"connectors": {"1": {"status": "Preparing"}}})
        release = asyncio.Event()

        async def _slow_start(*_args):
            await release.wait()
            return StartChargingResult("981", {})

        api.start_charging = AsyncMock(side_effect=_slow_start)
        pending = asyncio.create_task(coordinator.async_start_charging("CP1", "1"))
        await asyncio.sleep(0)

        await coordinator.async_shutdown()
        release.set()

        assert await pending is None
        assert coordinator.connector_state("CP1", "1").pending_transaction_id is None

    @pytest.mark.asyncio
    async def test_not_signed_in(self, coordinator, identity, api):
        identity.current_user = None

        with pytest.raises(CsmsApiError) as exc:
            await coordinator.async_start_charging("CP1", "1")

        assert exc.value.status == 401
        api.start_charging.assert_not_called()


class TestStopCharging:
    @pytest.mark.asyncio
    async def test_without_transaction_raises(self, coordinator, api):
        coordinator.apply_station_snapshot("CP1", {"connectors": {"1": {"status": "Available"}}})

        with pytest.raises(CsmsApiError):
            await coordinator.async_stop_charging("CP1", "1")

        api.stop_charging.assert_not_called()

    @pytest.mark.asyncio
    async def test_stops_pending_transaction(self, coordinator, api):
        coordinator.apply_station_snapshot("CP1", {"online": True})
        await coordinator.async_start_charging("CP1", "1")

        await coordinator.async_stop_charging("CP1", "1")

        api.stop_charging.assert_awaited_once_with("CP1", "1", "981")
        assert coordinator.connector_state("CP1", "1").pending_transaction_id is None
        coordinator.async_request_refresh.assert_awaited_once()


class TestLiveMetrics:
    def test_uses_station_price(self, coordinator):
        coordinator.apply_station_snapshot(
            "CP1", _charging(sessionStartTime=START_MS, session_kwh=10)
        )
        coordinator.data.stations["CP1"].price_per_kwh = 4000.0

        metrics = coordinator.live_metrics("CP1", "1", NOW)

        assert metrics.elapsed_ms == 3_600_000
        assert metrics.estimated_cost == 40000
        assert metrics.price_per_kwh == 4000.0

    def test_falls_back_to_configured_price(self, coordinator):
        coordinator.apply_station_snapshot(
            "CP1", _charging(sessionStartTime=START_MS, session_kwh=10)
        )

        metrics = coordinator.live_metrics("CP1", "1", NOW)

        assert metrics.price_per_kwh == 3500
        assert metrics.estimated_cost == 35000

    def test_unknown_connector_is_idle(self, coordinator):
        metrics = coordinator.live_metrics("CP9", "7", NOW)

        assert metrics.elapsed_ms == 0
        assert metrics.estimated_cost == 0


class TestPolling:
    @pytest.mark.asyncio
    async def test_history_and_prices(self, coordinator):
        sessions = [
            SessionRecord("s-2", status="active"),
            SessionRecord("s-1", status="completed"),
        ]
        coordinator.documents.user_sessions = AsyncMock(return_value=sessions)

        data = await coordinator._async_update_data()

        coordinator.documents.user_sessions.assert_awaited_once_with("uid-1")
        assert data.sessions == sessions
        assert data.active_session.session_id == "s-2"
        assert data.stations["CP1"].price_per_kwh == 4000.0
        assert data.stations["CP2"].price_per_kwh == 4000.0

    @pytest.mark.asyncio
    async def test_history_failure_keeps_last_known(self, coordinator):
        first = [SessionRecord("s-1", status="completed")]
        coordinator.documents.user_sessions = AsyncMock(return_value=first)
        coordinator.data = await coordinator._async_update_data()
        coordinator.documents.user_sessions = AsyncMock(side_effect=DocumentStoreError("503"))

        data = await coordinator._async_update_data()

        assert data.sessions == first

    @pytest.mark.asyncio
    async def test_network_auth_failure_is_retryable(self, coordinator, identity):
        identity.ensure_token_valid = AsyncMock(
            side_effect=AuthError("network_request_failed", "offline")
        )

        with pytest.raises(UpdateFailed):
            await coordinator._async_update_data()

    @pytest.mark.asyncio
    async def test_expired_session_needs_reauth(self, coordinator, identity):
        identity.ensure_token_valid = AsyncMock(
            side_effect=AuthError("session_expired", "sign in again")
        )

        with pytest.raises(ConfigEntryAuthFailed):
            await coordinator._async_update_data()


class TestStreams:
    @pytest.mark.asyncio
    async def test_shutdown_releases_each_subscription_once(self, coordinator, realtime):
        coordinator.start_streams()
        coordinator.start_streams()
        subs = list(coordinator._subscriptions.values())

        await coordinator.async_shutdown()
        await coordinator.stop_streams()

        assert realtime.subscribe.call_count == 2
        assert [s.path for s in subs] == ["live/stations/CP1", "live/stations/CP2"]
        for sub in subs:
            sub.unsubscribe.assert_awaited_once()

    def test_snapshot_and_connectivity_flags(self, coordinator):
        coordinator._on_stream_connection("CP1", True)
        coordinator._on_station_snapshot("CP1", _charging())
        coordinator._on_stream_connection("CP2", False)

        assert coordinator.stream_up("CP1")
        assert not coordinator.stream_up("CP2")
        assert coordinator.data.stream_connected is False
        assert coordinator.connector_state("CP1", "1").is_charging

    @pytest.mark.asyncio
    async def test_snapshot_after_shutdown_ignored(self, coordinator):
        await coordinator.async_shutdown()

        coordinator._on_station_snapshot("CP1", _charging())

        assert coordinator.connector_state("CP1", "1") is None
