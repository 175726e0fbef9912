"""Tests for turning streamed station snapshots into connector state."""

from datetime import UTC, datetime

from custom_components.ev_driver.coordinator import parse_connector, parse_station
from custom_components.ev_driver.data import ConnectorState, StationState

START = datetime(2025, 3, 1, 8, 0, tzinfo=UTC)
START_MS = int(START.timestamp() * 1000)


class TestParseConnector:
    def test_full_snapshot(self):
        raw = {
            "status": "Charging",
            "errorCode": "NoError",
            "txId": 981,
            "W_now": 7200,
            "Wh_total": 123456,
            "session_kwh": 4.2,
            "sessionStartTime": START_MS,
            "lastUpdate": START_MS + 60_000,
        }
        conn = parse_connector("1", raw)
        assert conn.status == "Charging"
        assert conn.is_charging
        assert not conn.has_error
        assert conn.transaction_id == "981"
        assert conn.power_w == 7200.0
        assert conn.energy_total_kwh == 123.456
        assert conn.session_energy_kwh == 4.2
        assert conn.session_start_time == START

    def test_kwh_counter_when_no_wh_total(self):
        conn = parse_connector("1", {"status": "Available", "kwh": "55.5"})
        assert conn.energy_total_kwh == 55.5

    def test_telemetry_clears_pending_transaction(self):
        previous = ConnectorState("1", status="Preparing", pending_transaction_id="981")
        conn = parse_connector("1", {"status": "Charging", "txId": "981"}, previous)
        assert conn.transaction_id == "981"
        assert conn.pending_transaction_id is None

    def test_pending_survives_until_telemetry_confirms(self):
        previous = ConnectorState(
            "1", status="Preparing", pending_transaction_id="981", session_start_time=START
        )
        conn = parse_connector("1", {"status": "Preparing"}, previous)
        assert conn.pending_transaction_id == "981"
        assert conn.session_start_time == START

    def test_start_time_kept_for_same_transaction(self):
        previous = ConnectorState("1", transaction_id="981", session_start_time=START)
        conn = parse_connector("1", {"status": "Charging", "txId": 981}, previous)
        assert conn.session_start_time == START

    def test_start_time_dropped_for_new_transaction(self):
        previous = ConnectorState("1", transaction_id="981", session_start_time=START)
        conn = parse_connector("1", {"status": "Charging", "txId": 982}, previous)
        assert conn.session_start_time is None

    def test_session_cleared_when_idle(self):
        previous = ConnectorState(
            "1", transaction_id="981", session_start_time=START, session_energy_kwh=3.0
        )
        conn = parse_connector("1", {"status": "Available", "session_kwh": 3.0}, previous)
        assert conn.session_start_time is None
        assert conn.session_energy_kwh is None

    def test_error_code(self):
        conn = parse_connector("1", {"status": "Faulted", "errorCode": "GroundFailure"})
        assert conn.has_error


class TestParseStation:
    def test_none_means_not_found(self):
        previous = StationState("CP1", price_per_kwh=4000.0, found=True)
        station = parse_station("CP1", None, previous)
        assert not station.found
        assert station.connectors == {}
        assert station.price_per_kwh == 4000.0

    def test_metadata_and_connectors(self):
        value = {
            "stationName": "Depot",
            "vendor": "ACME",
            "online": True,
            "latitude": "10.5",
            "connectors": {
                "1": {"status": "Available"},
                "2": {"status": "Charging", "txId": 5},
                "bad": "not-a-dict",
            },
        }
        station = parse_station("CP1", value)
        assert station.found
        assert station.name == "Depot"
        assert station.online is True
        assert station.latitude == 10.5
        assert set(station.connectors) == {"1", "2"}
        assert station.available_connectors == 1
        assert station.charging_connectors == 1

    def test_list_shaped_connectors(self):
        station = parse_station("CP1", {"connectors": [None, {"status": "Available"}]})
        assert list(station.connectors) == ["1"]

    def test_online_flag_missing(self):
        assert parse_station("CP1", {"connectors": {}}).online is None
        assert parse_station("CP1", {"online": False}).online is False

    def test_previous_connector_state_threaded_through(self):
        previous = StationState(
            "CP1",
            found=True,
            connectors={"1": ConnectorState("1", pending_transaction_id="77")},
        )
        station = parse_station("CP1", {"connectors": {"1": {"status": "Preparing"}}}, previous)
        assert station.connectors["1"].pending_transaction_id == "77"

    def test_out_of_range_timestamps_become_unknown(self):
        conn = parse_connector(
            "1", {"status": "Charging", "sessionStartTime": 1e300, "lastUpdate": 1e20}
        )
        assert conn.session_start_time is None
        assert conn.last_update is None
        assert conn.is_charging
