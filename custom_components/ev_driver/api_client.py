from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from .auth import IdentityClient
from .const import HTTP_CONNECT_TIMEOUT, HTTP_TOTAL_TIMEOUT
from .exceptions import AuthError, CsmsApiError

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartChargingResult:
    transaction_id: str | None
    raw: dict[str, Any]


class CsmsApiClient:
    """Command-only CSMS client. No state; the coordinator owns state."""

    def __init__(
        self,
        identity: IdentityClient,
        base_url: str,
        *,
        session: ClientSession,
    ) -> None:
        self.identity = identity
        self.base_url = base_url.rstrip("/")
        self._session: ClientSession = session
        self._timeout: ClientTimeout = ClientTimeout(
            connect=HTTP_CONNECT_TIMEOUT, total=HTTP_TOTAL_TIMEOUT
        )
        _LOGGER.info("CsmsApiClient initialized (base_url=%s)", self.base_url)

    async def auth_headers(self) -> dict[str, str]:
        # token fetched per request; the identity client refreshes it before expiry
        token = await self.identity.get_id_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Generic request helper (auth + error handling)
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            headers = await self.auth_headers()
        except AuthError as err:
            raise CsmsApiError(f"Not authenticated: {err.message}", status=401) from err
        try:
            async with self._session.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    text = await resp.text()
                    raise CsmsApiError(
                        f"Request failed {resp.status} ({method} {path}): {text}",
                        status=resp.status,
                    )
                if resp.content_length == 0:
                    return {}
                body = await resp.json(content_type=None)
        except (TimeoutError, ClientError) as err:
            raise CsmsApiError(f"Request error ({method} {path}): {err}") from err
        except ValueError as err:
            raise CsmsApiError(f"Invalid response body ({method} {path}): {err}") from err

        if not isinstance(body, dict):
            return {"data": body}
        if body.get("success") is False:
            msg = body.get("message") or body.get("error") or "CSMS reported failure"
            raise CsmsApiError(str(msg), status=200)
        return body

    # ------------------------------------------------------------------
    # COMMANDS (write actions)
    # ------------------------------------------------------------------
    async def start_charging(
        self, station_id: str, connector_id: str | int, id_tag: str
    ) -> StartChargingResult:
        """Ask the CSMS to start a transaction on one connector."""
        _LOGGER.debug(
            "Start charging: station=%s connector=%s", station_id, connector_id
        )
        body = await self._request(
            "POST",
            "/api/driver/start",
            json={"stationId": station_id, "connectorId": connector_id, "idTag": id_tag},
        )
        tx = body.get("sessionId") or body.get("txId") or body.get("transactionId")
        _LOGGER.debug("Started charging successfully (tx=%s)", tx)
        return StartChargingResult(transaction_id=str(tx) if tx is not None else None, raw=body)

    async def stop_charging(
        self, station_id: str, connector_id: str | int, transaction_id: str | int | None
    ) -> None:
        await self._request(
            "POST",
            "/api/driver/stop",
            json={"stationId": station_id, "connectorId": connector_id, "txId": transaction_id},
        )
        _LOGGER.debug("Stopped charging successfully (tx=%s)", transaction_id)

    # ------------------------------------------------------------------
    # READS
    # ------------------------------------------------------------------
    async def get_effective_price(self, station_id: str) -> float:
        """Effective tariff per kWh for a station."""
        body = await self._request(
            "GET", "/api/pricing/effective", params={"stationId": station_id}
        )
        raw = body.get("pricePerKwh")
        if raw is None and isinstance(body.get("data"), dict):
            raw = body["data"].get("pricePerKwh")
        try:
            return float(raw)
        except (TypeError, ValueError) as err:
            raise CsmsApiError(f"Invalid pricePerKwh in response: {raw!r}") from err

    async def get_station_info(self, station_id: str) -> dict[str, Any]:
        body = await self._request("GET", f"/api/stations/{station_id}")
        data = body.get("data")
        return data if isinstance(data, dict) else body
