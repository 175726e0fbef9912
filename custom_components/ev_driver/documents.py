"""Read access to the document collections (stations, chargingSessions, users)."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
import logging
import re
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from .auth import IdentityClient, User
from .const import (
    COLLECTION_SESSIONS,
    COLLECTION_USERS,
    DOCUMENTS_BASE_URL,
    HTTP_CONNECT_TIMEOUT,
    HTTP_TOTAL_TIMEOUT,
)
from .data import SessionRecord
from .exceptions import EvDriverError
from .helpers import safe_float

_LOGGER = logging.getLogger(__name__)

_FRACTION = re.compile(r"\.(\d{6})\d+")


class DocumentStoreError(EvDriverError):
    """Document query failed."""


def parse_timestamp(raw: str) -> datetime | None:
    try:
        # server timestamps carry nanoseconds; datetime keeps microseconds
        text = _FRACTION.sub(r".\1", raw.replace("Z", "+00:00"))
        value = datetime.fromisoformat(text)
    except (TypeError, ValueError):
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def decode_value(value: Mapping[str, Any]) -> Any:
    """Decode one typed document value into plain Python."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "bytesValue" in value:
        return value["bytesValue"]
    if "geoPointValue" in value:
        return dict(value["geoPointValue"])
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields") or {})
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values") or []]
    return None


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: decode_value(v) for k, v in fields.items()}


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return {"timestampValue": value.astimezone(UTC).isoformat().replace("+00:00", "Z")}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    if isinstance(value, list | tuple):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    return {"stringValue": str(value)}


def document_id(doc: Mapping[str, Any]) -> str:
    return str(doc.get("name", "")).rsplit("/", 1)[-1]


def session_from_document(doc: Mapping[str, Any]) -> SessionRecord:
    fields = decode_fields(doc.get("fields") or {})

    def _ts(key: str) -> datetime | None:
        v = fields.get(key)
        if isinstance(v, datetime):
            return v
        if isinstance(v, str):
            return parse_timestamp(v)
        if isinstance(v, int | float):
            return datetime.fromtimestamp(v / 1000, tz=UTC)
        return None

    tx = fields.get("transactionId", fields.get("txId"))
    connector = fields.get("connectorId")
    return SessionRecord(
        session_id=document_id(doc),
        station_id=fields.get("stationId"),
        connector_id=str(connector) if connector is not None else None,
        status=fields.get("status"),
        start_time=_ts("startTime"),
        end_time=_ts("endTime"),
        energy_consumed=safe_float(fields.get("energyConsumed")),
        total_cost=safe_float(fields.get("totalCost", fields.get("cost"))),
        transaction_id=str(tx) if tx is not None else None,
    )


class DocumentStore:
    def __init__(
        self,
        project_id: str,
        identity: IdentityClient,
        *,
        session: ClientSession,
    ) -> None:
        self._identity = identity
        self._session = session
        self._root = f"{DOCUMENTS_BASE_URL}/projects/{project_id}/databases/(default)/documents"
        self._timeout = ClientTimeout(connect=HTTP_CONNECT_TIMEOUT, total=HTTP_TOTAL_TIMEOUT)

    async def _headers(self) -> dict[str, str]:
        token = await self._identity.get_id_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _call(
        self,
        method: str,
        url: str,
        *,
        json: Any | None = None,
        params: Any | None = None,
        allow_404: bool = False,
    ) -> Any:
        headers = await self._headers()
        try:
            async with self._session.request(
                method, url, json=json, params=params, headers=headers, timeout=self._timeout
            ) as resp:
                if allow_404 and resp.status == 404:
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise DocumentStoreError(f"{method} {url} failed ({resp.status}): {text}")
                return await resp.json(content_type=None)
        except (TimeoutError, ClientError) as err:
            raise DocumentStoreError(f"{method} {url} failed: {err}") from err
        except ValueError as err:
            raise DocumentStoreError(f"{method} {url} returned an invalid body: {err}") from err

    async def query(
        self,
        collection: str,
        *,
        equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Structured query: field equality filters + optional ordering."""
        filters = [
            {
                "fieldFilter": {
                    "field": {"fieldPath": field},
                    "op": "EQUAL",
                    "value": encode_value(value),
                }
            }
            for field, value in (equals or {}).items()
        ]
        structured: dict[str, Any] = {"from": [{"collectionId": collection}]}
        if len(filters) == 1:
            structured["where"] = filters[0]
        elif filters:
            structured["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}
        if order_by:
            structured["orderBy"] = [
                {
                    "field": {"fieldPath": order_by},
                    "direction": "DESCENDING" if descending else "ASCENDING",
                }
            ]
        if limit:
            structured["limit"] = int(limit)

        rows = await self._call(
            "POST", f"{self._root}:runQuery", json={"structuredQuery": structured}
        )
        return [row["document"] for row in rows or [] if isinstance(row, dict) and row.get("document")]

    async def get_document(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = await self._call("GET", f"{self._root}/{collection}/{doc_id}", allow_404=True)
        if not doc:
            return None
        return {"id": document_id(doc), **decode_fields(doc.get("fields") or {})}

    async def user_sessions(self, user_id: str, *, limit: int | None = 100) -> list[SessionRecord]:
        """The user's charging sessions, newest first."""
        docs = await self.query(
            COLLECTION_SESSIONS, equals={"userId": user_id}, order_by="startTime", limit=limit
        )
        return [session_from_document(d) for d in docs]

    async def active_session(self, user_id: str) -> SessionRecord | None:
        docs = await self.query(
            COLLECTION_SESSIONS,
            equals={"userId": user_id, "status": "active"},
            order_by="startTime",
            limit=1,
        )
        return session_from_document(docs[0]) if docs else None

    async def upsert_user_profile(
        self, user: User, extra: Mapping[str, Any] | None = None, *, now: datetime | None = None
    ) -> None:
        """Create or merge the driver's profile document."""
        now = now or datetime.now(UTC)
        url = f"{self._root}/{COLLECTION_USERS}/{user.uid}"
        existing = await self._call("GET", url, allow_404=True)

        profile: dict[str, Any] = {
            "uid": user.uid,
            "email": user.email or "",
            "displayName": user.display_name or "",
            "lastSignIn": now,
            "userType": "driver",
            **(extra or {}),
        }
        if not existing:
            profile["createdAt"] = now

        params: Sequence[tuple[str, str]] = [("updateMask.fieldPaths", k) for k in profile]
        await self._call(
            "PATCH",
            url,
            json={"fields": {k: encode_value(v) for k, v in profile.items()}},
            params=params,
        )
        _LOGGER.debug("User profile %s %s", user.uid, "updated" if existing else "created")
