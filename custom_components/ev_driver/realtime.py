# custom_components/ev_driver/realtime.py
from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
import copy
import json
import logging
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from .auth import IdentityClient
from .const import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_TOTAL_TIMEOUT,
    LIVE_PRICING_PATH,
    LIVE_STATIONS_PATH,
    STREAM_READ_TIMEOUT,
    STREAM_RECONNECT_INITIAL_BACKOFF,
    STREAM_RECONNECT_MAX_BACKOFF,
)
from .exceptions import AuthError, RealtimeError

_LOGGER = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]
ConnectionCallback = Callable[[bool], None]


def station_path(station_id: str) -> str:
    return f"{LIVE_STATIONS_PATH}/{station_id}"


def connector_path(station_id: str, connector_id: str | int) -> str:
    return f"{LIVE_STATIONS_PATH}/{station_id}/connectors/{connector_id}"


STATIONS_PATH = LIVE_STATIONS_PATH
PRICING_PATH = LIVE_PRICING_PATH


# ---------- local mirror of a streamed subtree ----------


def _segments(path: str) -> list[str]:
    return [p for p in (path or "").split("/") if p]


def apply_put(tree: Any, path: str, data: Any) -> Any:
    """Replace the value at ``path`` (relative to tree root); None deletes it."""
    parts = _segments(path)
    if not parts:
        return data
    root = tree if isinstance(tree, dict) else {}
    node = root
    for key in parts[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            if data is None:
                return root or None
            child = {}
            node[key] = child
        node = child
    if data is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = data
    return _prune(root)


def apply_patch(tree: Any, path: str, data: Any) -> Any:
    """Merge the children of ``data`` into the node at ``path``."""
    if not isinstance(data, dict):
        return apply_put(tree, path, data)
    base = path.rstrip("/")
    for key, value in data.items():
        tree = apply_put(tree, f"{base}/{key}", value)
    return tree


def _prune(node: Any) -> Any:
    """Drop empty containers, as the server never stores them."""
    if not isinstance(node, dict):
        return node
    for key in list(node):
        child = _prune(node[key])
        if child is None or child == {}:
            node.pop(key)
        else:
            node[key] = child
    return node or None


class _EventParser:
    """Incremental server-sent-events parser (event/data fields only)."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, raw: bytes | str) -> tuple[str, str] | None:
        line = raw.decode("utf-8", "ignore") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if self._event is None and not self._data:
                return None
            event = (self._event or "message", "\n".join(self._data))
            self._event, self._data = None, []
            return event
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


class Subscription:
    """Handle for one live path; release it exactly once with ``unsubscribe``."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.error: RealtimeError | None = None
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released and self._task is not None and not self._task.done()

    async def unsubscribe(self) -> None:
        """Stop the stream and release the server-side listener."""
        if self._released:
            _LOGGER.debug("Subscription %s already released", self.path)
            return
        self._released = True
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                _LOGGER.exception("Stream task for %s ended with an error", self.path)
            self._task = None
        _LOGGER.debug("Subscription %s released", self.path)


class RealtimeDatabase:
    """Live reads of the tree-shaped realtime database over its streaming REST API."""

    def __init__(
        self,
        database_url: str,
        identity: IdentityClient,
        *,
        session: ClientSession,
    ) -> None:
        self._base = database_url.rstrip("/")
        self._identity = identity
        self._session = session
        self._stream_timeout = ClientTimeout(
            total=None, connect=HTTP_CONNECT_TIMEOUT, sock_read=STREAM_READ_TIMEOUT
        )
        self._timeout = ClientTimeout(connect=HTTP_CONNECT_TIMEOUT, total=HTTP_TOTAL_TIMEOUT)

    def _url(self, path: str) -> str:
        return f"{self._base}/{'/'.join(_segments(path))}.json"

    async def get(self, path: str) -> Any:
        """One-shot read; None when nothing is stored at ``path``."""
        token = await self._identity.get_id_token()
        async with self._session.get(
            self._url(path), params={"auth": token}, timeout=self._timeout
        ) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise RealtimeError(f"Read of {path} failed ({resp.status}): {text}")
            return await resp.json(content_type=None)

    def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        *,
        on_connection_change: ConnectionCallback | None = None,
    ) -> Subscription:
        """Start streaming ``path``; callback receives the full value after every change."""
        sub = Subscription(path)
        sub._task = asyncio.create_task(
            self._runner_main(sub, callback, on_connection_change),
            name=f"ev-driver-stream-{path}",
        )
        return sub

    # ---------- internals ----------

    @staticmethod
    def _deliver(sub: Subscription, callback: SnapshotCallback, value: Any) -> None:
        try:
            callback(copy.deepcopy(value))
        except Exception:
            _LOGGER.exception("Snapshot callback for %s raised", sub.path)

    @staticmethod
    def _notify_conn(cb: ConnectionCallback | None, up: bool) -> None:
        if not cb:
            return
        try:
            cb(up)
        except Exception:
            _LOGGER.exception("on_connection_change callback error")

    async def _consume(
        self, sub: Subscription, resp: Any, callback: SnapshotCallback
    ) -> bool:
        """Read events until the stream ends. Returns False when the server cancelled."""
        parser = _EventParser()
        mirror: Any = None
        async for raw in resp.content:
            if sub._stop.is_set():
                return True
            event = parser.feed(raw)
            if event is None:
                continue
            name, data_raw = event

            if name in ("put", "patch"):
                try:
                    payload = json.loads(data_raw)
                except json.JSONDecodeError:
                    _LOGGER.debug("Non-JSON event on %s: %r", sub.path, data_raw[:200])
                    continue
                if not isinstance(payload, dict):
                    continue
                ev_path = payload.get("path") or "/"
                if name == "put":
                    mirror = apply_put(mirror, ev_path, payload.get("data"))
                else:
                    mirror = apply_patch(mirror, ev_path, payload.get("data"))
                _LOGGER.debug("Stream %s %s at %s", sub.path, name, ev_path)
                self._deliver(sub, callback, mirror)
            elif name == "keep-alive":
                continue
            elif name == "auth_revoked":
                _LOGGER.info("Stream %s: token revoked, reconnecting", sub.path)
                self._identity.invalidate_token()
                return True
            elif name == "cancel":
                _LOGGER.error("Stream %s cancelled by server (permission denied?)", sub.path)
                return False
        return True

    async def _runner_main(
        self,
        sub: Subscription,
        callback: SnapshotCallback,
        on_conn: ConnectionCallback | None,
    ) -> None:
        """Maintain the stream with auto-reconnect."""
        backoff = STREAM_RECONNECT_INITIAL_BACKOFF

        while not sub._stop.is_set():
            try:
                token = await self._identity.get_id_token()
                async with self._session.get(
                    self._url(sub.path),
                    params={"auth": token},
                    headers={"Accept": "text/event-stream"},
                    timeout=self._stream_timeout,
                ) as resp:
                    if resp.status in (401, 403):
                        self._identity.invalidate_token()
                        raise RealtimeError(f"stream rejected ({resp.status})")
                    if resp.status != 200:
                        raise RealtimeError(f"stream failed ({resp.status})")

                    _LOGGER.info("Stream connected: %s", sub.path)
                    self._notify_conn(on_conn, True)
                    backoff = STREAM_RECONNECT_INITIAL_BACKOFF

                    keep_going = await self._consume(sub, resp, callback)
                    if not keep_going:
                        sub.error = RealtimeError(f"stream {sub.path} cancelled by server")
                        self._notify_conn(on_conn, False)
                        return
                _LOGGER.debug("Stream %s ended; reconnecting", sub.path)
                with suppress(TimeoutError):
                    await asyncio.wait_for(
                        sub._stop.wait(), timeout=STREAM_RECONNECT_INITIAL_BACKOFF
                    )

            except asyncio.CancelledError:
                # unsubscribe()
                break
            except (ClientError, OSError, TimeoutError, AuthError, RealtimeError) as err:
                _LOGGER.warning(
                    "Stream %s disconnected/error: %s (retry in %.0fs)", sub.path, err, backoff
                )
                self._notify_conn(on_conn, False)
                with suppress(TimeoutError):
                    await asyncio.wait_for(sub._stop.wait(), timeout=backoff)
                backoff = min(backoff * 2.0, STREAM_RECONNECT_MAX_BACKOFF)

        self._notify_conn(on_conn, False)
        _LOGGER.info("Stream stopped: %s", sub.path)
