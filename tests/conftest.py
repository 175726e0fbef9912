"""Pytest configuration and fixtures."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest


def make_response(status=200, json_body=None, text="", content_length=None):
    """Fake aiohttp response object."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_body)
    resp.text = AsyncMock(return_value=text)
    resp.content_length = content_length
    return resp


def make_html_response(status=502, text="<html>Bad Gateway</html>"):
    """Response whose body is not JSON (proxy error pages and the like)."""
    resp = make_response(status, text=text)
    resp.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", text, 0))
    return resp


def as_context(resp):
    """Wrap a response so it can be used with ``async with session.x(...)``."""
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


@pytest.fixture
def session():
    """Mocked aiohttp ClientSession; tests set return values per call."""
    return MagicMock()


@pytest.fixture
def identity():
    """Signed-in identity client stand-in."""
    ident = MagicMock()
    ident.get_id_token = AsyncMock(return_value="id-token")
    ident.ensure_token_valid = AsyncMock()
    ident.invalidate_token = MagicMock()
    return ident
