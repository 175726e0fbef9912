"""Exceptions raised by the EV Driver clients."""

from __future__ import annotations


class EvDriverError(Exception):
    """Base class for all integration errors."""


class ConfigurationError(EvDriverError):
    """Required configuration is missing; the integration cannot start."""


class AuthError(EvDriverError):
    """Identity provider rejected a request or no session is available."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class CsmsApiError(EvDriverError):
    """CSMS REST call failed (non-2xx, success=false, timeout or transport)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


class RealtimeError(EvDriverError):
    """Realtime stream was cancelled or rejected by the server."""
