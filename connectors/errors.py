"""
Connector error taxonomy.

Every failure a collaborator can observe is a ``ConnectorError`` subclass
carrying a stable ``kind`` string, which the HTTP layer maps to a status
code or an error redirect.  Raw ``httpx`` exceptions never escape the
connector package.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ConnectorError(Exception):
    """Base class for all connector lifecycle failures."""

    kind = "connector_error"

    def __init__(self, message: str, *, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderNotFound(ConnectorError):
    kind = "provider_not_found"


class InvalidOrExpiredState(ConnectorError):
    kind = "invalid_state"


class TokenExchangeFailed(ConnectorError):
    """The provider refused (or never answered) the code exchange."""

    kind = "token_exchange_failed"

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.payload = payload or {}


class NotConnected(ConnectorError):
    kind = "not_connected"


class RequiresReconnection(ConnectorError):
    """Only a fresh authorization flow can fix this credential."""

    kind = "requires_reconnection"


class RefreshTemporarilyUnavailable(ConnectorError):
    """Transient provider failure; retry later, stored state is intact."""

    kind = "refresh_unavailable"


class CatalogConfigError(ValueError):
    """Malformed provider configuration. Fatal at startup."""


class ProviderRequestError(Exception):
    """
    A token / revocation endpoint call failed.

    ``transient`` is True for network errors, timeouts, 5xx, 408 and 429;
    False when the provider definitively rejected the request.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.transient = transient
