"""
BaseOAuthClient — abstract interface to a provider's token endpoints.

The lifecycle components never speak HTTP themselves; they go through
this interface so the transport can be swapped (and faked in tests).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from connectors.catalog import ProviderDefinition
from connectors.models import TokenResponse


class BaseOAuthClient(ABC):
    """Abstract base for OAuth2 token endpoint clients."""

    @abstractmethod
    async def exchange_code(
        self,
        provider: ProviderDefinition,
        code: str,
        redirect_uri: str,
    ) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Parameters
        ----------
        provider : ProviderDefinition
            Supplies the token endpoint and client credentials.
        code : str
            Authorization code from the OAuth redirect.
        redirect_uri : str
            Must equal the redirect URI sent with the authorization request.

        Raises
        ------
        ProviderRequestError
            On any non-success response, network error or timeout.
        """
        ...

    @abstractmethod
    async def refresh(self, provider: ProviderDefinition, refresh_token: str) -> TokenResponse:
        """
        Mint a new access token from a refresh token.

        Raises ``ProviderRequestError`` with ``transient`` set according
        to whether retrying could succeed.
        """
        ...

    async def revoke(self, provider: ProviderDefinition, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if the provider doesn't support revocation.
        """
        return False

    async def aclose(self) -> None:
        """Release transport resources."""
        return None
