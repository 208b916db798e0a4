"""
HttpOAuthClient — generic OAuth2 token endpoint client on ``httpx``.

One shared ``httpx.AsyncClient`` serves every provider; each call is
bounded by the configured provider timeout.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderDefinition
from connectors.errors import ProviderRequestError
from connectors.models import TokenResponse

logger = logging.getLogger(__name__)

# Statuses worth retrying even though they are 4xx.
_RETRYABLE_4XX = {408, 429}


def _parse_payload(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text[:500]}
    return data if isinstance(data, dict) else {"raw": data}


class HttpOAuthClient(BaseOAuthClient):
    """OAuth2 client speaking the standard form-encoded token protocol."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def _post_token(self, provider: ProviderDefinition, data: Dict[str, str]) -> TokenResponse:
        form = {
            "client_id": provider.client_id,
            "client_secret": provider.client_secret.get_secret_value(),
            **data,
        }
        try:
            resp = await self._client.post(
                provider.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise ProviderRequestError(
                f"{provider.provider_id} token endpoint timed out", transient=True
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                f"{provider.provider_id} token endpoint unreachable: {exc}", transient=True
            ) from exc

        payload = _parse_payload(resp)
        if resp.status_code >= 400:
            raise ProviderRequestError(
                f"{provider.provider_id} token endpoint returned {resp.status_code}: "
                f"{payload.get('error', 'unknown_error')}",
                status_code=resp.status_code,
                payload=payload,
                transient=resp.status_code >= 500 or resp.status_code in _RETRYABLE_4XX,
            )

        # Some providers (GitHub) answer 200 with an error body.
        if "error" in payload:
            raise ProviderRequestError(
                f"{provider.provider_id} OAuth error: "
                f"{payload.get('error_description', payload['error'])}",
                status_code=resp.status_code,
                payload=payload,
            )

        # A success status without a usable token body (gateway page, truncated
        # JSON) says nothing about the grant itself.
        try:
            return TokenResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProviderRequestError(
                f"{provider.provider_id} returned a malformed token response",
                status_code=resp.status_code,
                payload=payload,
                transient=True,
            ) from exc

    async def exchange_code(
        self,
        provider: ProviderDefinition,
        code: str,
        redirect_uri: str,
    ) -> TokenResponse:
        return await self._post_token(
            provider,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )

    async def refresh(self, provider: ProviderDefinition, refresh_token: str) -> TokenResponse:
        return await self._post_token(
            provider,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

    async def revoke(self, provider: ProviderDefinition, token: str) -> bool:
        """RFC 7009 revocation; returns False when the provider has no endpoint."""
        if not provider.revocation_endpoint:
            return False
        try:
            resp = await self._client.post(
                provider.revocation_endpoint,
                data={
                    "token": token,
                    "client_id": provider.client_id,
                    "client_secret": provider.client_secret.get_secret_value(),
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                f"{provider.provider_id} revocation endpoint unreachable: {exc}", transient=True
            ) from exc
        if resp.status_code >= 400:
            raise ProviderRequestError(
                f"{provider.provider_id} revocation returned {resp.status_code}",
                status_code=resp.status_code,
                payload=_parse_payload(resp),
                transient=resp.status_code >= 500,
            )
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
