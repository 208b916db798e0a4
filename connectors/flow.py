"""
Authorization flow — start an OAuth2 authorization-code grant and finish
it when the provider redirects back.

Pending attempts are stored as single-use ``AuthorizationState`` records
keyed by a random ``state`` value; the callback consumes the record
before doing anything else, so a state can never be replayed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderCatalog, ProviderDefinition
from connectors.errors import InvalidOrExpiredState, ProviderRequestError, TokenExchangeFailed
from connectors.locks import PairLocks
from connectors.models import AuthorizationState, Credential, utcnow
from connectors.store import CredentialStore, StateStore

logger = logging.getLogger(__name__)

_STATE_BYTES = 32  # token_urlsafe(32) -> 43 characters


class AuthorizationFlow:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        states: StateStore,
        oauth_client: BaseOAuthClient,
        locks: PairLocks,
        *,
        callback_base_url: str,
        state_ttl: timedelta = timedelta(minutes=10),
        call_timeout: Optional[float] = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._states = states
        self._client = oauth_client
        self._locks = locks
        self._callback_base_url = callback_base_url.rstrip("/")
        self._state_ttl = state_ttl
        self._call_timeout = call_timeout
        self._clock = clock

    def redirect_uri(self, provider_id: str) -> str:
        return f"{self._callback_base_url}/{provider_id}/callback"

    def _authorization_url(self, provider: ProviderDefinition, state: str) -> str:
        parts = urlsplit(provider.authorization_endpoint)
        params = parse_qsl(parts.query, keep_blank_values=True)
        params += [
            ("client_id", provider.client_id),
            ("redirect_uri", self.redirect_uri(provider.provider_id)),
            ("response_type", "code"),
            ("scope", provider.scope),
            ("state", state),
        ]
        params += list(provider.extra_authorize_params.items())
        return urlunsplit(parts._replace(query=urlencode(params, quote_via=quote)))

    async def begin_authorization(
        self,
        user_id: str,
        provider_id: str,
        return_url: Optional[str] = None,
    ) -> str:
        """Persist a pending state and return the provider's authorization URL."""
        provider = self._catalog.get(provider_id)
        record = AuthorizationState(
            state=secrets.token_urlsafe(_STATE_BYTES),
            user_id=user_id,
            provider_id=provider.provider_id,
            return_url=return_url,
            created_at=self._clock(),
        )
        await self._states.put(record)
        logger.info("Generated OAuth URL for user %s and provider %s", user_id, provider.provider_id)
        return self._authorization_url(provider, record.state)

    async def consume_state(self, provider_id: str, state: str) -> AuthorizationState:
        """
        Delete the pending record for ``state`` and return it.

        The record is gone afterwards whatever the outcome, so a rejected
        callback cannot be retried with the same state.
        """
        record = await self._states.pop(state)
        if record is None:
            logger.warning("Unknown or already consumed OAuth state for provider %s", provider_id)
            raise InvalidOrExpiredState("Invalid or expired OAuth state", provider=provider_id)
        if record.is_expired(self._state_ttl, self._clock()):
            logger.warning("Expired OAuth state for user %s and provider %s", record.user_id, provider_id)
            raise InvalidOrExpiredState("Invalid or expired OAuth state", provider=provider_id)
        if record.provider_id.casefold() != provider_id.casefold():
            logger.warning(
                "Provider mismatch in OAuth callback: expected %s, got %s",
                record.provider_id,
                provider_id,
            )
            raise InvalidOrExpiredState("OAuth state was issued for another provider", provider=provider_id)
        return record

    async def complete_authorization(self, provider_id: str, code: str, state: str) -> Credential:
        record = await self.consume_state(provider_id, state)
        credential, _ = await self._exchange(record, code)
        return credential

    async def complete_with_return_url(
        self, provider_id: str, code: str, state: str
    ) -> Tuple[Credential, Optional[str]]:
        """Same as ``complete_authorization`` but also hands back the stored return URL."""
        record = await self.consume_state(provider_id, state)
        return await self._exchange(record, code)

    async def _exchange(
        self, record: AuthorizationState, code: str
    ) -> Tuple[Credential, Optional[str]]:
        provider = self._catalog.get(record.provider_id)
        try:
            tokens = await asyncio.wait_for(
                self._client.exchange_code(provider, code, self.redirect_uri(provider.provider_id)),
                timeout=self._call_timeout,
            )
        except (ProviderRequestError, asyncio.TimeoutError) as exc:
            status_code = getattr(exc, "status_code", None)
            payload = getattr(exc, "payload", {})
            logger.error(
                "Token exchange failed for provider %s (status %s): %s",
                provider.provider_id,
                status_code,
                payload or str(exc) or "timed out",
            )
            raise TokenExchangeFailed(
                f"Token exchange with {provider.display_name} failed",
                provider=provider.provider_id,
                status_code=status_code,
                payload=payload,
            ) from exc

        async with self._locks.hold(record.user_id, provider.provider_id):
            now = self._clock()
            previous = await self._credentials.get(record.user_id, provider.provider_id)
            # A new grant replaces the old one outright, refresh token included.
            credential = Credential(
                user_id=record.user_id,
                provider_id=provider.provider_id,
                access_token=tokens.access_token,
                created_at=previous.created_at if previous else now,
            )
            credential.apply_tokens(tokens, now)
            credential.granted_scope = tokens.scope or provider.scope
            await self._credentials.save(credential)

        logger.info("Connected user %s to provider %s", record.user_id, provider.provider_id)
        return credential, record.return_url

    async def discard(self, state: str) -> None:
        """Drop a pending state (the provider reported an error instead of a code)."""
        await self._states.pop(state)

    async def purge_expired_states(self) -> int:
        removed = await self._states.delete_older_than(self._clock() - self._state_ttl)
        if removed:
            logger.info("Purged %d expired OAuth states", removed)
        return removed
