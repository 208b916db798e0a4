"""
Token refresh engine — the single interface the rest of the application
uses to get a usable credential for a given user + provider combination.

1. Look up the credential.
2. If the access token expires within the safety margin, refresh it.
3. Classify failures: a rejected grant needs the user to reconnect, a
   transient failure leaves everything intact for a later retry.

At most one refresh exchange runs per (user, provider) pair: concurrent
callers join the in-flight task and share its outcome.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderCatalog
from connectors.errors import (
    ConnectorError,
    NotConnected,
    ProviderRequestError,
    RefreshTemporarilyUnavailable,
    RequiresReconnection,
)
from connectors.locks import PairKey, PairLocks
from connectors.models import RECONNECT_ERRORS, Credential, RefreshError, utcnow
from connectors.store import CredentialStore

logger = logging.getLogger(__name__)


class TokenRefresher:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        oauth_client: BaseOAuthClient,
        locks: PairLocks,
        *,
        margin: timedelta = timedelta(seconds=120),
        call_timeout: Optional[float] = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._client = oauth_client
        self._locks = locks
        self._margin = margin
        self._call_timeout = call_timeout
        self._clock = clock
        self._inflight: Dict[PairKey, asyncio.Task] = {}

    def _needs_refresh(self, credential: Credential) -> bool:
        if credential.last_refresh_error in RECONNECT_ERRORS:
            raise RequiresReconnection(
                f"{credential.provider_id} connection must be re-authorized "
                f"({credential.last_refresh_error.value})",
                provider=credential.provider_id,
            )
        return credential.expires_within(self._margin, self._clock())

    async def ensure_fresh(self, user_id: str, provider_id: str) -> Credential:
        """
        Return a credential whose access token is valid beyond the margin.

        Raises
        ------
        ProviderNotFound, NotConnected, RequiresReconnection,
        RefreshTemporarilyUnavailable
        """
        credential, _ = await self._ensure_fresh(user_id, provider_id)
        return credential

    async def _ensure_fresh(self, user_id: str, provider_id: str) -> Tuple[Credential, bool]:
        """Also reports whether a refresh exchange produced the returned credential."""
        provider_id = self._catalog.get(provider_id).provider_id
        credential = await self._credentials.get(user_id, provider_id)
        if credential is None:
            raise NotConnected(f"{provider_id} is not connected", provider=provider_id)
        if not self._needs_refresh(credential):
            return credential, False
        shared, exchanged = await self._join_refresh(user_id, provider_id)
        return shared.model_copy(deep=True), exchanged

    async def get_access_token(self, user_id: str, provider_id: str) -> str:
        credential = await self.ensure_fresh(user_id, provider_id)
        return credential.access_token

    def is_refreshing(self, user_id: str, provider_id: str) -> bool:
        return (user_id, provider_id) in self._inflight

    async def _join_refresh(self, user_id: str, provider_id: str) -> Tuple[Credential, bool]:
        key = (user_id, provider_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(user_id, provider_id))
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        # Callers that give up do not cancel the exchange for everyone else.
        return await asyncio.shield(task)

    def _forget(self, key: PairKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            task.exception()  # mark retrieved even if every waiter went away

    async def _refresh(self, user_id: str, provider_id: str) -> Tuple[Credential, bool]:
        async with self._locks.hold(user_id, provider_id):
            credential = await self._credentials.get(user_id, provider_id)
            if credential is None:
                raise NotConnected(f"{provider_id} is not connected", provider=provider_id)
            # Re-check under the lock: a reconnect may have landed meanwhile.
            if not self._needs_refresh(credential):
                return credential, False

            if not credential.refresh_token:
                credential.last_refresh_error = RefreshError.REFRESH_NOT_SUPPORTED
                credential.updated_at = self._clock()
                await self._credentials.save(credential)
                logger.warning(
                    "%s token for user %s expired and no refresh token is available",
                    provider_id,
                    user_id,
                )
                raise RequiresReconnection(
                    f"{provider_id} issued no refresh token; reconnect required",
                    provider=provider_id,
                )

            provider = self._catalog.get(provider_id)
            try:
                tokens = await asyncio.wait_for(
                    self._client.refresh(provider, credential.refresh_token),
                    timeout=self._call_timeout,
                )
            except (ProviderRequestError, asyncio.TimeoutError) as exc:
                transient = getattr(exc, "transient", True)
                credential.last_refresh_error = (
                    RefreshError.TRANSIENT_FAILURE if transient else RefreshError.GRANT_REVOKED
                )
                credential.updated_at = self._clock()
                await self._credentials.save(credential)
                if transient:
                    logger.warning("Token refresh for %s/%s failed transiently: %s", provider_id, user_id, exc)
                    raise RefreshTemporarilyUnavailable(
                        f"{provider.display_name} is temporarily unavailable; retry later",
                        provider=provider_id,
                    ) from exc
                logger.warning("Refresh grant for %s/%s was rejected: %s", provider_id, user_id, exc)
                raise RequiresReconnection(
                    f"{provider.display_name} rejected the refresh token; reconnect required",
                    provider=provider_id,
                ) from exc

            now = self._clock()
            credential.apply_tokens(tokens, now)
            credential.last_refreshed_at = now
            await self._credentials.save(credential)
            logger.info("Refreshed %s token for user %s", provider_id, user_id)
            return credential, True

    async def refresh_expiring(self) -> int:
        """Proactively refresh every credential inside the margin. Returns the count refreshed."""
        horizon = self._clock() + self._margin
        refreshed = 0
        for credential in await self._credentials.list_expiring(horizon):
            if credential.last_refresh_error in RECONNECT_ERRORS:
                continue
            try:
                _, exchanged = await self._ensure_fresh(credential.user_id, credential.provider_id)
            except ConnectorError as exc:
                logger.info(
                    "Background refresh skipped %s/%s: %s",
                    credential.provider_id,
                    credential.user_id,
                    exc.kind,
                )
                continue
            if exchanged:
                refreshed += 1
        return refreshed
