"""
Disconnect handler — revoke (best effort) and delete a credential.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderCatalog
from connectors.errors import NotConnected, ProviderRequestError
from connectors.locks import PairLocks
from connectors.store import CredentialStore

logger = logging.getLogger(__name__)


class DisconnectHandler:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        oauth_client: BaseOAuthClient,
        locks: PairLocks,
        *,
        call_timeout: Optional[float] = 10.0,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._client = oauth_client
        self._locks = locks
        self._call_timeout = call_timeout

    async def disconnect(self, user_id: str, provider_id: str) -> None:
        """
        Revoke and delete the user's credential for ``provider_id``.

        Raises ``NotConnected`` when there is nothing to delete, including
        on a repeated call.
        """
        provider = self._catalog.get(provider_id)
        provider_id = provider.provider_id
        async with self._locks.hold(user_id, provider_id):
            credential = await self._credentials.get(user_id, provider_id)
            if credential is None:
                raise NotConnected(f"{provider_id} is not connected", provider=provider_id)

            if provider.revocation_endpoint:
                token = credential.refresh_token or credential.access_token
                try:
                    await asyncio.wait_for(self._client.revoke(provider, token), timeout=self._call_timeout)
                except (ProviderRequestError, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "Token revocation failed for %s/%s, deleting locally anyway: %s",
                        provider_id,
                        user_id,
                        str(exc) or "timed out",
                    )

            await self._credentials.delete(user_id, provider_id)

        logger.info("Disconnected %s for user %s", provider_id, user_id)
