"""
Status reporter — per-provider connection health for one user.

Pure read over the catalog and the credential store: never refreshes,
never calls a provider.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from connectors.catalog import ProviderCatalog, ProviderDefinition
from connectors.models import RECONNECT_ERRORS, ConnectorStatus, Credential, as_utc, utcnow
from connectors.store import CredentialStore


def requires_reconnection(credential: Credential, now: datetime) -> bool:
    if credential.last_refresh_error in RECONNECT_ERRORS:
        return True
    expires_at = as_utc(credential.access_token_expires_at)
    expired = expires_at is not None and expires_at <= now
    return expired and not credential.has_usable_refresh_token()


def build_status(
    provider: ProviderDefinition,
    credential: Optional[Credential],
    now: datetime,
) -> ConnectorStatus:
    if credential is None:
        return ConnectorStatus(
            provider=provider.provider_id,
            provider_display_name=provider.display_name,
            is_connected=False,
            services=list(provider.services),
        )
    return ConnectorStatus(
        provider=provider.provider_id,
        provider_display_name=provider.display_name,
        is_connected=True,
        services=list(provider.services),
        expires_at=as_utc(credential.access_token_expires_at),
        requires_reconnection=requires_reconnection(credential, now),
    )


class StatusReporter:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._catalog = catalog
        self._credentials = credentials
        self._clock = clock

    async def get_status(self, user_id: str) -> List[ConnectorStatus]:
        """One entry per catalog provider, in catalog order."""
        by_provider = {c.provider_id: c for c in await self._credentials.list_for_user(user_id)}
        now = self._clock()
        return [
            build_status(provider, by_provider.get(provider.provider_id), now)
            for provider in self._catalog
        ]
