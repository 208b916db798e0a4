"""
ConnectorService — wires catalog, stores, provider client and the four
lifecycle components together.  One instance per process; the HTTP layer
and any in-app consumer of provider tokens go through it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderCatalog, ProviderDefinition
from connectors.disconnect import DisconnectHandler
from connectors.flow import AuthorizationFlow
from connectors.locks import PairLocks
from connectors.models import ConnectorStatus, Credential, utcnow
from connectors.refresh import TokenRefresher
from connectors.status import StatusReporter
from connectors.store import CredentialStore, StateStore


class ConnectorService:
    def __init__(
        self,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        states: StateStore,
        oauth_client: BaseOAuthClient,
        *,
        callback_base_url: str,
        state_ttl: timedelta = timedelta(minutes=10),
        refresh_margin: timedelta = timedelta(seconds=120),
        call_timeout: Optional[float] = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.oauth_client = oauth_client
        self.locks = PairLocks()
        self.flow = AuthorizationFlow(
            catalog,
            credentials,
            states,
            oauth_client,
            self.locks,
            callback_base_url=callback_base_url,
            state_ttl=state_ttl,
            call_timeout=call_timeout,
            clock=clock,
        )
        self.refresher = TokenRefresher(
            catalog,
            credentials,
            oauth_client,
            self.locks,
            margin=refresh_margin,
            call_timeout=call_timeout,
            clock=clock,
        )
        self.status = StatusReporter(catalog, credentials, clock=clock)
        self.disconnector = DisconnectHandler(
            catalog, credentials, oauth_client, self.locks, call_timeout=call_timeout
        )

    @classmethod
    def from_settings(
        cls,
        settings,
        catalog: ProviderCatalog,
        credentials: CredentialStore,
        states: StateStore,
        oauth_client: BaseOAuthClient,
    ) -> "ConnectorService":
        return cls(
            catalog,
            credentials,
            states,
            oauth_client,
            callback_base_url=settings.connector_callback_base_url,
            state_ttl=timedelta(seconds=settings.oauth_state_ttl_seconds),
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
            call_timeout=settings.provider_timeout_seconds,
        )

    def list_providers(self) -> List[ProviderDefinition]:
        return self.catalog.list()

    async def begin_authorization(self, user_id: str, provider_id: str, return_url: Optional[str] = None) -> str:
        return await self.flow.begin_authorization(user_id, provider_id, return_url)

    async def complete_authorization(self, provider_id: str, code: str, state: str) -> Credential:
        return await self.flow.complete_authorization(provider_id, code, state)

    async def complete_with_return_url(
        self, provider_id: str, code: str, state: str
    ) -> Tuple[Credential, Optional[str]]:
        return await self.flow.complete_with_return_url(provider_id, code, state)

    async def discard_state(self, state: str) -> None:
        await self.flow.discard(state)

    async def ensure_fresh(self, user_id: str, provider_id: str) -> Credential:
        return await self.refresher.ensure_fresh(user_id, provider_id)

    async def get_access_token(self, user_id: str, provider_id: str) -> str:
        return await self.refresher.get_access_token(user_id, provider_id)

    async def get_status(self, user_id: str) -> List[ConnectorStatus]:
        return await self.status.get_status(user_id)

    async def disconnect(self, user_id: str, provider_id: str) -> None:
        await self.disconnector.disconnect(user_id, provider_id)

    async def sweep(self) -> Tuple[int, int]:
        """One maintenance pass: purge stale states, refresh expiring tokens."""
        purged = await self.flow.purge_expired_states()
        refreshed = await self.refresher.refresh_expiring()
        return purged, refreshed

    async def aclose(self) -> None:
        await self.oauth_client.aclose()
