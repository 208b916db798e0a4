"""
Shared fixtures: a two-provider catalog, a controllable clock and a
scripted OAuth client standing in for real provider endpoints.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from connectors.base import BaseOAuthClient
from connectors.catalog import ProviderCatalog
from connectors.models import Credential, TokenResponse
from connectors.service import ConnectorService
from connectors.store import MemoryCredentialStore, MemoryStateStore

CALLBACK_BASE = "https://app.example/api/v1/connectors"

ACME = {
    "display_name": "Acme",
    "client_id": "acme-client",
    "client_secret": "acme-secret",
    "authorization_endpoint": "https://acme.example/oauth/authorize",
    "token_endpoint": "https://acme.example/oauth/token",
    "revocation_endpoint": "https://acme.example/oauth/revoke",
    "scope": "read write",
    "services": ["files", "calendar"],
}

GLOBEX = {
    "display_name": "Globex",
    "client_id": "globex-client",
    "client_secret": "globex-secret",
    "authorization_endpoint": "https://globex.example/authorize",
    "token_endpoint": "https://globex.example/token",
    "scope": "mail",
    "services": ["mail"],
}


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeOAuthClient(BaseOAuthClient):
    """
    Records every call and answers with the configured result.

    A result that is an exception instance is raised instead of returned.
    ``gate`` (an asyncio.Event created inside the test) holds refresh calls
    until it is set.
    """

    def __init__(self) -> None:
        self.exchange_calls = []
        self.refresh_calls = []
        self.revoke_calls = []
        self.exchange_result = TokenResponse(
            access_token="access-1", refresh_token="refresh-1", expires_in=3600, scope="read write"
        )
        self.refresh_result = TokenResponse(access_token="access-2", expires_in=3600)
        self.revoke_result = True
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def _respond(self, result):
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(result, BaseException):
            raise result
        return result

    async def exchange_code(self, provider, code, redirect_uri):
        self.exchange_calls.append((provider.provider_id, code, redirect_uri))
        return await self._respond(self.exchange_result)

    async def refresh(self, provider, refresh_token):
        self.refresh_calls.append((provider.provider_id, refresh_token))
        if self.gate is not None:
            await self.gate.wait()
        return await self._respond(self.refresh_result)

    async def revoke(self, provider, token):
        self.revoke_calls.append((provider.provider_id, token))
        return await self._respond(self.revoke_result)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def catalog():
    return ProviderCatalog.from_mapping({"acme": dict(ACME), "globex": dict(GLOBEX)})


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def oauth_client():
    return FakeOAuthClient()


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def states():
    return MemoryStateStore()


@pytest.fixture
def service(catalog, credentials, states, oauth_client, clock):
    return ConnectorService(
        catalog,
        credentials,
        states,
        oauth_client,
        callback_base_url=CALLBACK_BASE,
        call_timeout=0.5,
        clock=clock,
    )


@pytest.fixture
def make_credential(clock):
    """Factory for stored credentials; ``expires_in`` is relative to the fake clock."""

    def _make(
        user_id="user-1",
        provider_id="acme",
        access_token="access-0",
        refresh_token: Optional[str] = "refresh-0",
        expires_in: Optional[float] = 3600,
        **extra,
    ) -> Credential:
        return Credential(
            user_id=user_id,
            provider_id=provider_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=(
                clock() + timedelta(seconds=expires_in) if expires_in is not None else None
            ),
            granted_scope="read write",
            created_at=clock(),
            updated_at=clock(),
            **extra,
        )

    return _make
