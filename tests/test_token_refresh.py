"""
Tests for lazy token refresh — fast path, failure classification and
single-flight behaviour under concurrency.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from connectors.errors import (
    NotConnected,
    ProviderNotFound,
    ProviderRequestError,
    RefreshTemporarilyUnavailable,
    RequiresReconnection,
)
from connectors.models import RefreshError, TokenResponse


async def _wait_for_refresh_calls(client, count):
    for _ in range(200):
        if len(client.refresh_calls) >= count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {count} refresh calls, saw {len(client.refresh_calls)}")


class TestFastPath:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_network(self, service, credentials, oauth_client, make_credential):
        await credentials.save(make_credential(expires_in=3600))

        credential = await service.ensure_fresh("user-1", "acme")

        assert credential.access_token == "access-0"
        assert oauth_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_token_without_expiry_never_refreshed(self, service, credentials, oauth_client, make_credential):
        await credentials.save(make_credential(expires_in=None))

        assert await service.get_access_token("user-1", "acme") == "access-0"
        assert oauth_client.refresh_calls == []

    @pytest.mark.asyncio
    async def test_not_connected(self, service):
        with pytest.raises(NotConnected):
            await service.ensure_fresh("user-1", "acme")

    @pytest.mark.asyncio
    async def test_unknown_provider(self, service):
        with pytest.raises(ProviderNotFound):
            await service.ensure_fresh("user-1", "nope")

    @pytest.mark.asyncio
    async def test_provider_id_case_ignored(self, service, credentials, oauth_client, make_credential):
        await credentials.save(make_credential(expires_in=3600))

        credential = await service.ensure_fresh("user-1", "ACME")

        assert credential.provider_id == "acme"
        assert oauth_client.refresh_calls == []


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_inside_margin(self, service, credentials, oauth_client, make_credential, clock):
        await credentials.save(make_credential(expires_in=60))

        credential = await service.ensure_fresh("user-1", "acme")

        assert oauth_client.refresh_calls == [("acme", "refresh-0")]
        assert credential.access_token == "access-2"
        stored = await credentials.get("user-1", "acme")
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-0"
        assert stored.access_token_expires_at == clock() + timedelta(seconds=3600)
        assert stored.last_refreshed_at == clock()
        assert stored.last_refresh_error is None

    @pytest.mark.asyncio
    async def test_refresh_after_expiry(self, service, credentials, oauth_client, make_credential, clock):
        await credentials.save(make_credential(expires_in=3600))
        clock.advance(4000)

        assert await service.get_access_token("user-1", "acme") == "access-2"
        assert len(oauth_client.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_stored(self, service, credentials, oauth_client, make_credential):
        oauth_client.refresh_result = TokenResponse(
            access_token="access-2", refresh_token="refresh-rotated", expires_in=3600
        )
        await credentials.save(make_credential(expires_in=0))

        await service.ensure_fresh("user-1", "acme")

        assert (await credentials.get("user-1", "acme")).refresh_token == "refresh-rotated"

    @pytest.mark.asyncio
    async def test_revoked_grant_flags_credential(self, service, credentials, oauth_client, make_credential):
        oauth_client.refresh_result = ProviderRequestError(
            "invalid_grant", status_code=400, payload={"error": "invalid_grant"}, transient=False
        )
        await credentials.save(make_credential(expires_in=30))

        with pytest.raises(RequiresReconnection):
            await service.ensure_fresh("user-1", "acme")

        stored = await credentials.get("user-1", "acme")
        assert stored.last_refresh_error == RefreshError.GRANT_REVOKED
        assert stored.access_token == "access-0"

        # Flagged credentials fail fast until the user reconnects.
        with pytest.raises(RequiresReconnection):
            await service.ensure_fresh("user-1", "acme")
        assert len(oauth_client.refresh_calls) == 1

        [acme_status, _] = await service.get_status("user-1")
        assert acme_status.is_connected is True
        assert acme_status.requires_reconnection is True

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_tokens(self, service, credentials, oauth_client, make_credential):
        oauth_client.refresh_result = ProviderRequestError("upstream down", status_code=503, transient=True)
        await credentials.save(make_credential(expires_in=30))

        with pytest.raises(RefreshTemporarilyUnavailable):
            await service.ensure_fresh("user-1", "acme")

        stored = await credentials.get("user-1", "acme")
        assert stored.access_token == "access-0"
        assert stored.refresh_token == "refresh-0"
        assert stored.last_refresh_error == RefreshError.TRANSIENT_FAILURE
        [acme_status, _] = await service.get_status("user-1")
        assert acme_status.requires_reconnection is False

        oauth_client.refresh_result = TokenResponse(access_token="access-2", expires_in=3600)
        credential = await service.ensure_fresh("user-1", "acme")
        assert credential.access_token == "access-2"
        assert credential.last_refresh_error is None

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, service, credentials, oauth_client, make_credential):
        oauth_client.delay = 2.0
        await credentials.save(make_credential(expires_in=30))

        with pytest.raises(RefreshTemporarilyUnavailable):
            await service.ensure_fresh("user-1", "acme")
        assert (await credentials.get("user-1", "acme")).access_token == "access-0"

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, service, credentials, oauth_client, make_credential):
        await credentials.save(make_credential(refresh_token=None, expires_in=-10))

        with pytest.raises(RequiresReconnection):
            await service.ensure_fresh("user-1", "acme")

        assert oauth_client.refresh_calls == []
        stored = await credentials.get("user-1", "acme")
        assert stored.last_refresh_error == RefreshError.REFRESH_NOT_SUPPORTED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, service, credentials, oauth_client, make_credential):
        oauth_client.gate = asyncio.Event()
        await credentials.save(make_credential(expires_in=30))

        tasks = [asyncio.create_task(service.ensure_fresh("user-1", "acme")) for _ in range(10)]
        await _wait_for_refresh_calls(oauth_client, 1)
        assert service.refresher.is_refreshing("user-1", "acme")
        oauth_client.gate.set()
        results = await asyncio.gather(*tasks)

        assert len(oauth_client.refresh_calls) == 1
        assert {r.access_token for r in results} == {"access-2"}
        assert len({id(r) for r in results}) == 10
        assert not service.refresher.is_refreshing("user-1", "acme")

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_failure(self, service, credentials, oauth_client, make_credential):
        oauth_client.refresh_result = ProviderRequestError("revoked", status_code=401, transient=False)
        oauth_client.gate = asyncio.Event()
        await credentials.save(make_credential(expires_in=30))

        tasks = [asyncio.create_task(service.ensure_fresh("user-1", "acme")) for _ in range(5)]
        await _wait_for_refresh_calls(oauth_client, 1)
        oauth_client.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, RequiresReconnection) for r in results)
        assert len(oauth_client.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_different_pairs_refresh_in_parallel(self, service, credentials, oauth_client, make_credential):
        oauth_client.gate = asyncio.Event()
        await credentials.save(make_credential(user_id="user-1", expires_in=30))
        await credentials.save(make_credential(user_id="user-2", expires_in=30))

        first = asyncio.create_task(service.ensure_fresh("user-1", "acme"))
        await _wait_for_refresh_calls(oauth_client, 1)
        second = asyncio.create_task(service.ensure_fresh("user-2", "acme"))
        # user-2 reaches the provider while user-1's exchange is still blocked.
        await _wait_for_refresh_calls(oauth_client, 2)
        assert not first.done()

        oauth_client.gate.set()
        await asyncio.gather(first, second)
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_refresh(self, service, credentials, oauth_client, make_credential):
        oauth_client.gate = asyncio.Event()
        await credentials.save(make_credential(expires_in=30))

        impatient = asyncio.create_task(service.ensure_fresh("user-1", "acme"))
        patient = asyncio.create_task(service.ensure_fresh("user-1", "acme"))
        await _wait_for_refresh_calls(oauth_client, 1)
        impatient.cancel()
        oauth_client.gate.set()

        credential = await patient
        assert credential.access_token == "access-2"
        assert impatient.cancelled()
        assert (await credentials.get("user-1", "acme")).access_token == "access-2"


class TestProactiveRefresh:
    @pytest.mark.asyncio
    async def test_refresh_expiring_skips_flagged(self, service, credentials, oauth_client, make_credential):
        await credentials.save(make_credential(user_id="user-1", expires_in=30))
        await credentials.save(
            make_credential(user_id="user-2", expires_in=30, last_refresh_error=RefreshError.GRANT_REVOKED)
        )
        await credentials.save(make_credential(user_id="user-3", expires_in=3600))

        purged, refreshed = await service.sweep()

        assert purged == 0
        assert refreshed == 1
        assert oauth_client.refresh_calls == [("acme", "refresh-0")]
        assert (await credentials.get("user-1", "acme")).access_token == "access-2"

    @pytest.mark.asyncio
    async def test_refresh_expiring_counts_only_exchanges(
        self, service, credentials, oauth_client, make_credential, monkeypatch
    ):
        stale = make_credential(expires_in=30)
        await credentials.save(make_credential(access_token="access-9", expires_in=3600))
        monkeypatch.setattr(credentials, "list_expiring", AsyncMock(return_value=[stale]))

        assert await service.refresher.refresh_expiring() == 0
        assert oauth_client.refresh_calls == []
        assert (await credentials.get("user-1", "acme")).access_token == "access-9"
