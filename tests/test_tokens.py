"""Tests for calsync.tokens.TokenManager.

Covers:
- fresh tokens are served from the store without a refresh
- tokens inside the safety margin are refreshed and persisted
- N concurrent callers with an expired token cause exactly one refresh
- rejected refresh marks the credential invalid (re-authentication required)
- reactive refresh after a provider rejected a token
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from calsync.errors import (
    AuthError,
    NoCredentialError,
    ProviderError,
    ProviderNotConfiguredError,
    ReauthenticationRequired,
    StatusClass,
)
from calsync.models import Credential, TokenGrant
from calsync.resilience import ResilientExecutor, RetryPolicy
from calsync.stores.memory import InMemoryCredentialStore
from calsync.tokens import TokenManager

from conftest import FakeClock, FakeProvider, RecordingSleep

pytestmark = pytest.mark.unit


class _SlowRefreshProvider(FakeProvider):
    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        await asyncio.sleep(0.01)
        return await super().refresh_token(refresh_token=refresh_token)


def _make_manager(
    store: InMemoryCredentialStore,
    provider: FakeProvider,
    clock: FakeClock,
    sleep: RecordingSleep,
    **kwargs,
) -> TokenManager:
    executor = ResilientExecutor(
        retry_policy=RetryPolicy(max_attempts=3, attempt_timeout=None), sleep=sleep
    )
    return TokenManager(store, {provider.name: provider}, executor, clock=clock, **kwargs)


async def _store_credential(
    store: InMemoryCredentialStore,
    clock: FakeClock,
    *,
    expires_in: timedelta,
    refresh_token: str | None = "refresh-1",
    invalid: bool = False,
) -> None:
    await store.save_credential(
        Credential(
            user_id="user-1",
            provider="google",
            access_token="access-1",
            refresh_token=refresh_token,
            expires_at=clock() + expires_in,
            invalid=invalid,
        )
    )


# ---------------------------------------------------------------------------
# Proactive refresh
# ---------------------------------------------------------------------------


class TestGetValidToken:
    async def test_fresh_token_is_returned_as_is(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(hours=1))
        manager = _make_manager(store, provider, clock, sleep)

        assert await manager.get_valid_token("user-1", "google") == "access-1"
        assert provider.refresh_calls == 0

    async def test_token_inside_safety_margin_is_refreshed(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(minutes=1))
        manager = _make_manager(store, provider, clock, sleep)

        assert await manager.get_valid_token("user-1", "google") == "access-refreshed"
        assert provider.refresh_calls == 1

        stored = await store.load_credential("user-1", "google")
        assert stored is not None
        assert stored.access_token == "access-refreshed"
        assert stored.expires_at == clock() + timedelta(seconds=3600)
        # Provider omitted the refresh token; the previous one is kept.
        assert stored.refresh_token == "refresh-1"

    async def test_new_refresh_token_replaces_old(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(seconds=-5))
        provider.refresh_grant = TokenGrant(
            access_token="access-2", refresh_token="refresh-2", expires_in=600
        )
        manager = _make_manager(store, provider, clock, sleep)

        await manager.get_valid_token("user-1", "google")
        stored = await store.load_credential("user-1", "google")
        assert stored is not None
        assert stored.refresh_token == "refresh-2"

    async def test_custom_safety_margin(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(minutes=10))
        manager = _make_manager(store, provider, clock, sleep, safety_margin=timedelta(minutes=15))

        await manager.get_valid_token("user-1", "google")
        assert provider.refresh_calls == 1

    async def test_concurrent_callers_share_one_refresh(self, clock, sleep):
        provider = _SlowRefreshProvider(clock=clock)
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(seconds=-1))
        manager = _make_manager(store, provider, clock, sleep)

        tokens = await asyncio.gather(
            *(manager.get_valid_token("user-1", "google") for _ in range(10))
        )

        assert tokens == ["access-refreshed"] * 10
        assert provider.refresh_calls == 1

    async def test_missing_credential(self, provider, clock, sleep):
        manager = _make_manager(InMemoryCredentialStore(), provider, clock, sleep)
        with pytest.raises(NoCredentialError) as exc_info:
            await manager.get_valid_token("user-1", "google")
        assert isinstance(exc_info.value, ReauthenticationRequired)


# ---------------------------------------------------------------------------
# Re-authentication
# ---------------------------------------------------------------------------


class TestReauthentication:
    async def test_rejected_refresh_invalidates_credential(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(seconds=-1))
        provider.failures["refresh_token"] = [AuthError("invalid_grant", provider="google")]
        manager = _make_manager(store, provider, clock, sleep)

        with pytest.raises(ReauthenticationRequired) as exc_info:
            await manager.get_valid_token("user-1", "google")
        assert "invalid_grant" in str(exc_info.value)

        stored = await store.load_credential("user-1", "google")
        assert stored is not None
        assert stored.invalid is True

        # No further provider contact once the credential is invalid.
        with pytest.raises(ReauthenticationRequired):
            await manager.get_valid_token("user-1", "google")
        assert provider.refresh_calls == 1

    async def test_invalid_credential_is_not_refreshed(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(hours=1), invalid=True)
        manager = _make_manager(store, provider, clock, sleep)

        with pytest.raises(ReauthenticationRequired):
            await manager.get_valid_token("user-1", "google")
        assert provider.refresh_calls == 0

    async def test_missing_refresh_token(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(
            store, clock, expires_in=timedelta(seconds=-1), refresh_token=None
        )
        manager = _make_manager(store, provider, clock, sleep)

        with pytest.raises(ReauthenticationRequired):
            await manager.get_valid_token("user-1", "google")
        stored = await store.load_credential("user-1", "google")
        assert stored is not None and stored.invalid

    async def test_transient_refresh_failure_keeps_credential_valid(
        self, provider, clock, sleep
    ):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(seconds=-1))
        provider.failures["refresh_token"] = [
            ProviderError(provider="google", status_class=StatusClass.SERVER, message="down")
            for _ in range(3)
        ]
        manager = _make_manager(store, provider, clock, sleep)

        with pytest.raises(ProviderError):
            await manager.get_valid_token("user-1", "google")
        assert provider.refresh_calls == 3
        stored = await store.load_credential("user-1", "google")
        assert stored is not None and not stored.invalid


# ---------------------------------------------------------------------------
# Reactive refresh and interactive auth
# ---------------------------------------------------------------------------


class TestRejectedToken:
    async def test_rejected_current_token_forces_refresh(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(hours=1))
        manager = _make_manager(store, provider, clock, sleep)

        token = await manager.get_valid_token("user-1", "google", rejected_token="access-1")
        assert token == "access-refreshed"
        assert provider.refresh_calls == 1

    async def test_already_replaced_token_is_not_refreshed_again(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        await _store_credential(store, clock, expires_in=timedelta(hours=1))
        manager = _make_manager(store, provider, clock, sleep)

        await manager.get_valid_token("user-1", "google", rejected_token="access-1")
        token = await manager.get_valid_token("user-1", "google", rejected_token="access-1")
        assert token == "access-refreshed"
        assert provider.refresh_calls == 1


class TestAuthenticate:
    async def test_authenticate_stores_grant(self, provider, clock, sleep):
        store = InMemoryCredentialStore()
        manager = _make_manager(store, provider, clock, sleep)

        credential = await manager.authenticate("user-2", "google", "abc")
        assert credential.access_token == "access-abc"
        assert await manager.get_valid_token("user-2", "google") == "access-abc"

        stored = await store.load_credential("user-2", "google")
        assert stored is not None
        assert stored.refresh_token == "refresh-1"
        assert "access-abc" not in repr(stored)

    async def test_unknown_provider(self, provider, clock, sleep):
        manager = _make_manager(InMemoryCredentialStore(), provider, clock, sleep)
        with pytest.raises(ProviderNotConfiguredError) as exc_info:
            await manager.authenticate("user-2", "outlook", "abc")
        assert exc_info.value.provider == "outlook"
