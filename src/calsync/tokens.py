"""Access-token lifecycle for (user, provider) pairs.

The manager hands out tokens that stay valid for at least the safety margin,
refreshing through the resilience layer when needed.  Refreshes are
serialized per (user, provider) with an ``asyncio.Lock`` and re-checked after
the lock is acquired, so N concurrent callers holding an expired token cause
exactly one refresh exchange.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from calsync.core.metrics import SyncMetrics
from calsync.errors import (
    AuthError,
    NoCredentialError,
    ProviderNotConfiguredError,
    ReauthenticationRequired,
)
from calsync.models import Credential, TokenGrant, utcnow
from calsync.providers.base import CalendarProvider
from calsync.resilience import ResilientExecutor
from calsync.stores.base import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=2)

_Key = tuple[str, str]


class TokenManager:
    """Obtains, caches, and refreshes provider access tokens."""

    def __init__(
        self,
        credential_store: CredentialStore,
        providers: Mapping[str, CalendarProvider],
        executor: ResilientExecutor,
        *,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = credential_store
        self._providers = providers
        self._executor = executor
        self._safety_margin = safety_margin
        self._clock = clock
        self._metrics = metrics or SyncMetrics()
        self._cache: dict[_Key, Credential] = {}
        self._locks: dict[_Key, asyncio.Lock] = {}

    def _client(self, provider: str) -> CalendarProvider:
        client = self._providers.get(provider)
        if client is None:
            raise ProviderNotConfiguredError(provider)
        return client

    def _lock_for(self, key: _Key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _is_fresh(self, credential: Credential) -> bool:
        return credential.expires_at - self._clock() > self._safety_margin

    async def _load(self, user_id: str, provider: str) -> Credential:
        key = (user_id, provider)
        credential = self._cache.get(key)
        if credential is None:
            credential = await self._store.load_credential(user_id, provider)
            if credential is None:
                raise NoCredentialError(user_id, provider)
            self._cache[key] = credential
        return credential

    async def get_valid_token(
        self,
        user_id: str,
        provider: str,
        *,
        rejected_token: str | None = None,
    ) -> str:
        """Return an access token valid for at least the safety margin.

        Pass *rejected_token* after the provider answered 401 with it: the
        token is refreshed unless another caller already replaced it.

        Raises
        ------
        NoCredentialError
            Nothing has been stored for (user, provider).
        ReauthenticationRequired
            The credential is marked invalid or its refresh was rejected.
        """
        credential = await self._load(user_id, provider)
        if not self._needs_refresh(credential, rejected_token):
            return credential.access_token

        async with self._lock_for((user_id, provider)):
            # Another caller may have refreshed while we waited.
            credential = await self._load(user_id, provider)
            if not self._needs_refresh(credential, rejected_token):
                return credential.access_token
            credential = await self._refresh(credential)
            return credential.access_token

    def _needs_refresh(self, credential: Credential, rejected_token: str | None) -> bool:
        if credential.invalid:
            raise ReauthenticationRequired(
                credential.user_id, credential.provider, "credential marked invalid"
            )
        if rejected_token is not None and credential.access_token == rejected_token:
            return True
        return not self._is_fresh(credential)

    async def _refresh(self, credential: Credential) -> Credential:
        user_id, provider = credential.user_id, credential.provider
        if not credential.refresh_token:
            await self._invalidate(credential)
            raise ReauthenticationRequired(user_id, provider, "no refresh token stored")

        client = self._client(provider)
        refresh_token = credential.refresh_token
        try:
            grant = await self._executor.call(
                provider,
                "refresh_token",
                lambda: client.refresh_token(refresh_token=refresh_token),
            )
        except AuthError as exc:
            self._metrics.record_token_refresh(provider, "reauth")
            logger.warning(
                "Token refresh rejected: user=%s provider=%s error=%s",
                user_id,
                provider,
                exc.message,
            )
            await self._invalidate(credential)
            raise ReauthenticationRequired(user_id, provider, exc.message) from exc
        except Exception:
            self._metrics.record_token_refresh(provider, "error")
            raise

        self._metrics.record_token_refresh(provider, "ok")
        logger.info("Access token refreshed: user=%s provider=%s", user_id, provider)
        return await self._persist(user_id, provider, grant, fallback_refresh_token=refresh_token)

    async def _invalidate(self, credential: Credential) -> None:
        invalid = credential.model_copy(update={"invalid": True})
        await self._store.save_credential(invalid)
        self._cache[(credential.user_id, credential.provider)] = invalid

    async def _persist(
        self,
        user_id: str,
        provider: str,
        grant: TokenGrant,
        *,
        fallback_refresh_token: str | None = None,
    ) -> Credential:
        credential = Credential(
            user_id=user_id,
            provider=provider,
            access_token=grant.access_token,
            # Providers may omit the refresh token on refresh; keep the old one.
            refresh_token=grant.refresh_token or fallback_refresh_token,
            expires_at=self._clock() + timedelta(seconds=grant.expires_in),
        )
        await self._store.save_credential(credential)
        self._cache[(user_id, provider)] = credential
        return credential

    async def store_tokens(self, user_id: str, provider: str, grant: TokenGrant) -> Credential:
        """Persist tokens obtained from interactive authentication."""
        async with self._lock_for((user_id, provider)):
            credential = await self._persist(user_id, provider, grant)
        logger.info("Credential stored: user=%s provider=%s", user_id, provider)
        return credential

    async def authenticate(
        self,
        user_id: str,
        provider: str,
        code: str,
        *,
        redirect_uri: str | None = None,
    ) -> Credential:
        """Exchange an authorization code and store the resulting tokens."""
        client = self._client(provider)
        grant = await self._executor.call(
            provider,
            "authenticate",
            lambda: client.authenticate(code=code, redirect_uri=redirect_uri),
        )
        return await self.store_tokens(user_id, provider, grant)

    def forget(self, user_id: str, provider: str) -> None:
        """Drop the cached credential so the next call reloads from the store."""
        self._cache.pop((user_id, provider), None)
