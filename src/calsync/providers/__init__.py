"""Calendar provider adapters, selected by provider identifier."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping

import httpx

from calsync.errors import ProviderNotConfiguredError
from calsync.providers.base import CalendarProvider, OAuthClientConfig
from calsync.providers.google import GoogleCalendarProvider
from calsync.providers.outlook import DEFAULT_TENANT, OutlookCalendarProvider

logger = logging.getLogger(__name__)

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "OAuthClientConfig",
    "OutlookCalendarProvider",
    "ProviderRegistry",
]


class ProviderRegistry(Mapping[str, CalendarProvider]):
    """Provider identifier -> client.  Unknown identifiers raise ProviderNotConfiguredError."""

    def __init__(self, providers: Mapping[str, CalendarProvider] | None = None) -> None:
        self._providers: dict[str, CalendarProvider] = {}
        for provider in (providers or {}).values():
            self.register(provider)

    def register(self, provider: CalendarProvider) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name!r}")
        self._providers[provider.name] = provider

    def __getitem__(self, name: str) -> CalendarProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotConfiguredError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def get(self, name: str, default: CalendarProvider | None = None) -> CalendarProvider | None:
        return self._providers.get(name, default)

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    async def shutdown(self) -> None:
        for name, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception:
                logger.warning("Error shutting down provider '%s'", name, exc_info=True)

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Mapping[str, str | None]],
        http_client: httpx.AsyncClient | None = None,
    ) -> ProviderRegistry:
        """Build adapters from ``{name: {client_id, client_secret, redirect_uri, tenant}}``."""
        registry = cls()
        for name, options in settings.items():
            oauth = OAuthClientConfig(
                client_id=options.get("client_id") or "",
                client_secret=options.get("client_secret") or "",
                redirect_uri=options.get("redirect_uri"),
            )
            if name == "google":
                registry.register(GoogleCalendarProvider(oauth, http_client))
            elif name == "outlook":
                registry.register(
                    OutlookCalendarProvider(
                        oauth, http_client, tenant=options.get("tenant") or DEFAULT_TENANT
                    )
                )
            else:
                raise ProviderNotConfiguredError(name)
        return registry
