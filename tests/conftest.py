"""Shared fixtures for calsync tests.

Provides a controllable clock, a recording sleep, and an in-process fake
provider that keeps its own copy of remote events so sync passes can be
exercised end to end without HTTP.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from calsync.errors import AuthError, ProviderError, StatusClass
from calsync.models import (
    Calendar,
    Credential,
    EventDraft,
    EventPage,
    ExternalCalendar,
    ExternalEvent,
    TokenGrant,
)
from calsync.orchestrator import SyncOrchestrator, SyncSettings
from calsync.providers.base import CalendarProvider
from calsync.resilience import RetryPolicy
from calsync.stores.memory import InMemoryCalendarStore, InMemoryCredentialStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider(CalendarProvider):
    """In-memory provider with deterministic ids, etags and pagination.

    ``failures`` maps an operation name to a list of exceptions raised, in
    order, by the next calls of that operation.  ``accepted_tokens`` (when
    set) makes every data call with another token fail with ``AuthError``.
    ``update_event`` enforces its ``etag`` argument like an If-Match header.
    """

    def __init__(self, name: str = "google", *, clock: FakeClock, page_size: int = 100) -> None:
        self._name = name
        self.clock = clock
        self.page_size = page_size
        self.remote: dict[str, ExternalEvent] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.fail_for_event: dict[str, BaseException] = {}
        self.accepted_tokens: set[str] | None = None
        self.refresh_grant = TokenGrant(
            access_token="access-refreshed", refresh_token=None, expires_in=3600
        )
        self.refresh_calls = 0
        self._seq = 0

    @property
    def name(self) -> str:
        return self._name

    # -- helpers --------------------------------------------------------------

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def _record(self, operation: str, token: str | None = None) -> None:
        self.calls.append(operation)
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)
        if token is not None and self.accepted_tokens is not None:
            if token not in self.accepted_tokens:
                raise AuthError("token rejected", provider=self._name)

    def put_remote(
        self,
        event_id: str,
        *,
        title: str = "Remote event",
        modified: datetime | None = None,
        start: datetime | None = None,
        etag: str | None = None,
        deleted: bool = False,
    ) -> ExternalEvent:
        start = start or T0 + timedelta(days=1)
        event = ExternalEvent(
            id=event_id,
            provider=self._name,
            title=title,
            start=start,
            end=start + timedelta(hours=1),
            last_modified=modified or self.clock(),
            etag=etag or self._next("etag"),
            deleted=deleted,
        )
        self.remote[event_id] = event
        return event

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # -- CalendarProvider -----------------------------------------------------

    async def authenticate(self, *, code: str, redirect_uri: str | None = None) -> TokenGrant:
        self._record("authenticate")
        return TokenGrant(access_token=f"access-{code}", refresh_token="refresh-1", expires_in=3600)

    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        self._record("refresh_token")
        return self.refresh_grant

    async def list_calendars(self, *, token: str) -> list[ExternalCalendar]:
        self._record("list_calendars", token)
        return [ExternalCalendar(id="primary", provider=self._name, primary=True)]

    async def list_events_since(
        self,
        *,
        token: str,
        calendar_id: str,
        since: datetime | None,
        page_cursor: str | None = None,
    ) -> EventPage:
        self._record("list_events_since", token)
        matching = sorted(
            (
                e
                for e in self.remote.values()
                if since is None or e.last_modified is None or e.last_modified >= since
            ),
            key=lambda e: e.id,
        )
        offset = int(page_cursor or 0)
        page = matching[offset : offset + self.page_size]
        next_offset = offset + self.page_size
        return EventPage(
            events=page,
            next_cursor=str(next_offset) if next_offset < len(matching) else None,
        )

    def _check_event(self, event_id: str) -> None:
        failure = self.fail_for_event.get(event_id)
        if failure is not None:
            raise failure

    async def create_event(
        self, *, token: str, calendar_id: str, event: EventDraft
    ) -> ExternalEvent:
        self._record("create_event", token)
        self._check_event(event.title)
        stored = ExternalEvent(
            id=self._next("remote"),
            provider=self._name,
            last_modified=self.clock(),
            etag=self._next("etag"),
            **event.model_dump(),
        )
        self.remote[stored.id] = stored
        return stored

    async def update_event(
        self,
        *,
        token: str,
        calendar_id: str,
        event_id: str,
        event: EventDraft,
        etag: str | None = None,
    ) -> ExternalEvent:
        self._record("update_event", token)
        self._check_event(event_id)
        if event_id not in self.remote:
            raise ProviderError(
                provider=self._name,
                status_class=StatusClass.CLIENT,
                status_code=404,
                message="not found",
            )
        if etag is not None and etag != self.remote[event_id].etag:
            raise ProviderError(
                provider=self._name,
                status_class=StatusClass.CLIENT,
                status_code=412,
                message="precondition failed",
            )
        stored = ExternalEvent(
            id=event_id,
            provider=self._name,
            last_modified=self.clock(),
            etag=self._next("etag"),
            **event.model_dump(),
        )
        self.remote[event_id] = stored
        return stored

    async def delete_event(
        self, *, token: str, calendar_id: str, event_id: str, event: EventDraft
    ) -> ExternalEvent:
        self._record("delete_event", token)
        self._check_event(event_id)
        existing = self.remote.get(event_id)
        if existing is None:
            return ExternalEvent(
                id=event_id,
                provider=self._name,
                last_modified=self.clock(),
                deleted=True,
                **event.model_dump(),
            )
        tombstone = existing.model_copy(
            update={"deleted": True, "last_modified": self.clock(), "etag": self._next("etag")}
        )
        self.remote[event_id] = tombstone
        return tombstone


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def provider(clock: FakeClock) -> FakeProvider:
    return FakeProvider(clock=clock)


@pytest.fixture
def calendar_store() -> InMemoryCalendarStore:
    return InMemoryCalendarStore()


@pytest.fixture
async def credential_store(clock: FakeClock) -> InMemoryCredentialStore:
    store = InMemoryCredentialStore()
    await store.save_credential(
        Credential(
            user_id="user-1",
            provider="google",
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=clock() + timedelta(hours=1),
        )
    )
    return store


@pytest.fixture
async def calendar(calendar_store: InMemoryCalendarStore) -> Calendar:
    cal = Calendar(
        id="cal-1",
        user_id="user-1",
        provider="google",
        provider_calendar_id="primary",
        name="Work",
    )
    await calendar_store.save_calendar(cal)
    return cal


@pytest.fixture
def make_orchestrator(
    calendar_store: InMemoryCalendarStore,
    credential_store: InMemoryCredentialStore,
    provider: FakeProvider,
    clock: FakeClock,
    sleep: RecordingSleep,
) -> Callable[..., SyncOrchestrator]:
    def _make(**kwargs) -> SyncOrchestrator:
        kwargs.setdefault("settings", SyncSettings(max_workers=2, pass_timeout=5.0))
        kwargs.setdefault("retry_policy", RetryPolicy(attempt_timeout=None))
        return SyncOrchestrator.create(
            calendar_store,
            credential_store,
            {provider.name: provider},
            clock=clock,
            sleep=sleep,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., SyncOrchestrator]) -> SyncOrchestrator:
    return make_orchestrator()
