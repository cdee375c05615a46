"""Store contracts consumed by the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from calsync.models import Calendar, ConflictRecord, Credential, Event, SyncResult


@dataclass
class SyncBatch:
    """Everything one sync pass writes locally, committed atomically with last-sync."""

    last_synced_at: datetime
    upserts: list[Event] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)


@dataclass(frozen=True)
class EventWriteFailure:
    """A single event in a batch that the store could not write."""

    event_id: str
    error: Exception


class CalendarStore(Protocol):
    """Local persistence for calendars, events, conflicts and sync history.

    Lookups raise :class:`calsync.errors.NotFoundError` for missing records,
    distinct from any other failure.
    """

    async def get_calendar(self, calendar_id: str) -> Calendar: ...

    async def list_calendars(self, user_id: str) -> list[Calendar]: ...

    async def save_calendar(self, calendar: Calendar) -> None: ...

    async def list_events(self, calendar_id: str) -> list[Event]: ...

    async def get_event(self, event_id: str) -> Event: ...

    async def upsert_event(self, event: Event) -> Event: ...

    async def delete_event(self, event_id: str) -> Event: ...

    async def update_last_sync(self, calendar_id: str, instant: datetime) -> None: ...

    async def apply_sync_batch(
        self, calendar_id: str, batch: SyncBatch
    ) -> list[EventWriteFailure]: ...

    async def get_conflict(self, conflict_id: str) -> ConflictRecord: ...

    async def list_conflicts(
        self, calendar_id: str, *, unresolved_only: bool = True
    ) -> list[ConflictRecord]: ...

    async def save_conflict_resolution(self, conflict: ConflictRecord, event: Event) -> None: ...

    async def save_sync_result(self, result: SyncResult) -> None: ...

    async def list_sync_results(self, calendar_id: str, *, limit: int = 20) -> list[SyncResult]: ...


class CredentialStore(Protocol):
    """Persistence for OAuth credentials keyed by (user, provider)."""

    async def load_credential(self, user_id: str, provider: str) -> Credential | None: ...

    async def save_credential(self, credential: Credential) -> None: ...
