"""In-process store implementations.

Used by tests and by single-process deployments that do not need durable
state.  Batch writes build a new event map and swap it in only after every
record has been processed, so a failing batch leaves no partial state.
"""

from __future__ import annotations

from datetime import UTC, datetime

from calsync.errors import NotFoundError, StoreWriteError
from calsync.models import Calendar, ConflictRecord, Credential, Event, SyncResult, utcnow
from calsync.stores.base import EventWriteFailure, SyncBatch

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class InMemoryCalendarStore:
    def __init__(self) -> None:
        self._calendars: dict[str, Calendar] = {}
        self._events: dict[str, Event] = {}
        self._conflicts: dict[str, ConflictRecord] = {}
        self._results: dict[str, SyncResult] = {}
        # Test hooks: event ids whose writes fail, and a one-shot batch failure.
        self.failing_event_ids: set[str] = set()
        self.fail_next_batch: Exception | None = None

    # -- calendars -----------------------------------------------------------

    async def get_calendar(self, calendar_id: str) -> Calendar:
        try:
            return self._calendars[calendar_id].model_copy()
        except KeyError:
            raise NotFoundError("calendar", calendar_id) from None

    async def list_calendars(self, user_id: str) -> list[Calendar]:
        return [c.model_copy() for c in self._calendars.values() if c.user_id == user_id]

    async def save_calendar(self, calendar: Calendar) -> None:
        self._calendars[calendar.id] = calendar.model_copy()

    async def update_last_sync(self, calendar_id: str, instant: datetime) -> None:
        calendar = await self.get_calendar(calendar_id)
        self._calendars[calendar_id] = calendar.model_copy(update={"last_synced_at": instant})

    # -- events --------------------------------------------------------------

    async def list_events(self, calendar_id: str) -> list[Event]:
        await self.get_calendar(calendar_id)
        return [e.model_copy() for e in self._events.values() if e.calendar_id == calendar_id]

    async def get_event(self, event_id: str) -> Event:
        try:
            return self._events[event_id].model_copy()
        except KeyError:
            raise NotFoundError("event", event_id) from None

    def _check_writable(self, event: Event, events: dict[str, Event]) -> None:
        if event.id in self.failing_event_ids:
            raise StoreWriteError(f"write rejected for event {event.id}", event_id=event.id)
        if event.calendar_id not in self._calendars:
            raise NotFoundError("calendar", event.calendar_id)
        if event.provider_event_id is not None:
            for other in events.values():
                if (
                    other.id != event.id
                    and other.calendar_id == event.calendar_id
                    and other.provider_event_id == event.provider_event_id
                ):
                    raise StoreWriteError(
                        f"provider event id {event.provider_event_id} already linked to {other.id}",
                        event_id=event.id,
                    )

    async def upsert_event(self, event: Event) -> Event:
        self._check_writable(event, self._events)
        self._events[event.id] = event.model_copy()
        return event.model_copy()

    async def delete_event(self, event_id: str) -> Event:
        event = await self.get_event(event_id)
        tombstone = event.model_copy(update={"deleted": True, "last_modified": utcnow()})
        self._events[event_id] = tombstone
        return tombstone.model_copy()

    async def apply_sync_batch(
        self, calendar_id: str, batch: SyncBatch
    ) -> list[EventWriteFailure]:
        calendar = await self.get_calendar(calendar_id)
        if self.fail_next_batch is not None:
            exc, self.fail_next_batch = self.fail_next_batch, None
            raise exc

        events = dict(self._events)
        failures: list[EventWriteFailure] = []
        for event in batch.upserts:
            try:
                if event.calendar_id != calendar_id:
                    raise StoreWriteError(
                        f"event {event.id} belongs to calendar {event.calendar_id}",
                        event_id=event.id,
                    )
                self._check_writable(event, events)
            except (StoreWriteError, NotFoundError) as exc:
                failures.append(EventWriteFailure(event_id=event.id, error=exc))
                continue
            events[event.id] = event.model_copy()

        conflicts = dict(self._conflicts)
        for conflict in batch.conflicts:
            conflicts[conflict.id] = conflict.model_copy()

        self._events = events
        self._conflicts = conflicts
        self._calendars[calendar_id] = calendar.model_copy(
            update={"last_synced_at": batch.last_synced_at}
        )
        return failures

    # -- conflicts -----------------------------------------------------------

    async def get_conflict(self, conflict_id: str) -> ConflictRecord:
        try:
            return self._conflicts[conflict_id].model_copy()
        except KeyError:
            raise NotFoundError("conflict", conflict_id) from None

    async def list_conflicts(
        self, calendar_id: str, *, unresolved_only: bool = True
    ) -> list[ConflictRecord]:
        return [
            c.model_copy()
            for c in sorted(self._conflicts.values(), key=lambda c: c.detected_at)
            if c.calendar_id == calendar_id and not (unresolved_only and c.resolved)
        ]

    async def save_conflict_resolution(self, conflict: ConflictRecord, event: Event) -> None:
        await self.get_conflict(conflict.id)
        self._check_writable(event, self._events)
        self._events[event.id] = event.model_copy()
        self._conflicts[conflict.id] = conflict.model_copy()

    # -- sync history --------------------------------------------------------

    async def save_sync_result(self, result: SyncResult) -> None:
        self._results[result.id] = result.model_copy(deep=True)

    async def list_sync_results(self, calendar_id: str, *, limit: int = 20) -> list[SyncResult]:
        results = [r for r in self._results.values() if r.calendar_id == calendar_id]
        results.sort(key=lambda r: r.started_at or _EPOCH, reverse=True)
        return [r.model_copy(deep=True) for r in results[:limit]]


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self._credentials: dict[tuple[str, str], Credential] = {}

    async def load_credential(self, user_id: str, provider: str) -> Credential | None:
        credential = self._credentials.get((user_id, provider))
        return credential.model_copy() if credential is not None else None

    async def save_credential(self, credential: Credential) -> None:
        self._credentials[(credential.user_id, credential.provider)] = credential.model_copy()
