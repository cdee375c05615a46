"""Reconciliation of one calendar's local events against a provider's changes.

The reconciler is a pure planning step: it receives the local event set and
the fully paginated remote delta, and returns a :class:`ReconcilePlan`.  It
performs no I/O, so the orchestrator can apply the plan only after every page
was fetched.

For each external event ``e`` (matched to a local event by provider id):

1. not found locally: create a local copy;
2. etags equal: nothing to pull;
3. etags differ and the local copy has not changed since the last sync: the
   remote version wins;
4. etags differ and both changed since the last sync: when the two
   modification instants lie within the proximity window the pair becomes a
   :class:`ConflictRecord` and neither side is touched; outside the window the
   later side wins (local wins is pushed to the provider).

The proximity window is a heuristic, not a causal ordering: providers expose
no sequence numbers, so "both edited within N minutes" is the best signal of
an ambiguous concurrent edit.  It is configurable (default five minutes).

After the remote delta, local-only work is staged: never-pushed events are
created remotely, tombstones are deleted remotely, and local edits of events
absent from the delta are pushed as updates.  Events with an unresolved
conflict are never mutated or pushed.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from calsync.models import (
    Calendar,
    ConflictKind,
    ConflictRecord,
    Event,
    ExternalEvent,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_PROXIMITY_WINDOW = timedelta(minutes=5)


class MutationKind(enum.StrEnum):
    CREATE_LOCAL = "create_local"
    UPDATE_LOCAL = "update_local"
    DELETE_LOCAL = "delete_local"
    # Local bookkeeping that changes no user-visible field.
    MARK_REMOTE_DELETED = "mark_remote_deleted"
    MARK_PENDING = "mark_pending"
    PUSH_CREATE = "push_create"
    PUSH_UPDATE = "push_update"
    PUSH_DELETE = "push_delete"

    @property
    def is_push(self) -> bool:
        return self in (MutationKind.PUSH_CREATE, MutationKind.PUSH_UPDATE, MutationKind.PUSH_DELETE)


@dataclass(frozen=True)
class LocalMutation:
    """A write to the calendar store; ``event`` is the record's new state."""

    kind: MutationKind
    event: Event


@dataclass(frozen=True)
class RemotePush:
    """A local change to send to the provider.

    ``expected_etag`` is the provider version the push is based on and is sent
    as a precondition where the provider supports one.
    """

    kind: MutationKind
    event: Event
    expected_etag: str | None = None


@dataclass
class ReconcilePlan:
    local: list[LocalMutation] = field(default_factory=list)
    pushes: list[RemotePush] = field(default_factory=list)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    processed: int = 0
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.local or self.pushes or self.conflicts)


def event_from_external(
    external: ExternalEvent,
    *,
    calendar_id: str,
    settled_at: datetime,
    base: Event | None = None,
) -> Event:
    """Build the local state that mirrors *external*.

    ``last_modified`` is clamped to *settled_at* (the pass start) so that a
    record written by the engine never looks locally modified after the
    pass's last-sync instant.
    """
    modified = external.last_modified
    if modified is None or modified > settled_at:
        modified = settled_at
    fields = {
        "provider_event_id": external.id,
        "title": external.title,
        "description": external.description,
        "start": external.start,
        "end": external.end,
        "all_day": external.all_day,
        "location": external.location,
        "etag": external.etag,
        "last_modified": modified,
        "deleted": False,
        "remote_deleted": False,
        "sync_pending": False,
    }
    if base is None:
        return Event(calendar_id=calendar_id, **fields)
    return base.model_copy(update=fields)


def _latest_by_id(external_events: Iterable[ExternalEvent]) -> list[ExternalEvent]:
    # An event edited during pagination can appear twice; the later copy wins.
    latest: dict[str, ExternalEvent] = {}
    for event in external_events:
        latest.pop(event.id, None)
        latest[event.id] = event
    return list(latest.values())


class Reconciler:
    """Plans local and remote mutations for one calendar pass."""

    def __init__(
        self,
        *,
        proximity_window: timedelta = DEFAULT_PROXIMITY_WINDOW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if proximity_window < timedelta(0):
            raise ValueError("proximity_window must be non-negative")
        self.proximity_window = proximity_window
        self._clock = clock

    def reconcile(
        self,
        calendar: Calendar,
        local_events: Iterable[Event],
        external_events: Iterable[ExternalEvent],
        *,
        settled_at: datetime,
        open_conflicts: Mapping[str, ConflictRecord] | None = None,
    ) -> ReconcilePlan:
        """Compare *external_events* against *local_events*.

        Args:
            calendar: The calendar being synced; its ``last_synced_at`` is the
                baseline for "modified since last sync".
            local_events: Every local event of the calendar, tombstones included.
            external_events: The provider delta, already flattened across pages.
            settled_at: Pass start instant used as ``last_modified`` for
                records written by the engine.
            open_conflicts: Unresolved conflicts keyed by local event id.
        """
        last_sync = calendar.last_synced_at
        open_conflicts = open_conflicts or {}
        locals_ = list(local_events)
        by_provider_id = {e.provider_event_id: e for e in locals_ if e.provider_event_id}

        plan = ReconcilePlan()
        handled: set[str] = set()

        for external in _latest_by_id(external_events):
            plan.processed += 1
            local = by_provider_id.get(external.id)

            if local is None:
                if not external.deleted:
                    plan.local.append(
                        LocalMutation(
                            MutationKind.CREATE_LOCAL,
                            event_from_external(
                                external, calendar_id=calendar.id, settled_at=settled_at
                            ),
                        )
                    )
                continue

            existing = open_conflicts.get(local.id)
            if external.deleted:
                handled.add(local.id)
                self._plan_remote_delete(plan, calendar, local, external, existing, settled_at)
                continue

            if local.etag is not None and local.etag == external.etag:
                # Remote unchanged; local edits are picked up below.
                plan.unchanged += 1
                continue

            handled.add(local.id)
            if existing is not None:
                plan.conflicts.append(self._conflict(calendar, local, external, existing))
                continue

            if not local.modified_since(last_sync):
                plan.local.append(
                    LocalMutation(
                        MutationKind.UPDATE_LOCAL,
                        event_from_external(
                            external, calendar_id=calendar.id, settled_at=settled_at, base=local
                        ),
                    )
                )
                continue

            self._plan_both_modified(plan, calendar, local, external, settled_at)

        self._plan_local_changes(plan, locals_, handled, open_conflicts, last_sync)
        return plan

    def _plan_both_modified(
        self,
        plan: ReconcilePlan,
        calendar: Calendar,
        local: Event,
        external: ExternalEvent,
        settled_at: datetime,
    ) -> None:
        if external.last_modified is None:
            # No remote timestamp to order by.
            plan.conflicts.append(self._conflict(calendar, local, external))
            return

        delta = local.last_modified - external.last_modified
        if abs(delta) <= self.proximity_window:
            logger.info(
                "Conflict detected: calendar=%s event=%s provider_event=%s delta=%.0fs",
                calendar.id,
                local.id,
                external.id,
                delta.total_seconds(),
            )
            plan.conflicts.append(self._conflict(calendar, local, external))
        elif delta > timedelta(0):
            kind = MutationKind.PUSH_DELETE if local.deleted else MutationKind.PUSH_UPDATE
            plan.pushes.append(RemotePush(kind, local, expected_etag=external.etag))
        else:
            plan.local.append(
                LocalMutation(
                    MutationKind.UPDATE_LOCAL,
                    event_from_external(
                        external, calendar_id=calendar.id, settled_at=settled_at, base=local
                    ),
                )
            )

    def _plan_remote_delete(
        self,
        plan: ReconcilePlan,
        calendar: Calendar,
        local: Event,
        external: ExternalEvent,
        existing: ConflictRecord | None,
        settled_at: datetime,
    ) -> None:
        if local.deleted:
            if not local.remote_deleted:
                plan.local.append(
                    LocalMutation(
                        MutationKind.MARK_REMOTE_DELETED,
                        local.model_copy(update={"remote_deleted": True, "sync_pending": False}),
                    )
                )
            return
        if existing is not None or local.modified_since(calendar.last_synced_at):
            plan.conflicts.append(
                self._conflict(
                    calendar,
                    local,
                    external,
                    existing,
                    kind=ConflictKind.DELETED_REMOTELY_MODIFIED_LOCALLY,
                )
            )
            return
        plan.local.append(
            LocalMutation(
                MutationKind.DELETE_LOCAL,
                local.model_copy(
                    update={
                        "deleted": True,
                        "remote_deleted": True,
                        "etag": external.etag or local.etag,
                        "last_modified": settled_at,
                    }
                ),
            )
        )

    def _plan_local_changes(
        self,
        plan: ReconcilePlan,
        local_events: list[Event],
        handled: set[str],
        open_conflicts: Mapping[str, ConflictRecord],
        last_sync: datetime | None,
    ) -> None:
        for local in local_events:
            if local.id in handled or local.id in open_conflicts:
                continue
            if local.provider_event_id is None:
                if not local.deleted:
                    plan.pushes.append(RemotePush(MutationKind.PUSH_CREATE, local))
                continue
            if local.deleted:
                if not local.remote_deleted:
                    plan.pushes.append(
                        RemotePush(MutationKind.PUSH_DELETE, local, expected_etag=local.etag)
                    )
                continue
            if local.modified_since(last_sync):
                plan.pushes.append(
                    RemotePush(MutationKind.PUSH_UPDATE, local, expected_etag=local.etag)
                )

    def _conflict(
        self,
        calendar: Calendar,
        local: Event,
        external: ExternalEvent,
        existing: ConflictRecord | None = None,
        *,
        kind: ConflictKind = ConflictKind.MODIFIED_ON_BOTH_SIDES,
    ) -> ConflictRecord:
        return ConflictRecord(
            id=existing.id if existing is not None else new_id(),
            calendar_id=calendar.id,
            event_id=local.id,
            kind=kind,
            local_snapshot=local,
            external_snapshot=external,
            detected_at=self._clock(),
        )
