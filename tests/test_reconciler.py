"""Tests for calsync.reconciler.

Covers:
- remote-only events are created locally; tombstones from the provider delete
- remote wins when the local copy is untouched since the last sync
- edits on both sides within the proximity window become conflicts (both orders)
- outside the window the later side wins
- local-only work: creates, deletes and edits are staged as pushes
- open conflicts suppress further mutation
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from calsync.models import Calendar, ConflictKind, ConflictRecord, Event, ExternalEvent
from calsync.reconciler import MutationKind, Reconciler, event_from_external

from conftest import T0, FakeClock

pytestmark = pytest.mark.unit

LAST_SYNC = T0
SETTLED = T0 + timedelta(minutes=10)


def _calendar(last_synced_at=LAST_SYNC) -> Calendar:
    return Calendar(
        id="cal-1",
        user_id="user-1",
        provider="google",
        provider_calendar_id="primary",
        last_synced_at=last_synced_at,
    )


def _local(
    event_id: str = "evt-1",
    *,
    provider_event_id: str | None = "g-1",
    title: str = "Standup",
    modified=T0 - timedelta(hours=1),
    etag: str | None = "etag-1",
    **kwargs,
) -> Event:
    return Event(
        id=event_id,
        calendar_id="cal-1",
        provider_event_id=provider_event_id,
        title=title,
        start=T0 + timedelta(days=1),
        end=T0 + timedelta(days=1, hours=1),
        last_modified=modified,
        etag=etag,
        **kwargs,
    )


def _remote(
    event_id: str = "g-1",
    *,
    title: str = "Standup (moved)",
    modified=T0 + timedelta(minutes=2),
    etag: str | None = "etag-2",
    deleted: bool = False,
) -> ExternalEvent:
    return ExternalEvent(
        id=event_id,
        provider="google",
        title=title,
        start=T0 + timedelta(days=1, hours=2),
        end=T0 + timedelta(days=1, hours=3),
        last_modified=modified,
        etag=etag,
        deleted=deleted,
    )


@pytest.fixture
def reconciler(clock: FakeClock) -> Reconciler:
    return Reconciler(clock=clock)


def _kinds(plan) -> list[MutationKind]:
    return [m.kind for m in plan.local] + [p.kind for p in plan.pushes]


# ---------------------------------------------------------------------------
# Remote delta
# ---------------------------------------------------------------------------


class TestRemoteChanges:
    def test_new_remote_event_is_created_locally(self, reconciler):
        plan = reconciler.reconcile(_calendar(), [], [_remote()], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.CREATE_LOCAL]
        created = plan.local[0].event
        assert created.provider_event_id == "g-1"
        assert created.title == "Standup (moved)"
        assert created.etag == "etag-2"
        assert plan.processed == 1

    def test_remote_tombstone_without_local_copy_is_ignored(self, reconciler):
        plan = reconciler.reconcile(
            _calendar(), [], [_remote(deleted=True)], settled_at=SETTLED
        )
        assert plan.is_empty
        assert plan.processed == 1

    def test_equal_etag_is_a_no_op(self, reconciler):
        plan = reconciler.reconcile(
            _calendar(), [_local()], [_remote(etag="etag-1")], settled_at=SETTLED
        )
        assert plan.is_empty
        assert plan.unchanged == 1

    def test_remote_wins_when_local_untouched(self, reconciler):
        local = _local()
        plan = reconciler.reconcile(_calendar(), [local], [_remote()], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.UPDATE_LOCAL]
        updated = plan.local[0].event
        assert updated.id == local.id
        assert updated.title == "Standup (moved)"
        assert updated.etag == "etag-2"

    def test_first_sync_treats_remote_as_authoritative(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(
            _calendar(last_synced_at=None), [local], [_remote()], settled_at=SETTLED
        )
        assert _kinds(plan) == [MutationKind.UPDATE_LOCAL]
        assert plan.conflicts == []

    def test_remote_delete_of_untouched_event(self, reconciler):
        plan = reconciler.reconcile(
            _calendar(), [_local()], [_remote(deleted=True)], settled_at=SETTLED
        )
        assert _kinds(plan) == [MutationKind.DELETE_LOCAL]
        tombstone = plan.local[0].event
        assert tombstone.deleted and tombstone.remote_deleted

    def test_remote_delete_of_locally_modified_event_is_a_conflict(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(
            _calendar(), [local], [_remote(deleted=True)], settled_at=SETTLED
        )
        assert plan.local == [] and plan.pushes == []
        assert [c.kind for c in plan.conflicts] == [
            ConflictKind.DELETED_REMOTELY_MODIFIED_LOCALLY
        ]

    def test_remote_delete_of_local_tombstone_marks_it_propagated(self, reconciler):
        local = _local(deleted=True, modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(
            _calendar(), [local], [_remote(deleted=True)], settled_at=SETTLED
        )
        assert _kinds(plan) == [MutationKind.MARK_REMOTE_DELETED]
        assert plan.pushes == []

    def test_duplicate_remote_ids_keep_the_last_copy(self, reconciler):
        plan = reconciler.reconcile(
            _calendar(),
            [],
            [_remote(title="first"), _remote(title="second", etag="etag-3")],
            settled_at=SETTLED,
        )
        assert [m.event.title for m in plan.local] == ["second"]
        assert plan.processed == 1

    def test_engine_written_timestamp_is_clamped_to_pass_start(self):
        future = _remote(modified=SETTLED + timedelta(minutes=5))
        event = event_from_external(future, calendar_id="cal-1", settled_at=SETTLED)
        assert event.last_modified == SETTLED


# ---------------------------------------------------------------------------
# Concurrent edits
# ---------------------------------------------------------------------------


class TestBothModified:
    def test_edits_within_window_conflict(self, reconciler, clock):
        # Local edit at T0+1m, remote edit at T0+2m, last sync at T0.
        local = _local(title="Standup (local)", modified=T0 + timedelta(minutes=1))
        remote = _remote(modified=T0 + timedelta(minutes=2))
        plan = reconciler.reconcile(_calendar(), [local], [remote], settled_at=SETTLED)

        assert plan.local == [] and plan.pushes == []
        assert len(plan.conflicts) == 1
        conflict = plan.conflicts[0]
        assert conflict.kind is ConflictKind.MODIFIED_ON_BOTH_SIDES
        assert conflict.event_id == local.id
        assert conflict.local_snapshot.title == "Standup (local)"
        assert conflict.external_snapshot.title == "Standup (moved)"
        assert conflict.detected_at == clock()

    def test_conflict_detection_is_symmetric(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=4))
        remote = _remote(modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(_calendar(), [local], [remote], settled_at=SETTLED)
        assert len(plan.conflicts) == 1

    def test_local_newer_outside_window_is_pushed(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=30))
        remote = _remote(modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(_calendar(), [local], [remote], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.PUSH_UPDATE]
        assert plan.pushes[0].expected_etag == "etag-2"

    def test_remote_newer_outside_window_wins(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=1))
        remote = _remote(modified=T0 + timedelta(minutes=30))
        plan = reconciler.reconcile(_calendar(), [local], [remote], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.UPDATE_LOCAL]

    def test_missing_remote_timestamp_conflicts(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(
            _calendar(), [local], [_remote(modified=None)], settled_at=SETTLED
        )
        assert len(plan.conflicts) == 1

    def test_window_is_configurable(self, clock):
        reconciler = Reconciler(proximity_window=timedelta(seconds=30), clock=clock)
        local = _local(modified=T0 + timedelta(minutes=1))
        remote = _remote(modified=T0 + timedelta(minutes=2))
        plan = reconciler.reconcile(_calendar(), [local], [remote], settled_at=SETTLED)
        assert plan.conflicts == []
        assert _kinds(plan) == [MutationKind.UPDATE_LOCAL]

    def test_negative_window_rejected(self):
        with pytest.raises(ValueError):
            Reconciler(proximity_window=timedelta(seconds=-1))


# ---------------------------------------------------------------------------
# Local-only changes and open conflicts
# ---------------------------------------------------------------------------


class TestLocalChanges:
    def test_unpushed_event_is_created_remotely(self, reconciler):
        local = _local(provider_event_id=None, etag=None)
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.PUSH_CREATE]

    def test_local_tombstone_is_deleted_remotely(self, reconciler):
        local = _local(deleted=True, modified=T0 + timedelta(minutes=1))
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.PUSH_DELETE]

    def test_propagated_tombstone_is_left_alone(self, reconciler):
        local = _local(deleted=True, remote_deleted=True)
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert plan.is_empty

    def test_never_pushed_tombstone_is_left_alone(self, reconciler):
        local = _local(provider_event_id=None, deleted=True)
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert plan.is_empty

    def test_local_edit_absent_from_delta_is_pushed(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=3))
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.PUSH_UPDATE]
        assert plan.pushes[0].expected_etag == "etag-1"

    def test_pending_edit_is_pushed_even_if_older_than_last_sync(self, reconciler):
        local = _local(sync_pending=True)
        plan = reconciler.reconcile(_calendar(), [local], [], settled_at=SETTLED)
        assert _kinds(plan) == [MutationKind.PUSH_UPDATE]

    def test_unchanged_event_is_not_pushed(self, reconciler):
        plan = reconciler.reconcile(_calendar(), [_local()], [], settled_at=SETTLED)
        assert plan.is_empty

    def test_local_edit_with_unchanged_remote_is_pushed(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=3))
        plan = reconciler.reconcile(
            _calendar(), [local], [_remote(etag="etag-1")], settled_at=SETTLED
        )
        assert _kinds(plan) == [MutationKind.PUSH_UPDATE]


class TestOpenConflicts:
    def _open_conflict(self, local: Event) -> ConflictRecord:
        return ConflictRecord(
            id="conflict-1",
            calendar_id="cal-1",
            event_id=local.id,
            local_snapshot=local,
            external_snapshot=_remote(),
        )

    def test_open_conflict_suppresses_pushes(self, reconciler):
        local = _local(modified=T0 + timedelta(minutes=3))
        plan = reconciler.reconcile(
            _calendar(),
            [local],
            [],
            settled_at=SETTLED,
            open_conflicts={local.id: self._open_conflict(local)},
        )
        assert plan.is_empty

    def test_new_remote_change_restages_same_conflict(self, reconciler):
        local = _local()
        plan = reconciler.reconcile(
            _calendar(),
            [local],
            [_remote(title="again", etag="etag-9")],
            settled_at=SETTLED,
            open_conflicts={local.id: self._open_conflict(local)},
        )
        assert plan.local == []
        assert [c.id for c in plan.conflicts] == ["conflict-1"]
        assert plan.conflicts[0].external_snapshot.title == "again"
