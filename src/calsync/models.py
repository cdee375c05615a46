"""Provider-neutral data model for calendar synchronization.

All instants are timezone-aware; naive datetimes are interpreted as UTC when
models are constructed so comparisons between local and provider timestamps
never mix aware and naive values.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SyncStatus(enum.StrEnum):
    """Lifecycle of a single sync pass."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.PARTIAL, SyncStatus.FAILED)


class ConflictKind(enum.StrEnum):
    MODIFIED_ON_BOTH_SIDES = "modified_on_both_sides"
    DELETED_REMOTELY_MODIFIED_LOCALLY = "deleted_remotely_modified_locally"


class ConflictResolution(enum.StrEnum):
    UNRESOLVED = "unresolved"
    LOCAL_WINS = "resolved_local_wins"
    REMOTE_WINS = "resolved_remote_wins"
    MERGED = "resolved_merged"


class Calendar(BaseModel):
    """One provider-linked calendar owned by one user."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    provider_calendar_id: str = Field(min_length=1)
    name: str | None = None
    last_synced_at: datetime | None = None
    sync_enabled: bool = True

    @field_validator("last_synced_at")
    @classmethod
    def _aware_last_synced_at(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)


class _EventFields(BaseModel):
    """Fields shared by local events, provider snapshots and drafts."""

    model_config = ConfigDict(extra="forbid")

    title: str = ""
    description: str | None = None
    start: datetime
    end: datetime
    all_day: bool = False
    location: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _aware_bounds(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _end_not_before_start(self) -> _EventFields:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class EventDraft(_EventFields):
    """Writable event fields pushed to a provider."""

    @classmethod
    def from_event(cls, event: _EventFields) -> EventDraft:
        return cls(
            title=event.title,
            description=event.description,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            location=event.location,
        )


class Event(_EventFields):
    """Local event record.

    Events are never hard-deleted: ``deleted`` is a tombstone so the
    reconciler can tell "deleted locally" from "never existed".
    ``remote_deleted`` records that the tombstone reached the provider, and
    ``sync_pending`` marks a local edit whose push has not been confirmed.
    """

    id: str = Field(default_factory=new_id)
    calendar_id: str = Field(min_length=1)
    provider_event_id: str | None = None
    last_modified: datetime = Field(default_factory=utcnow)
    etag: str | None = None
    deleted: bool = False
    remote_deleted: bool = False
    sync_pending: bool = False

    @field_validator("last_modified")
    @classmethod
    def _aware_last_modified(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def modified_since(self, instant: datetime | None) -> bool:
        """Return True when the local record changed after *instant*."""
        if self.sync_pending:
            return True
        if instant is None:
            return False
        return self.last_modified > instant


class ExternalEvent(_EventFields):
    """Read-only provider snapshot of an event."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    last_modified: datetime | None = None
    etag: str | None = None
    deleted: bool = False

    @field_validator("last_modified")
    @classmethod
    def _aware_last_modified(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)


class ExternalCalendar(BaseModel):
    """A calendar as listed by a provider."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    name: str | None = None
    primary: bool = False
    timezone: str | None = None


class EventPage(BaseModel):
    """One page of provider events."""

    model_config = ConfigDict(extra="forbid")

    events: list[ExternalEvent] = Field(default_factory=list)
    next_cursor: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    @field_validator("next_cursor")
    @classmethod
    def _normalize_cursor(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class TokenGrant(BaseModel):
    """Token material returned by an authorization or refresh exchange."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int = Field(ge=0)

    def __repr__(self) -> str:
        return f"TokenGrant(expires_in={self.expires_in})"


class Credential(BaseModel):
    """Stored OAuth credential for one (user, provider) pair."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime
    invalid: bool = False

    @field_validator("expires_at")
    @classmethod
    def _aware_expires_at(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def __repr__(self) -> str:
        # Token values are never rendered.
        return (
            f"Credential(user_id={self.user_id!r}, provider={self.provider!r}, "
            f"expires_at={self.expires_at.isoformat()}, invalid={self.invalid})"
        )

    __str__ = __repr__


class SyncError(BaseModel):
    """A failure captured during a sync pass."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    provider: str | None = None
    event_id: str | None = None
    operation: str
    error_class: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        calendar_id: str,
        operation: str,
        provider: str | None = None,
        event_id: str | None = None,
    ) -> SyncError:
        return cls(
            calendar_id=calendar_id,
            provider=provider,
            event_id=event_id,
            operation=operation,
            error_class=type(exc).__name__,
            message=str(exc)[:500] or type(exc).__name__,
        )


class ConflictRecord(BaseModel):
    """Both sides of an event changed; awaits an explicit resolution."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    calendar_id: str
    event_id: str
    kind: ConflictKind = ConflictKind.MODIFIED_ON_BOTH_SIDES
    local_snapshot: Event
    external_snapshot: ExternalEvent
    detected_at: datetime = Field(default_factory=utcnow)
    resolution: ConflictResolution = ConflictResolution.UNRESOLVED
    resolved_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.resolution is not ConflictResolution.UNRESOLVED


class SyncResult(BaseModel):
    """Outcome of one reconciliation pass for one calendar."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    calendar_id: str
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: list[ConflictRecord] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)

    @property
    def mutation_count(self) -> int:
        return self.created + self.updated + self.deleted

    def summary(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "status": str(self.status),
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "conflicts": len(self.conflicts),
            "errors": len(self.errors),
        }


class HealthStatus(enum.StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CalendarHealth(BaseModel):
    """Integration health of one calendar, derived from its recent passes."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    provider: str
    status: HealthStatus
    sync_enabled: bool = True
    last_synced_at: datetime | None = None
    next_sync_at: datetime | None = None
    last_status: SyncStatus | None = None
    open_conflicts: int = 0
    # Open conflicts per mutation of the last pass, as a percentage.
    conflict_rate: float = 0.0
    recent_errors: list[SyncError] = Field(default_factory=list)
    circuit_state: str | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "provider": self.provider,
            "status": str(self.status),
            "sync_enabled": self.sync_enabled,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
            "last_status": str(self.last_status) if self.last_status else None,
            "open_conflicts": self.open_conflicts,
            "conflict_rate": round(self.conflict_rate, 1),
            "recent_errors": len(self.recent_errors),
            "circuit_state": self.circuit_state,
        }
