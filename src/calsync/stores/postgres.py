"""PostgreSQL-backed stores (asyncpg).

Tables are created by :func:`create_schema`.  ``apply_sync_batch`` runs in a
single transaction that also advances ``last_synced_at``; each event write is
wrapped in a savepoint so one rejected row is reported as a per-event failure
without aborting the rest of the batch.

Note: OAuth token values are stored as-is and are NEVER logged.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from calsync.errors import NotFoundError, StoreWriteError
from calsync.models import (
    Calendar,
    ConflictKind,
    ConflictRecord,
    ConflictResolution,
    Credential,
    Event,
    ExternalEvent,
    SyncResult,
    utcnow,
)
from calsync.stores.base import EventWriteFailure, SyncBatch

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

_SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS calsync_calendars (
        id                   TEXT PRIMARY KEY,
        user_id              TEXT NOT NULL,
        provider             TEXT NOT NULL,
        provider_calendar_id TEXT NOT NULL,
        name                 TEXT,
        last_synced_at       TIMESTAMPTZ,
        sync_enabled         BOOLEAN NOT NULL DEFAULT true
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_calsync_calendars_user
    ON calsync_calendars (user_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS calsync_events (
        id                TEXT PRIMARY KEY,
        calendar_id       TEXT NOT NULL REFERENCES calsync_calendars (id),
        provider_event_id TEXT,
        title             TEXT NOT NULL DEFAULT '',
        description       TEXT,
        start_at          TIMESTAMPTZ NOT NULL,
        end_at            TIMESTAMPTZ NOT NULL,
        all_day           BOOLEAN NOT NULL DEFAULT false,
        location          TEXT,
        last_modified     TIMESTAMPTZ NOT NULL,
        etag              TEXT,
        deleted           BOOLEAN NOT NULL DEFAULT false,
        remote_deleted    BOOLEAN NOT NULL DEFAULT false,
        sync_pending      BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_calsync_events_provider_id
    ON calsync_events (calendar_id, provider_event_id)
    WHERE provider_event_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS calsync_conflicts (
        id                TEXT PRIMARY KEY,
        calendar_id       TEXT NOT NULL REFERENCES calsync_calendars (id),
        event_id          TEXT NOT NULL,
        kind              TEXT NOT NULL,
        local_snapshot    JSONB NOT NULL,
        external_snapshot JSONB NOT NULL,
        detected_at       TIMESTAMPTZ NOT NULL,
        resolution        TEXT NOT NULL DEFAULT 'unresolved',
        resolved_at       TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calsync_sync_results (
        id          TEXT PRIMARY KEY,
        calendar_id TEXT NOT NULL,
        status      TEXT NOT NULL,
        started_at  TIMESTAMPTZ,
        finished_at TIMESTAMPTZ,
        payload     JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calsync_credentials (
        user_id       TEXT NOT NULL,
        provider      TEXT NOT NULL,
        access_token  TEXT NOT NULL,
        refresh_token TEXT,
        expires_at    TIMESTAMPTZ NOT NULL,
        invalid       BOOLEAN NOT NULL DEFAULT false,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, provider)
    )
    """,
)

_EVENT_COLUMNS = (
    "id, calendar_id, provider_event_id, title, description, start_at, end_at, all_day, "
    "location, last_modified, etag, deleted, remote_deleted, sync_pending"
)

_UPSERT_EVENT_SQL = f"""
INSERT INTO calsync_events ({_EVENT_COLUMNS})
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
ON CONFLICT (id) DO UPDATE SET
    calendar_id       = EXCLUDED.calendar_id,
    provider_event_id = EXCLUDED.provider_event_id,
    title             = EXCLUDED.title,
    description       = EXCLUDED.description,
    start_at          = EXCLUDED.start_at,
    end_at            = EXCLUDED.end_at,
    all_day           = EXCLUDED.all_day,
    location          = EXCLUDED.location,
    last_modified     = EXCLUDED.last_modified,
    etag              = EXCLUDED.etag,
    deleted           = EXCLUDED.deleted,
    remote_deleted    = EXCLUDED.remote_deleted,
    sync_pending      = EXCLUDED.sync_pending
"""

_UPSERT_CONFLICT_SQL = """
INSERT INTO calsync_conflicts
    (id, calendar_id, event_id, kind, local_snapshot, external_snapshot,
     detected_at, resolution, resolved_at)
VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9)
ON CONFLICT (id) DO UPDATE SET
    kind              = EXCLUDED.kind,
    local_snapshot    = EXCLUDED.local_snapshot,
    external_snapshot = EXCLUDED.external_snapshot,
    detected_at       = EXCLUDED.detected_at,
    resolution        = EXCLUDED.resolution,
    resolved_at       = EXCLUDED.resolved_at
"""


async def create_schema(pool: asyncpg.Pool) -> None:
    """Create calsync tables and indexes if they do not exist."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_DDL:
                await conn.execute(statement)
    logger.info("calsync schema ensured")


def _event_params(event: Event) -> tuple[Any, ...]:
    return (
        event.id,
        event.calendar_id,
        event.provider_event_id,
        event.title,
        event.description,
        event.start,
        event.end,
        event.all_day,
        event.location,
        event.last_modified,
        event.etag,
        event.deleted,
        event.remote_deleted,
        event.sync_pending,
    )


def _row_to_event(row: Mapping[str, Any]) -> Event:
    return Event(
        id=row["id"],
        calendar_id=row["calendar_id"],
        provider_event_id=row["provider_event_id"],
        title=row["title"],
        description=row["description"],
        start=row["start_at"],
        end=row["end_at"],
        all_day=row["all_day"],
        location=row["location"],
        last_modified=row["last_modified"],
        etag=row["etag"],
        deleted=row["deleted"],
        remote_deleted=row["remote_deleted"],
        sync_pending=row["sync_pending"],
    )


def _row_to_calendar(row: Mapping[str, Any]) -> Calendar:
    return Calendar(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        provider_calendar_id=row["provider_calendar_id"],
        name=row["name"],
        last_synced_at=row["last_synced_at"],
        sync_enabled=row["sync_enabled"],
    )


def _jsonb(value: Any) -> dict[str, Any]:
    # asyncpg returns JSONB as text unless a codec is registered.
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_conflict(row: Mapping[str, Any]) -> ConflictRecord:
    return ConflictRecord(
        id=row["id"],
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        kind=ConflictKind(row["kind"]),
        local_snapshot=Event.model_validate(_jsonb(row["local_snapshot"])),
        external_snapshot=ExternalEvent.model_validate(_jsonb(row["external_snapshot"])),
        detected_at=row["detected_at"],
        resolution=ConflictResolution(row["resolution"]),
        resolved_at=row["resolved_at"],
    )


def _conflict_params(conflict: ConflictRecord) -> tuple[Any, ...]:
    return (
        conflict.id,
        conflict.calendar_id,
        conflict.event_id,
        str(conflict.kind),
        conflict.local_snapshot.model_dump_json(),
        conflict.external_snapshot.model_dump_json(),
        conflict.detected_at,
        str(conflict.resolution),
        conflict.resolved_at,
    )


class PostgresCalendarStore:
    """Calendar store backed by the ``calsync_*`` tables.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection
        for its own duration.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_calendar(self, calendar_id: str) -> Calendar:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM calsync_calendars WHERE id = $1", calendar_id)
        if row is None:
            raise NotFoundError("calendar", calendar_id)
        return _row_to_calendar(row)

    async def list_calendars(self, user_id: str) -> list[Calendar]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM calsync_calendars WHERE user_id = $1 ORDER BY id", user_id
            )
        return [_row_to_calendar(row) for row in rows]

    async def save_calendar(self, calendar: Calendar) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO calsync_calendars
                    (id, user_id, provider, provider_calendar_id, name,
                     last_synced_at, sync_enabled)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    user_id              = EXCLUDED.user_id,
                    provider             = EXCLUDED.provider,
                    provider_calendar_id = EXCLUDED.provider_calendar_id,
                    name                 = EXCLUDED.name,
                    last_synced_at       = EXCLUDED.last_synced_at,
                    sync_enabled         = EXCLUDED.sync_enabled
                """,
                calendar.id,
                calendar.user_id,
                calendar.provider,
                calendar.provider_calendar_id,
                calendar.name,
                calendar.last_synced_at,
                calendar.sync_enabled,
            )

    async def update_last_sync(self, calendar_id: str, instant: datetime) -> None:
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                "UPDATE calsync_calendars SET last_synced_at = $2 WHERE id = $1",
                calendar_id,
                instant,
            )
        if status.endswith(" 0"):
            raise NotFoundError("calendar", calendar_id)

    async def list_events(self, calendar_id: str) -> list[Event]:
        await self.get_calendar(calendar_id)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM calsync_events WHERE calendar_id = $1 ORDER BY id",
                calendar_id,
            )
        return [_row_to_event(row) for row in rows]

    async def get_event(self, event_id: str) -> Event:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM calsync_events WHERE id = $1", event_id
            )
        if row is None:
            raise NotFoundError("event", event_id)
        return _row_to_event(row)

    async def upsert_event(self, event: Event) -> Event:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(_UPSERT_EVENT_SQL, *_event_params(event))
        except asyncpg.ForeignKeyViolationError:
            raise NotFoundError("calendar", event.calendar_id) from None
        except asyncpg.UniqueViolationError as exc:
            raise StoreWriteError(str(exc), event_id=event.id) from exc
        return event

    async def delete_event(self, event_id: str) -> Event:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE calsync_events SET deleted = true, last_modified = $2
                WHERE id = $1
                RETURNING {_EVENT_COLUMNS}
                """,
                event_id,
                utcnow(),
            )
        if row is None:
            raise NotFoundError("event", event_id)
        return _row_to_event(row)

    async def apply_sync_batch(
        self, calendar_id: str, batch: SyncBatch
    ) -> list[EventWriteFailure]:
        """Write a pass's local changes and advance last-sync in one transaction.

        Parameters
        ----------
        calendar_id:
            Calendar the batch belongs to.
        batch:
            Event upserts, conflict records and the new last-sync instant.

        Returns
        -------
        list[EventWriteFailure]
            Events rejected by the database; every other write is committed.

        Raises
        ------
        NotFoundError
            If the calendar no longer exists (nothing is written).
        """
        failures: list[EventWriteFailure] = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT id FROM calsync_calendars WHERE id = $1 FOR UPDATE", calendar_id
                )
                if row is None:
                    raise NotFoundError("calendar", calendar_id)
                for event in batch.upserts:
                    if event.calendar_id != calendar_id:
                        failures.append(
                            EventWriteFailure(
                                event_id=event.id,
                                error=StoreWriteError(
                                    f"event {event.id} belongs to calendar {event.calendar_id}",
                                    event_id=event.id,
                                ),
                            )
                        )
                        continue
                    try:
                        async with conn.transaction():
                            await conn.execute(_UPSERT_EVENT_SQL, *_event_params(event))
                    except asyncpg.PostgresError as exc:
                        logger.warning(
                            "Event write rejected: calendar=%s event=%s error=%s",
                            calendar_id,
                            event.id,
                            type(exc).__name__,
                        )
                        failures.append(
                            EventWriteFailure(
                                event_id=event.id,
                                error=StoreWriteError(str(exc), event_id=event.id),
                            )
                        )
                for conflict in batch.conflicts:
                    await conn.execute(_UPSERT_CONFLICT_SQL, *_conflict_params(conflict))
                await conn.execute(
                    "UPDATE calsync_calendars SET last_synced_at = $2 WHERE id = $1",
                    calendar_id,
                    batch.last_synced_at,
                )
        return failures

    async def get_conflict(self, conflict_id: str) -> ConflictRecord:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM calsync_conflicts WHERE id = $1", conflict_id)
        if row is None:
            raise NotFoundError("conflict", conflict_id)
        return _row_to_conflict(row)

    async def list_conflicts(
        self, calendar_id: str, *, unresolved_only: bool = True
    ) -> list[ConflictRecord]:
        query = "SELECT * FROM calsync_conflicts WHERE calendar_id = $1"
        if unresolved_only:
            query += " AND resolution = 'unresolved'"
        query += " ORDER BY detected_at"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, calendar_id)
        return [_row_to_conflict(row) for row in rows]

    async def save_conflict_resolution(self, conflict: ConflictRecord, event: Event) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(_UPSERT_EVENT_SQL, *_event_params(event))
                await conn.execute(_UPSERT_CONFLICT_SQL, *_conflict_params(conflict))

    async def save_sync_result(self, result: SyncResult) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO calsync_sync_results
                    (id, calendar_id, status, started_at, finished_at, payload)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    status      = EXCLUDED.status,
                    started_at  = EXCLUDED.started_at,
                    finished_at = EXCLUDED.finished_at,
                    payload     = EXCLUDED.payload
                """,
                result.id,
                result.calendar_id,
                str(result.status),
                result.started_at,
                result.finished_at,
                result.model_dump_json(),
            )

    async def list_sync_results(self, calendar_id: str, *, limit: int = 20) -> list[SyncResult]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT payload FROM calsync_sync_results
                WHERE calendar_id = $1
                ORDER BY started_at DESC NULLS LAST
                LIMIT $2
                """,
                calendar_id,
                limit,
            )
        return [SyncResult.model_validate(_jsonb(row["payload"])) for row in rows]


class PostgresCredentialStore:
    """Credential store backed by ``calsync_credentials``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def load_credential(self, user_id: str, provider: str) -> Credential | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT user_id, provider, access_token, refresh_token, expires_at, invalid
                FROM calsync_credentials
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider,
            )
        if row is None:
            return None
        return Credential(
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            invalid=row["invalid"],
        )

    async def save_credential(self, credential: Credential) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO calsync_credentials
                    (user_id, provider, access_token, refresh_token, expires_at, invalid)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    access_token  = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at    = EXCLUDED.expires_at,
                    invalid       = EXCLUDED.invalid,
                    updated_at    = now()
                """,
                credential.user_id,
                credential.provider,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at,
                credential.invalid,
            )
        # NEVER include token values.
        logger.info(
            "Credential saved: user=%r provider=%r invalid=%r",
            credential.user_id,
            credential.provider,
            credential.invalid,
        )
