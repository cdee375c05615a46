"""Integration tests for the PostgreSQL stores and a full pass against them.

Requires Docker; skipped otherwise.
"""

from __future__ import annotations

import shutil
import uuid
from datetime import timedelta

import pytest

from calsync.db import ConnectionParams, Database
from calsync.errors import NotFoundError
from calsync.models import Calendar, Credential, Event, SyncStatus
from calsync.orchestrator import SyncOrchestrator, SyncSettings
from calsync.resilience import RetryPolicy
from calsync.stores.base import SyncBatch
from calsync.stores.postgres import PostgresCalendarStore, PostgresCredentialStore

from conftest import T0, FakeClock, FakeProvider, RecordingSleep

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


def _unique_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="module")
def postgres_container():
    """Start a PostgreSQL container for the test module."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
async def database(postgres_container):
    db = Database(
        db_name=_unique_db_name(),
        schema="calsync",
        params=ConnectionParams(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
        ),
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    await db.connect()
    await db.ensure_schema()
    yield db
    await db.close()


@pytest.fixture
async def store(database) -> PostgresCalendarStore:
    store = PostgresCalendarStore(database.require_pool())
    await store.save_calendar(
        Calendar(id="cal-1", user_id="user-1", provider="google", provider_calendar_id="primary")
    )
    return store


def _event(event_id: str, provider_event_id: str) -> Event:
    return Event(
        id=event_id,
        calendar_id="cal-1",
        provider_event_id=provider_event_id,
        title=event_id,
        start=T0,
        end=T0 + timedelta(hours=1),
        last_modified=T0,
    )


async def test_ensure_schema_is_idempotent(database):
    await database.ensure_schema()


async def test_batch_reports_duplicate_and_commits_rest(store):
    await store.upsert_event(_event("evt-1", "g-1"))

    failures = await store.apply_sync_batch(
        "cal-1",
        SyncBatch(last_synced_at=T0, upserts=[_event("evt-2", "g-1"), _event("evt-3", "g-3")]),
    )

    assert [f.event_id for f in failures] == ["evt-2"]
    assert [e.id for e in await store.list_events("cal-1")] == ["evt-1", "evt-3"]
    assert (await store.get_calendar("cal-1")).last_synced_at == T0


async def test_missing_records(store):
    with pytest.raises(NotFoundError):
        await store.get_event("nope")
    with pytest.raises(NotFoundError):
        await store.apply_sync_batch("nope", SyncBatch(last_synced_at=T0))


async def test_full_pass_against_postgres(database, store):
    clock = FakeClock()
    provider = FakeProvider(clock=clock)
    provider.put_remote("g-1", title="Remote")
    credentials = PostgresCredentialStore(database.require_pool())
    await credentials.save_credential(
        Credential(
            user_id="user-1",
            provider="google",
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=clock() + timedelta(hours=1),
        )
    )
    orchestrator = SyncOrchestrator.create(
        store,
        credentials,
        {"google": provider},
        settings=SyncSettings(max_workers=1, pass_timeout=30.0),
        retry_policy=RetryPolicy(attempt_timeout=None),
        clock=clock,
        sleep=RecordingSleep(),
    )

    result = await orchestrator.sync_calendar("cal-1")

    assert result.status is SyncStatus.SUCCESS
    assert result.created == 1
    (stored,) = await store.list_sync_results("cal-1")
    assert stored.status is SyncStatus.SUCCESS
    (event,) = await store.list_events("cal-1")
    assert event.title == "Remote"
