"""Sync orchestration: token -> paginated fetch -> reconcile -> push -> atomic commit.

:class:`SyncOrchestrator` is the engine's entry point.  One pass over one
calendar moves its :class:`SyncResult` from PENDING to IN_PROGRESS and then to
exactly one terminal state:

- FAILED: lookup, token, page-fetch or commit failure, cancellation, or the
  pass timeout.  No local write happened and ``last_synced_at`` is unchanged,
  so the next pass re-fetches from the same point.
- PARTIAL: the batch committed but at least one event push or local write
  failed; each failure is recorded as a :class:`SyncError`.
- SUCCESS: everything applied.

On PARTIAL and SUCCESS the calendar's ``last_synced_at`` advances to the
pass's *start* time, atomically with the batch of local writes.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TypeVar

from calsync.core.logging import reset_calendar_context, set_calendar_context
from calsync.core.metrics import SyncMetrics
from calsync.core.telemetry import sync_span
from calsync.errors import (
    AuthError,
    ConflictAlreadyResolvedError,
    ProviderError,
    ProviderNotConfiguredError,
    StatusClass,
    SyncCancelledError,
    SyncDisabledError,
    SyncInProgressError,
    SyncTimeoutError,
)
from calsync.models import (
    Calendar,
    CalendarHealth,
    ConflictRecord,
    ConflictResolution,
    Event,
    EventDraft,
    ExternalEvent,
    HealthStatus,
    SyncError,
    SyncResult,
    SyncStatus,
    utcnow,
)
from calsync.providers.base import CalendarProvider
from calsync.reconciler import (
    DEFAULT_PROXIMITY_WINDOW,
    LocalMutation,
    MutationKind,
    Reconciler,
    RemotePush,
    event_from_external,
)
from calsync.resilience import BreakerRegistry, CircuitState, ResilientExecutor, RetryPolicy
from calsync.stores.base import CalendarStore, CredentialStore, SyncBatch
from calsync.tokens import DEFAULT_SAFETY_MARGIN, TokenManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_WORKERS = 4
DEFAULT_PASS_TIMEOUT_SECONDS = 300.0
HEALTH_RECENT_PASSES = 5
# More open conflicts than this degrade a calendar.
HEALTH_CONFLICT_THRESHOLD = 3

_CREATED_KINDS = frozenset({MutationKind.CREATE_LOCAL, MutationKind.PUSH_CREATE})
_UPDATED_KINDS = frozenset({MutationKind.UPDATE_LOCAL, MutationKind.PUSH_UPDATE})
_DELETED_KINDS = frozenset({MutationKind.DELETE_LOCAL, MutationKind.PUSH_DELETE})
_BOOKKEEPING_KINDS = frozenset({MutationKind.MARK_REMOTE_DELETED, MutationKind.MARK_PENDING})


class ConflictPolicy(enum.StrEnum):
    """Named policies for bulk conflict resolution; applied only on request."""

    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    LATEST_WINS = "latest_wins"


class SyncDirection(enum.StrEnum):
    """Which side of a pass is written.

    ``import`` applies provider changes locally and leaves local edits pending;
    ``export`` pushes local changes and ignores provider-side edits.
    """

    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"

    @property
    def imports(self) -> bool:
        return self is not SyncDirection.EXPORT

    @property
    def exports(self) -> bool:
        return self is not SyncDirection.IMPORT


@dataclass(frozen=True)
class SyncSettings:
    max_workers: int = DEFAULT_MAX_WORKERS
    proximity_window: timedelta = DEFAULT_PROXIMITY_WINDOW
    pass_timeout: float | None = DEFAULT_PASS_TIMEOUT_SECONDS
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.pass_timeout is not None and self.pass_timeout <= 0:
            raise ValueError("pass_timeout must be positive")


def _defer_push(push: RemotePush) -> LocalMutation | None:
    """Keep an unsent local change visible as unpushed once last-sync advances.

    The pending marker carries the provider version the push was based on,
    since the remote copy may not reappear in later deltas.  Creates need no
    marker: an event without a provider id is always pushed.
    """
    if push.kind is MutationKind.PUSH_CREATE:
        return None
    event = push.event
    base_etag = push.expected_etag or event.etag
    if event.sync_pending and event.etag == base_etag:
        return None
    return LocalMutation(
        MutationKind.MARK_PENDING,
        event.model_copy(update={"sync_pending": True, "etag": base_etag}),
    )


@dataclass
class _PassContext:
    """Mutable state of one running pass."""

    result: SyncResult
    stage: str = "lookup"
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    provider: str | None = None
    token: str | None = None
    calendar: Calendar | None = None
    applied: list[LocalMutation] = field(default_factory=list)


class SyncOrchestrator:
    """Runs reconciliation passes for calendars.

    Dependencies are passed in explicitly; the orchestrator keeps no global
    state beyond the set of calendars with a pass currently running.
    """

    def __init__(
        self,
        calendar_store: CalendarStore,
        token_manager: TokenManager,
        providers: Mapping[str, CalendarProvider],
        executor: ResilientExecutor,
        *,
        settings: SyncSettings | None = None,
        reconciler: Reconciler | None = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = calendar_store
        self._tokens = token_manager
        self._providers = providers
        self._executor = executor
        self.settings = settings or SyncSettings()
        self._clock = clock
        self._reconciler = reconciler or Reconciler(
            proximity_window=self.settings.proximity_window, clock=clock
        )
        self._metrics = metrics or SyncMetrics()
        self._running: set[str] = set()

    @classmethod
    def create(
        cls,
        calendar_store: CalendarStore,
        credential_store: CredentialStore,
        providers: Mapping[str, CalendarProvider],
        *,
        settings: SyncSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        breakers: BreakerRegistry | None = None,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: SyncMetrics | None = None,
    ) -> SyncOrchestrator:
        """Wire an orchestrator together with its token manager and executor."""
        metrics = metrics or SyncMetrics()
        executor = ResilientExecutor(
            retry_policy=retry_policy, breakers=breakers, sleep=sleep, metrics=metrics
        )
        tokens = TokenManager(
            credential_store,
            providers,
            executor,
            safety_margin=safety_margin,
            clock=clock,
            metrics=metrics,
        )
        return cls(
            calendar_store,
            tokens,
            providers,
            executor,
            settings=settings,
            clock=clock,
            metrics=metrics,
        )

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    @property
    def executor(self) -> ResilientExecutor:
        return self._executor

    def is_running(self, calendar_id: str) -> bool:
        return calendar_id in self._running

    def _client(self, provider: str) -> CalendarProvider:
        client = self._providers.get(provider)
        if client is None:
            raise ProviderNotConfiguredError(provider)
        return client

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def sync_calendar(
        self,
        calendar_id: str,
        *,
        cancel: asyncio.Event | None = None,
        direction: SyncDirection | None = None,
    ) -> SyncResult:
        """Run one reconciliation pass for *calendar_id*.

        Failures are reported through the returned result rather than raised.
        *direction* overrides the configured sync direction for this pass.
        Setting *cancel* aborts in-flight provider calls and yields a FAILED
        result with a "cancelled" error; cancelling the calling task does the
        same and then re-raises ``CancelledError``.

        Raises
        ------
        SyncInProgressError
            A pass for this calendar is already running.
        """
        if calendar_id in self._running:
            raise SyncInProgressError(calendar_id)
        self._running.add(calendar_id)
        context_token = set_calendar_context(calendar_id)
        try:
            with sync_span("calendar_pass", calendar_id=calendar_id) as span:
                result = await self._sync_calendar(
                    calendar_id, cancel, direction or self.settings.direction
                )
                span.set_attribute("calsync.status", str(result.status))
                return result
        finally:
            reset_calendar_context(context_token)
            self._running.discard(calendar_id)

    async def sync_all_calendars(
        self,
        user_id: str,
        *,
        cancel: asyncio.Event | None = None,
        direction: SyncDirection | None = None,
    ) -> list[SyncResult]:
        """Sync every enabled calendar of *user_id* with bounded concurrency.

        Each calendar is isolated: a failed pass only affects its own result.
        Calendars with a pass already running are skipped.
        """
        calendars = [c for c in await self._store.list_calendars(user_id) if c.sync_enabled]
        if not calendars:
            logger.info("No enabled calendars for user %s", user_id)
            return []
        semaphore = asyncio.Semaphore(self.settings.max_workers)

        async def _run(calendar: Calendar) -> SyncResult | None:
            async with semaphore:
                try:
                    return await self.sync_calendar(
                        calendar.id, cancel=cancel, direction=direction
                    )
                except SyncInProgressError:
                    logger.info("Skipping calendar %s: sync already in progress", calendar.id)
                    return None

        outcomes = await asyncio.gather(
            *(_run(calendar) for calendar in calendars), return_exceptions=True
        )
        results: list[SyncResult] = []
        for calendar, outcome in zip(calendars, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected error syncing calendar %s for user %s",
                    calendar.id,
                    user_id,
                    exc_info=outcome,
                )
                continue
            if outcome is not None:
                results.append(outcome)
        return results

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution | str,
        merged: EventDraft | None = None,
    ) -> ConflictRecord:
        """Apply an explicit decision to a conflict.

        - local wins: the local snapshot is pushed to the provider;
        - remote wins: the local event is overwritten from the provider snapshot;
        - merged: *merged* is pushed and stored locally.

        Raises
        ------
        NotFoundError
            The conflict, its calendar or its event no longer exists.
        ConflictAlreadyResolvedError
            The conflict was already resolved.
        ValueError
            *resolution* is "unresolved", or "merged" without *merged*.
        """
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.UNRESOLVED:
            raise ValueError("resolution must be a resolved state")
        if resolution is ConflictResolution.MERGED and merged is None:
            raise ValueError("a merged event is required for a merged resolution")

        with sync_span("resolve_conflict"):
            conflict = await self._store.get_conflict(conflict_id)
            if conflict.resolved:
                raise ConflictAlreadyResolvedError(conflict_id, str(conflict.resolution))
            calendar = await self._store.get_calendar(conflict.calendar_id)
            local = await self._store.get_event(conflict.event_id)
            settled_at = calendar.last_synced_at or self._clock()

            if resolution is ConflictResolution.REMOTE_WINS:
                event = self._take_remote(calendar, local, conflict.external_snapshot, settled_at)
            else:
                draft = merged if merged is not None else EventDraft.from_event(local)
                event = await self._push_resolution(
                    calendar,
                    local,
                    conflict.external_snapshot,
                    draft,
                    settled_at,
                    delete=local.deleted and resolution is ConflictResolution.LOCAL_WINS,
                )

            resolved = conflict.model_copy(
                update={"resolution": resolution, "resolved_at": self._clock()}
            )
            await self._store.save_conflict_resolution(resolved, event)
        logger.info(
            "Conflict resolved: conflict=%s calendar=%s event=%s resolution=%s",
            conflict_id,
            calendar.id,
            event.id,
            resolution,
        )
        return resolved

    async def apply_conflict_policy(
        self, calendar_id: str, policy: ConflictPolicy | str
    ) -> list[ConflictRecord]:
        """Resolve every unresolved conflict of a calendar with a named policy.

        ``latest_wins`` picks the side with the later modification instant
        (local when the provider reported none).  Individual failures are
        logged and the remaining conflicts are still processed.
        """
        policy = ConflictPolicy(policy)
        resolved: list[ConflictRecord] = []
        for conflict in await self._store.list_conflicts(calendar_id):
            resolution = self._policy_resolution(policy, conflict)
            try:
                resolved.append(await self.resolve_conflict(conflict.id, resolution))
            except Exception:
                logger.error(
                    "Policy %s failed for conflict %s (calendar=%s event=%s)",
                    policy,
                    conflict.id,
                    calendar_id,
                    conflict.event_id,
                    exc_info=True,
                )
        return resolved

    async def calendar_health(
        self,
        calendar_id: str,
        *,
        interval: timedelta | None = None,
        recent: int = HEALTH_RECENT_PASSES,
    ) -> CalendarHealth:
        """Summarize the integration health of *calendar_id*.

        The calendar is unhealthy when sync is disabled, no pass has finished,
        the last finished pass failed, or its provider's circuit is open.  It is
        degraded when any of the *recent* passes reported errors or more than
        ``HEALTH_CONFLICT_THRESHOLD`` conflicts are open.  *interval* is the
        polling interval used to project ``next_sync_at``.
        """
        calendar = await self._store.get_calendar(calendar_id)
        results = [
            r
            for r in await self._store.list_sync_results(calendar_id, limit=recent)
            if r.status.terminal
        ]
        last = results[0] if results else None
        conflicts = await self._store.list_conflicts(calendar_id)
        errors = [error for r in results for error in r.errors]
        breaker = next(
            (s for s in self._executor.breakers.stats() if s.name == calendar.provider), None
        )

        if (
            not calendar.sync_enabled
            or last is None
            or last.status is SyncStatus.FAILED
            or (breaker is not None and breaker.state is CircuitState.OPEN)
        ):
            status = HealthStatus.UNHEALTHY
        elif errors or len(conflicts) > HEALTH_CONFLICT_THRESHOLD:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        next_sync_at = None
        if interval is not None and calendar.sync_enabled:
            next_sync_at = (calendar.last_synced_at or self._clock()) + interval
        mutations = last.mutation_count if last is not None else 0
        return CalendarHealth(
            calendar_id=calendar.id,
            provider=calendar.provider,
            status=status,
            sync_enabled=calendar.sync_enabled,
            last_synced_at=calendar.last_synced_at,
            next_sync_at=next_sync_at,
            last_status=last.status if last is not None else None,
            open_conflicts=len(conflicts),
            conflict_rate=len(conflicts) / max(1, mutations) * 100,
            recent_errors=errors,
            circuit_state=str(breaker.state) if breaker is not None else None,
        )

    @staticmethod
    def _policy_resolution(policy: ConflictPolicy, conflict: ConflictRecord) -> ConflictResolution:
        if policy == ConflictPolicy.LOCAL_WINS:
            return ConflictResolution.LOCAL_WINS
        if policy == ConflictPolicy.REMOTE_WINS:
            return ConflictResolution.REMOTE_WINS
        remote_modified = conflict.external_snapshot.last_modified
        if remote_modified is not None and remote_modified > conflict.local_snapshot.last_modified:
            return ConflictResolution.REMOTE_WINS
        return ConflictResolution.LOCAL_WINS

    # ------------------------------------------------------------------
    # Pass lifecycle
    # ------------------------------------------------------------------

    async def _sync_calendar(
        self, calendar_id: str, cancel: asyncio.Event | None, direction: SyncDirection
    ) -> SyncResult:
        result = SyncResult(calendar_id=calendar_id)
        result.status = SyncStatus.IN_PROGRESS
        result.started_at = self._clock()
        ctx = _PassContext(result=result, direction=direction)
        started = time.monotonic()
        self._metrics.active_passes_inc("all")
        try:
            await self._store.save_sync_result(result)
            if cancel is not None and cancel.is_set():
                raise SyncCancelledError()
            await self._await_pass(self._run_pass(ctx), cancel)
        except asyncio.CancelledError:
            self._fail(ctx, SyncCancelledError())
            await self._finish(ctx, started)
            raise
        except Exception as exc:
            self._fail(ctx, exc)
        finally:
            self._metrics.active_passes_dec("all")
        await self._finish(ctx, started)
        return result

    async def _await_pass(self, work: Awaitable[None], cancel: asyncio.Event | None) -> None:
        task = asyncio.ensure_future(work)
        waiters: set[asyncio.Future] = {task}
        cancel_waiter: asyncio.Task | None = None
        if cancel is not None:
            cancel_waiter = asyncio.create_task(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.settings.pass_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            task.result()
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel is not None and cancel.is_set():
            raise SyncCancelledError()
        assert self.settings.pass_timeout is not None
        raise SyncTimeoutError(self.settings.pass_timeout)

    def _fail(self, ctx: _PassContext, exc: BaseException) -> None:
        result = ctx.result
        result.status = SyncStatus.FAILED
        # Nothing was committed, so nothing counts.
        result.created = result.updated = result.deleted = 0
        result.conflicts = []
        result.errors.append(
            SyncError.from_exception(
                exc, calendar_id=result.calendar_id, operation=ctx.stage, provider=ctx.provider
            )
        )
        logger.warning(
            "Sync pass failed: calendar=%s provider=%s stage=%s error=%s: %s",
            result.calendar_id,
            ctx.provider,
            ctx.stage,
            type(exc).__name__,
            exc,
        )

    async def _finish(self, ctx: _PassContext, started: float) -> None:
        result = ctx.result
        result.finished_at = self._clock()
        duration_ms = (time.monotonic() - started) * 1000
        provider = ctx.provider or "unknown"
        self._metrics.record_pass(provider, str(result.status), duration_ms)
        if result.status is not SyncStatus.FAILED:
            for kind in MutationKind:
                self._metrics.record_mutations(
                    provider, str(kind), sum(1 for m in ctx.applied if m.kind is kind)
                )
            self._metrics.record_conflicts(provider, len(result.conflicts))
        try:
            await self._store.save_sync_result(result)
        except Exception:
            logger.error(
                "Could not persist sync result %s for calendar %s",
                result.id,
                result.calendar_id,
                exc_info=True,
            )
        logger.info("Sync pass finished: %s", result.summary())

    async def _run_pass(self, ctx: _PassContext) -> None:
        result = ctx.result
        assert result.started_at is not None

        ctx.stage = "lookup"
        calendar = await self._store.get_calendar(result.calendar_id)
        ctx.calendar = calendar
        ctx.provider = calendar.provider
        if not calendar.sync_enabled:
            raise SyncDisabledError(calendar.id)
        client = self._client(calendar.provider)

        ctx.stage = "token"
        ctx.token = await self._tokens.get_valid_token(calendar.user_id, calendar.provider)

        ctx.stage = "fetch"
        external_events = await self._fetch_all(ctx, calendar, client)

        ctx.stage = "load"
        local_events = await self._store.list_events(calendar.id)
        open_conflicts = {c.event_id: c for c in await self._store.list_conflicts(calendar.id)}

        ctx.stage = "reconcile"
        plan = self._reconciler.reconcile(
            calendar,
            local_events,
            external_events,
            settled_at=result.started_at,
            open_conflicts=open_conflicts,
        )

        ctx.stage = "push"
        writes = [m for m in plan.local if ctx.direction.imports or m.kind in _BOOKKEEPING_KINDS]
        for push in plan.pushes:
            if ctx.direction.exports:
                written = await self._apply_push(ctx, calendar, client, push)
            else:
                written = _defer_push(push)
            if written is not None:
                writes.append(written)

        ctx.stage = "commit"
        failures = await self._store.apply_sync_batch(
            calendar.id,
            SyncBatch(
                last_synced_at=result.started_at,
                upserts=[m.event for m in writes],
                conflicts=plan.conflicts,
            ),
        )
        failed_ids = {f.event_id for f in failures}
        for failure in failures:
            logger.warning(
                "Local write failed: calendar=%s event=%s provider=%s error=%s",
                calendar.id,
                failure.event_id,
                calendar.provider,
                type(failure.error).__name__,
            )
            result.errors.append(
                SyncError.from_exception(
                    failure.error,
                    calendar_id=calendar.id,
                    operation="local_write",
                    provider=calendar.provider,
                    event_id=failure.event_id,
                )
            )

        ctx.applied = [m for m in writes if m.event.id not in failed_ids]
        result.processed = plan.processed + (len(plan.pushes) if ctx.direction.exports else 0)
        result.created = sum(1 for m in ctx.applied if m.kind in _CREATED_KINDS)
        result.updated = sum(1 for m in ctx.applied if m.kind in _UPDATED_KINDS)
        result.deleted = sum(1 for m in ctx.applied if m.kind in _DELETED_KINDS)
        result.conflicts = list(plan.conflicts)
        result.status = SyncStatus.PARTIAL if result.errors else SyncStatus.SUCCESS

    async def _fetch_all(
        self, ctx: _PassContext, calendar: Calendar, client: CalendarProvider
    ) -> list[ExternalEvent]:
        """Fetch every page of the remote delta; any page failure aborts the pass."""
        events: list[ExternalEvent] = []
        cursor: str | None = None
        pages = 0
        while True:
            page = await self._call_provider(
                ctx,
                calendar,
                "list_events_since",
                lambda token, cursor=cursor: client.list_events_since(
                    token=token,
                    calendar_id=calendar.provider_calendar_id,
                    since=calendar.last_synced_at,
                    page_cursor=cursor,
                ),
            )
            pages += 1
            events.extend(page.events)
            if not page.has_more:
                break
            if page.next_cursor == cursor:
                raise ProviderError(
                    provider=calendar.provider,
                    status_class=StatusClass.SERVER,
                    message="pagination cursor did not advance",
                )
            cursor = page.next_cursor
        logger.debug(
            "Fetched %d remote event(s) in %d page(s) for calendar %s",
            len(events),
            pages,
            calendar.id,
        )
        return events

    async def _call_provider(
        self,
        ctx: _PassContext,
        calendar: Calendar,
        operation: str,
        fn: Callable[[str], Awaitable[T]],
    ) -> T:
        """Call the provider through the resilience layer, refreshing once on AuthError."""
        token = ctx.token
        assert token is not None
        try:
            return await self._executor.call(calendar.provider, operation, lambda: fn(token))
        except AuthError:
            logger.info(
                "Provider rejected token; refreshing: calendar=%s provider=%s operation=%s",
                calendar.id,
                calendar.provider,
                operation,
            )
        fresh = await self._tokens.get_valid_token(
            calendar.user_id, calendar.provider, rejected_token=token
        )
        ctx.token = fresh
        return await self._executor.call(calendar.provider, operation, lambda: fn(fresh))

    async def _apply_push(
        self,
        ctx: _PassContext,
        calendar: Calendar,
        client: CalendarProvider,
        push: RemotePush,
    ) -> LocalMutation | None:
        """Send one local change to the provider; failures become per-event errors."""
        result = ctx.result
        assert result.started_at is not None
        event = push.event
        try:
            return await self._push(ctx, calendar, client, push, result.started_at)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Push failed: calendar=%s event=%s provider=%s kind=%s error=%s",
                calendar.id,
                event.id,
                calendar.provider,
                push.kind,
                type(exc).__name__,
            )
            result.errors.append(
                SyncError.from_exception(
                    exc,
                    calendar_id=calendar.id,
                    operation=str(push.kind),
                    provider=calendar.provider,
                    event_id=event.id,
                )
            )
        return _defer_push(push)

    async def _push(
        self,
        ctx: _PassContext,
        calendar: Calendar,
        client: CalendarProvider,
        push: RemotePush,
        settled_at: datetime,
    ) -> LocalMutation:
        event = push.event
        if push.kind is MutationKind.PUSH_DELETE:
            assert event.provider_event_id is not None
            provider_event_id = event.provider_event_id
            last_known = EventDraft.from_event(event)
            await self._call_provider(
                ctx,
                calendar,
                "delete_event",
                lambda token: client.delete_event(
                    token=token,
                    calendar_id=calendar.provider_calendar_id,
                    event_id=provider_event_id,
                    event=last_known,
                ),
            )
            return LocalMutation(
                push.kind,
                event.model_copy(update={"remote_deleted": True, "sync_pending": False}),
            )

        draft = EventDraft.from_event(event)
        if push.kind is MutationKind.PUSH_CREATE:
            stored = await self._call_provider(
                ctx,
                calendar,
                "create_event",
                lambda token: client.create_event(
                    token=token, calendar_id=calendar.provider_calendar_id, event=draft
                ),
            )
        else:
            assert event.provider_event_id is not None
            provider_event_id = event.provider_event_id
            stored = await self._call_provider(
                ctx,
                calendar,
                "update_event",
                lambda token: client.update_event(
                    token=token,
                    calendar_id=calendar.provider_calendar_id,
                    event_id=provider_event_id,
                    event=draft,
                    etag=push.expected_etag,
                ),
            )
        return LocalMutation(
            push.kind,
            event.model_copy(
                update={
                    "provider_event_id": stored.id,
                    "etag": stored.etag,
                    "last_modified": settled_at,
                    "sync_pending": False,
                }
            ),
        )

    # ------------------------------------------------------------------
    # Conflict resolution helpers
    # ------------------------------------------------------------------

    def _take_remote(
        self,
        calendar: Calendar,
        local: Event,
        external: ExternalEvent,
        settled_at: datetime,
    ) -> Event:
        if external.deleted:
            return local.model_copy(
                update={
                    "deleted": True,
                    "remote_deleted": True,
                    "etag": external.etag or local.etag,
                    "last_modified": settled_at,
                    "sync_pending": False,
                }
            )
        return event_from_external(
            external, calendar_id=calendar.id, settled_at=settled_at, base=local
        )

    async def _push_resolution(
        self,
        calendar: Calendar,
        local: Event,
        external: ExternalEvent,
        draft: EventDraft,
        settled_at: datetime,
        *,
        delete: bool = False,
    ) -> Event:
        client = self._client(calendar.provider)
        ctx = _PassContext(
            result=SyncResult(calendar_id=calendar.id),
            provider=calendar.provider,
            token=await self._tokens.get_valid_token(calendar.user_id, calendar.provider),
        )

        if delete:
            if not external.deleted:
                await self._call_provider(
                    ctx,
                    calendar,
                    "delete_event",
                    lambda token: client.delete_event(
                        token=token,
                        calendar_id=calendar.provider_calendar_id,
                        event_id=external.id,
                        event=EventDraft.from_event(external),
                    ),
                )
            return local.model_copy(
                update={"remote_deleted": True, "sync_pending": False, "last_modified": settled_at}
            )

        if external.deleted:
            # The provider copy is gone; recreate it from the chosen version.
            stored = await self._call_provider(
                ctx,
                calendar,
                "create_event",
                lambda token: client.create_event(
                    token=token, calendar_id=calendar.provider_calendar_id, event=draft
                ),
            )
        else:
            stored = await self._call_provider(
                ctx,
                calendar,
                "update_event",
                lambda token: client.update_event(
                    token=token,
                    calendar_id=calendar.provider_calendar_id,
                    event_id=external.id,
                    event=draft,
                    etag=external.etag,
                ),
            )
        return local.model_copy(
            update={
                **draft.model_dump(),
                "provider_event_id": stored.id,
                "etag": stored.etag,
                "last_modified": settled_at,
                "deleted": False,
                "remote_deleted": False,
                "sync_pending": False,
            }
        )
