"""Error taxonomy for the calendar sync engine.

Every error raised by provider adapters, the token manager, the resilience
layer and the stores derives from :class:`CalendarSyncError` so callers can
catch engine failures in one place while still dispatching on the concrete
class.
"""

from __future__ import annotations

import enum
from datetime import datetime


class StatusClass(enum.StrEnum):
    """HTTP-equivalent status class carried by every provider error."""

    CLIENT = "client"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"


class CalendarSyncError(RuntimeError):
    """Base error raised by the calendar sync engine."""


class AuthError(CalendarSyncError):
    """Credentials were rejected by the provider (invalid, expired or revoked)."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        self.provider = provider
        self.message = message
        super().__init__(message if provider is None else f"{provider}: {message}")


class ProviderError(CalendarSyncError):
    """A provider request failed with a classified status."""

    def __init__(
        self,
        *,
        provider: str,
        status_class: StatusClass,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.provider = provider
        self.status_class = status_class
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after
        code = status_code if status_code is not None else "-"
        super().__init__(f"{provider} request failed ({status_class}, {code}): {message}")

    @classmethod
    def from_status(
        cls,
        *,
        provider: str,
        status_code: int,
        message: str,
        retry_after: float | None = None,
    ) -> ProviderError:
        """Build an error, deriving the status class from an HTTP status code."""
        return cls(
            provider=provider,
            status_class=classify_status(status_code),
            message=message,
            status_code=status_code,
            retry_after=retry_after,
        )

    @property
    def retryable(self) -> bool:
        return self.status_class in (StatusClass.SERVER, StatusClass.RATE_LIMITED)


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its per-attempt timeout."""

    def __init__(self, *, provider: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            provider=provider,
            status_class=StatusClass.SERVER,
            message=f"timed out after {timeout:g}s",
        )


class NotFoundError(CalendarSyncError):
    """A calendar, event, conflict or credential does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class CircuitOpenError(CalendarSyncError):
    """The provider's circuit breaker is open; the call was not attempted."""

    def __init__(self, name: str, next_attempt: datetime | None = None) -> None:
        self.name = name
        self.next_attempt = next_attempt
        when = next_attempt.isoformat() if next_attempt is not None else "after current trial"
        super().__init__(f"Circuit for '{name}' is open; next attempt {when}")


class ReauthenticationRequired(CalendarSyncError):
    """The stored credential can no longer be refreshed; interactive auth is needed."""

    def __init__(self, user_id: str, provider: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.provider = provider
        self.reason = reason
        msg = f"Re-authentication required for user '{user_id}' on provider '{provider}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class NoCredentialError(ReauthenticationRequired):
    """No credential has ever been stored for (user, provider)."""

    def __init__(self, user_id: str, provider: str) -> None:
        super().__init__(user_id, provider, "no credential stored")


class ProviderNotConfiguredError(CalendarSyncError):
    """No provider client is registered under the requested identifier."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Provider not configured: {provider!r}")


class SyncInProgressError(CalendarSyncError):
    """A sync pass for the calendar is already running."""

    def __init__(self, calendar_id: str) -> None:
        self.calendar_id = calendar_id
        super().__init__(f"Sync already in progress for calendar {calendar_id}")


class ConflictAlreadyResolvedError(CalendarSyncError):
    """The conflict record has already been resolved."""

    def __init__(self, conflict_id: str, resolution: str) -> None:
        self.conflict_id = conflict_id
        self.resolution = resolution
        super().__init__(f"Conflict {conflict_id} already resolved ({resolution})")


class StoreWriteError(CalendarSyncError):
    """A single record could not be written by the calendar store."""

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        self.event_id = event_id
        super().__init__(message)


class SyncDisabledError(CalendarSyncError):
    """Sync is disabled for the calendar."""

    def __init__(self, calendar_id: str) -> None:
        self.calendar_id = calendar_id
        super().__init__(f"Sync is disabled for calendar {calendar_id}")


class SyncCancelledError(CalendarSyncError):
    """The sync pass was cancelled before it finished."""

    def __init__(self) -> None:
        super().__init__("cancelled")


class SyncTimeoutError(CalendarSyncError):
    """The sync pass exceeded its overall time budget."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"sync pass timed out after {timeout:g}s")


def classify_status(status_code: int) -> StatusClass:
    """Map an HTTP status code to a :class:`StatusClass`."""
    if status_code == 429:
        return StatusClass.RATE_LIMITED
    if status_code >= 500:
        return StatusClass.SERVER
    return StatusClass.CLIENT
