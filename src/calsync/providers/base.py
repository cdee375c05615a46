"""Provider client contract and shared HTTP helpers.

Adapters translate the generic calendar operations into one provider's
request/response shapes.  They hold no state beyond an HTTP client: the
access token is passed into every call, and every non-2xx response is mapped
to the error taxonomy here so the resilience layer can decide retryability
without provider-specific knowledge.
"""

from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from calsync.errors import AuthError, ProviderError, StatusClass
from calsync.models import EventDraft, EventPage, ExternalCalendar, ExternalEvent, TokenGrant

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_EXPIRES_IN_SECONDS = 3600
_ERROR_MESSAGE_LIMIT = 200
# Graph emits 7 fractional digits; datetime accepts at most 6.
_LONG_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class OAuthClientConfig:
    """OAuth application registration for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str | None = None

    def __repr__(self) -> str:
        return f"OAuthClientConfig(client_id={self.client_id!r}, client_secret=***)"


class CalendarProvider(abc.ABC):
    """Abstract interface implemented by every calendar provider adapter."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier, e.g. ``google`` or ``outlook``."""

    @abc.abstractmethod
    async def authenticate(self, *, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an interactive authorization code for tokens."""

    @abc.abstractmethod
    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""

    @abc.abstractmethod
    async def list_calendars(self, *, token: str) -> list[ExternalCalendar]:
        """List calendars visible to the token's account."""

    @abc.abstractmethod
    async def list_events_since(
        self,
        *,
        token: str,
        calendar_id: str,
        since: datetime | None,
        page_cursor: str | None = None,
    ) -> EventPage:
        """Return one page of events modified after *since* (all events when None)."""

    @abc.abstractmethod
    async def create_event(
        self, *, token: str, calendar_id: str, event: EventDraft
    ) -> ExternalEvent:
        """Create an event and return the provider's stored copy."""

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        token: str,
        calendar_id: str,
        event_id: str,
        event: EventDraft,
        etag: str | None = None,
    ) -> ExternalEvent:
        """Replace an event's writable fields and return the provider's stored copy."""

    @abc.abstractmethod
    async def delete_event(
        self, *, token: str, calendar_id: str, event_id: str, event: EventDraft
    ) -> ExternalEvent:
        """Delete an event and return its tombstone.  An already-missing event is not an error.

        Delete responses carry no body, so the tombstone repeats *event*, the
        last known copy of the deleted event.
        """

    async def shutdown(self) -> None:
        """Release provider resources (HTTP clients, etc.)."""
        return None


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error description from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_credential_values(" ".join(message.split())[:_ERROR_MESSAGE_LIMIT])
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            text = error_payload
            if isinstance(description, str) and description.strip():
                text = f"{error_payload}: {description}"
            return redact_credential_values(" ".join(text.split())[:_ERROR_MESSAGE_LIMIT])

    raw_text = response.text.strip()
    if raw_text:
        return redact_credential_values(" ".join(raw_text.split())[:_ERROR_MESSAGE_LIMIT])
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return re.sub(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer [REDACTED]", redacted)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if value is None or not value.strip():
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def deleted_event(
    response: httpx.Response, *, provider: str, event_id: str, event: EventDraft
) -> ExternalEvent:
    """Tombstone for a deleted event, stamped with the response Date when present."""
    deleted_at: datetime | None = None
    date = response.headers.get("Date")
    if date:
        try:
            deleted_at = parsedate_to_datetime(date)
        except (TypeError, ValueError):
            deleted_at = None
    return ExternalEvent(
        id=event_id,
        provider=provider,
        last_modified=deleted_at or datetime.now(UTC),
        deleted=True,
        **event.model_dump(),
    )


def raise_for_response(response: httpx.Response, *, provider: str) -> None:
    """Raise the taxonomy error matching a non-2xx response."""
    if response.is_success:
        return
    message = safe_error_message(response)
    if response.status_code == 401:
        raise AuthError(message, provider=provider)
    raise ProviderError.from_status(
        provider=provider,
        status_code=response.status_code,
        message=message,
        retry_after=parse_retry_after(response.headers.get("Retry-After")),
    )


def json_object(response: httpx.Response, *, provider: str) -> dict[str, Any]:
    """Decode a successful response body that must be a JSON object."""
    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(
            provider=provider,
            status_class=StatusClass.SERVER,
            status_code=response.status_code,
            message="invalid JSON in successful response",
        ) from exc
    if not isinstance(payload, dict):
        raise ProviderError(
            provider=provider,
            status_class=StatusClass.SERVER,
            status_code=response.status_code,
            message="unexpected JSON payload shape",
        )
    return payload


async def send_request(
    http_client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    token: str | None = None,
    params: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
    data: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    allow_status: frozenset[int] = frozenset(),
) -> httpx.Response:
    """Send one request, mapping transport failures and error statuses to the taxonomy."""
    request_headers: dict[str, str] = {"Accept": "application/json"}
    if token is not None:
        request_headers["Authorization"] = f"Bearer {token}"
    if headers:
        request_headers.update(headers)
    try:
        response = await http_client.request(
            method,
            url,
            params=params,
            json=json_body,
            data=data,
            headers=request_headers,
        )
    except httpx.TimeoutException as exc:
        raise ProviderError(
            provider=provider,
            status_class=StatusClass.SERVER,
            message=f"request timed out: {type(exc).__name__}",
        ) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(
            provider=provider,
            status_class=StatusClass.SERVER,
            message=redact_credential_values(f"transport error: {exc}"),
        ) from exc
    if response.status_code in allow_status:
        return response
    raise_for_response(response, provider=provider)
    return response


async def exchange_token(
    http_client: httpx.AsyncClient,
    token_url: str,
    *,
    provider: str,
    form: dict[str, str],
) -> TokenGrant:
    """POST an OAuth token request and parse the grant.

    ``invalid_grant``-style rejections (HTTP 400/401) become :class:`AuthError`
    so the token manager can require re-authentication.
    """
    response = await send_request(
        http_client,
        "POST",
        token_url,
        provider=provider,
        data=form,
        allow_status=frozenset({400}),
    )
    if response.status_code == 400:
        raise AuthError(safe_error_message(response), provider=provider)
    payload = json_object(response, provider=provider)
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise AuthError("token response missing access_token", provider=provider)
    refresh_token = payload.get("refresh_token")
    return TokenGrant(
        access_token=access_token.strip(),
        refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
        expires_in=coerce_expires_in_seconds(payload.get("expires_in")),
    )


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _LONG_FRACTION_RE.sub(r"\1", normalized)
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def parse_rfc3339_optional(value: Any) -> datetime | None:
    """Parse an optional RFC 3339 string, returning None when absent or malformed."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None
