"""Google Calendar (API v3) adapter."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote

import httpx

from calsync.errors import ProviderError, StatusClass
from calsync.models import EventDraft, EventPage, ExternalCalendar, ExternalEvent, TokenGrant
from calsync.providers.base import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    CalendarProvider,
    OAuthClientConfig,
    deleted_event,
    exchange_token,
    json_object,
    normalize_optional_text,
    parse_rfc3339,
    parse_rfc3339_optional,
    rfc3339,
    send_request,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_EVENTS_PAGE_SIZE = 250
PROVIDER_NAME = "google"


def _parse_boundary(payload: Any, *, event_id: str) -> tuple[datetime, bool]:
    """Return (instant, is_date_only) for a Google start/end payload."""
    if not isinstance(payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        parsed = date.fromisoformat(date_value.strip())
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), True
    raise ValueError(f"Google Calendar event '{event_id}' has no dateTime or date value")


def google_event_to_external(payload: dict[str, Any]) -> ExternalEvent:
    """Translate a Google event resource into an :class:`ExternalEvent`."""
    event_id = normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    updated = parse_rfc3339_optional(payload.get("updated"))
    etag = normalize_optional_text(payload.get("etag"))

    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        # Cancelled items in an incremental listing may omit start/end.
        anchor = updated or datetime.now(UTC)
        return ExternalEvent(
            id=event_id,
            provider=PROVIDER_NAME,
            title=normalize_optional_text(payload.get("summary")) or "",
            start=anchor,
            end=anchor,
            last_modified=updated,
            etag=etag,
            deleted=True,
        )

    start, start_is_date = _parse_boundary(payload.get("start"), event_id=event_id)
    end, end_is_date = _parse_boundary(payload.get("end"), event_id=event_id)
    return ExternalEvent(
        id=event_id,
        provider=PROVIDER_NAME,
        title=normalize_optional_text(payload.get("summary")) or "",
        description=normalize_optional_text(payload.get("description")),
        start=start,
        end=end,
        all_day=start_is_date and end_is_date,
        location=normalize_optional_text(payload.get("location")),
        last_modified=updated,
        etag=etag,
    )


def build_google_event_body(event: EventDraft) -> dict[str, Any]:
    """Translate an :class:`EventDraft` into a Google event resource body."""
    body: dict[str, Any] = {"summary": event.title}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.all_day:
        body["start"] = {"date": event.start.astimezone(UTC).date().isoformat()}
        body["end"] = {"date": event.end.astimezone(UTC).date().isoformat()}
    else:
        body["start"] = {"dateTime": rfc3339(event.start)}
        body["end"] = {"dateTime": rfc3339(event.end)}
    return body


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar adapter; the access token is supplied per call."""

    def __init__(
        self,
        oauth: OAuthClientConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._oauth = oauth
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    def _url(self, path: str) -> str:
        return f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

    async def authenticate(self, *, code: str, redirect_uri: str | None = None) -> TokenGrant:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._oauth.client_id,
            "client_secret": self._oauth.client_secret,
        }
        redirect = redirect_uri or self._oauth.redirect_uri
        if redirect:
            form["redirect_uri"] = redirect
        return await exchange_token(
            self._http_client, GOOGLE_OAUTH_TOKEN_URL, provider=self.name, form=form
        )

    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        return await exchange_token(
            self._http_client,
            GOOGLE_OAUTH_TOKEN_URL,
            provider=self.name,
            form={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._oauth.client_id,
                "client_secret": self._oauth.client_secret,
            },
        )

    async def list_calendars(self, *, token: str) -> list[ExternalCalendar]:
        calendars: list[ExternalCalendar] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": 250}
            if page_token:
                params["pageToken"] = page_token
            response = await send_request(
                self._http_client,
                "GET",
                self._url("/users/me/calendarList"),
                provider=self.name,
                token=token,
                params=params,
            )
            payload = json_object(response, provider=self.name)
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or not normalize_optional_text(item.get("id")):
                    continue
                calendars.append(
                    ExternalCalendar(
                        id=item["id"].strip(),
                        provider=self.name,
                        name=normalize_optional_text(item.get("summary")),
                        primary=bool(item.get("primary", False)),
                        timezone=normalize_optional_text(item.get("timeZone")),
                    )
                )
            page_token = normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return calendars

    async def list_events_since(
        self,
        *,
        token: str,
        calendar_id: str,
        since: datetime | None,
        page_cursor: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": GOOGLE_EVENTS_PAGE_SIZE,
        }
        if since is not None:
            params["updatedMin"] = rfc3339(since)
        if page_cursor:
            params["pageToken"] = page_cursor
        response = await send_request(
            self._http_client,
            "GET",
            self._url(f"/calendars/{quote(calendar_id, safe='')}/events"),
            provider=self.name,
            token=token,
            params=params,
        )
        payload = json_object(response, provider=self.name)
        items = payload.get("items") or []
        if not isinstance(items, list):
            raise ProviderError(
                provider=self.name,
                status_class=StatusClass.SERVER,
                status_code=response.status_code,
                message="events listing has a non-list 'items' field",
            )
        events: list[ExternalEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                events.append(google_event_to_external(item))
            except ValueError:
                logger.warning(
                    "Skipping malformed Google event in calendar '%s': id=%s",
                    calendar_id,
                    item.get("id"),
                    exc_info=True,
                )
        return EventPage(events=events, next_cursor=payload.get("nextPageToken"))

    async def create_event(
        self, *, token: str, calendar_id: str, event: EventDraft
    ) -> ExternalEvent:
        response = await send_request(
            self._http_client,
            "POST",
            self._url(f"/calendars/{quote(calendar_id, safe='')}/events"),
            provider=self.name,
            token=token,
            json_body=build_google_event_body(event),
        )
        return google_event_to_external(json_object(response, provider=self.name))

    async def update_event(
        self,
        *,
        token: str,
        calendar_id: str,
        event_id: str,
        event: EventDraft,
        etag: str | None = None,
    ) -> ExternalEvent:
        headers = {"If-Match": etag} if etag else None
        response = await send_request(
            self._http_client,
            "PUT",
            self._url(
                f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
            ),
            provider=self.name,
            token=token,
            json_body=build_google_event_body(event),
            headers=headers,
        )
        return google_event_to_external(json_object(response, provider=self.name))

    async def delete_event(
        self, *, token: str, calendar_id: str, event_id: str, event: EventDraft
    ) -> ExternalEvent:
        response = await send_request(
            self._http_client,
            "DELETE",
            self._url(
                f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
            ),
            provider=self.name,
            token=token,
            allow_status=frozenset({404, 410}),
        )
        if response.status_code in (404, 410):
            logger.info(
                "Google event '%s' in calendar '%s' already deleted (status=%d)",
                event_id,
                calendar_id,
                response.status_code,
            )
        return deleted_event(response, provider=self.name, event_id=event_id, event=event)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
