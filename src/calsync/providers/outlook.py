"""Microsoft Graph (Outlook calendar) adapter."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
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

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
DEFAULT_TENANT = "common"
OUTLOOK_SCOPES = "offline_access Calendars.ReadWrite"
OUTLOOK_EVENTS_PAGE_SIZE = 50
PROVIDER_NAME = "outlook"

# Graph returns naive local times unless this preference pins them to UTC.
_UTC_PREFERENCE = {"Prefer": 'outlook.timezone="UTC"'}


def _parse_graph_datetime(payload: Any, *, event_id: str) -> datetime:
    if not isinstance(payload, dict):
        raise ValueError(f"Outlook event '{event_id}' is missing start/end payloads")
    value = payload.get("dateTime")
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Outlook event '{event_id}' has no dateTime value")
    parsed = parse_rfc3339(value)
    zone = payload.get("timeZone")
    if isinstance(zone, str) and zone.strip() and zone.strip().upper() != "UTC":
        logger.debug("Outlook event '%s' reported timeZone=%s; treating as UTC", event_id, zone)
    return parsed.astimezone(UTC)


def graph_event_to_external(payload: dict[str, Any]) -> ExternalEvent:
    """Translate a Microsoft Graph event resource into an :class:`ExternalEvent`."""
    event_id = normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Outlook event payload is missing a non-empty id")
    modified = parse_rfc3339_optional(payload.get("lastModifiedDateTime"))
    etag = normalize_optional_text(payload.get("@odata.etag")) or normalize_optional_text(
        payload.get("changeKey")
    )

    if "@removed" in payload or payload.get("isCancelled") is True:
        anchor = modified or datetime.now(UTC)
        return ExternalEvent(
            id=event_id,
            provider=PROVIDER_NAME,
            title=normalize_optional_text(payload.get("subject")) or "",
            start=anchor,
            end=anchor,
            last_modified=modified,
            etag=etag,
            deleted=True,
        )

    body = payload.get("body")
    description = None
    if isinstance(body, dict):
        description = normalize_optional_text(body.get("content"))
    location = payload.get("location")
    location_name = None
    if isinstance(location, dict):
        location_name = normalize_optional_text(location.get("displayName"))

    return ExternalEvent(
        id=event_id,
        provider=PROVIDER_NAME,
        title=normalize_optional_text(payload.get("subject")) or "",
        description=description,
        start=_parse_graph_datetime(payload.get("start"), event_id=event_id),
        end=_parse_graph_datetime(payload.get("end"), event_id=event_id),
        all_day=bool(payload.get("isAllDay", False)),
        location=location_name,
        last_modified=modified,
        etag=etag,
    )


def _graph_datetime(value: datetime, *, all_day: bool) -> dict[str, str]:
    instant = value.astimezone(UTC)
    if all_day:
        instant = instant.replace(hour=0, minute=0, second=0, microsecond=0)
    return {"dateTime": rfc3339(instant).removesuffix("Z"), "timeZone": "UTC"}


def build_graph_event_body(event: EventDraft) -> dict[str, Any]:
    """Translate an :class:`EventDraft` into a Graph event body."""
    body: dict[str, Any] = {
        "subject": event.title,
        "isAllDay": event.all_day,
        "start": _graph_datetime(event.start, all_day=event.all_day),
        "end": _graph_datetime(event.end, all_day=event.all_day),
    }
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    return body


class OutlookCalendarProvider(CalendarProvider):
    """Microsoft Graph calendar adapter; the access token is supplied per call."""

    def __init__(
        self,
        oauth: OAuthClientConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        tenant: str = DEFAULT_TENANT,
    ) -> None:
        self._oauth = oauth
        self._token_url = MICROSOFT_TOKEN_URL_TEMPLATE.format(tenant=quote(tenant, safe=""))
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    def _url(self, path: str) -> str:
        return f"{GRAPH_API_BASE_URL}{path}"

    async def authenticate(self, *, code: str, redirect_uri: str | None = None) -> TokenGrant:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._oauth.client_id,
            "client_secret": self._oauth.client_secret,
            "scope": OUTLOOK_SCOPES,
        }
        redirect = redirect_uri or self._oauth.redirect_uri
        if redirect:
            form["redirect_uri"] = redirect
        return await exchange_token(self._http_client, self._token_url, provider=self.name, form=form)

    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        return await exchange_token(
            self._http_client,
            self._token_url,
            provider=self.name,
            form={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._oauth.client_id,
                "client_secret": self._oauth.client_secret,
                "scope": OUTLOOK_SCOPES,
            },
        )

    def _checked_next_link(self, link: Any) -> str | None:
        """Accept a continuation link only when it points back at Graph."""
        link = normalize_optional_text(link)
        if link is None:
            return None
        if not link.startswith(f"{GRAPH_API_BASE_URL}/"):
            raise ProviderError(
                provider=self.name,
                status_class=StatusClass.CLIENT,
                message="continuation link does not point at the Graph API",
            )
        return link

    async def list_calendars(self, *, token: str) -> list[ExternalCalendar]:
        calendars: list[ExternalCalendar] = []
        url: str | None = self._url("/me/calendars")
        while url is not None:
            response = await send_request(
                self._http_client, "GET", url, provider=self.name, token=token
            )
            payload = json_object(response, provider=self.name)
            for item in payload.get("value") or []:
                if not isinstance(item, dict) or not normalize_optional_text(item.get("id")):
                    continue
                calendars.append(
                    ExternalCalendar(
                        id=item["id"].strip(),
                        provider=self.name,
                        name=normalize_optional_text(item.get("name")),
                        primary=bool(item.get("isDefaultCalendar", False)),
                    )
                )
            url = self._checked_next_link(payload.get("@odata.nextLink"))
        return calendars

    async def list_events_since(
        self,
        *,
        token: str,
        calendar_id: str,
        since: datetime | None,
        page_cursor: str | None = None,
    ) -> EventPage:
        if page_cursor:
            url = self._checked_next_link(page_cursor)
            params = None
        else:
            url = self._url(f"/me/calendars/{quote(calendar_id, safe='')}/events")
            params = {"$top": OUTLOOK_EVENTS_PAGE_SIZE}
            if since is not None:
                params["$filter"] = f"lastModifiedDateTime ge {rfc3339(since)}"
        response = await send_request(
            self._http_client,
            "GET",
            url,
            provider=self.name,
            token=token,
            params=params,
            headers=_UTC_PREFERENCE,
        )
        payload = json_object(response, provider=self.name)
        events: list[ExternalEvent] = []
        for item in payload.get("value") or []:
            if not isinstance(item, dict):
                continue
            try:
                events.append(graph_event_to_external(item))
            except ValueError:
                logger.warning(
                    "Skipping malformed Outlook event in calendar '%s': id=%s",
                    calendar_id,
                    item.get("id"),
                    exc_info=True,
                )
        return EventPage(
            events=events, next_cursor=self._checked_next_link(payload.get("@odata.nextLink"))
        )

    async def create_event(
        self, *, token: str, calendar_id: str, event: EventDraft
    ) -> ExternalEvent:
        response = await send_request(
            self._http_client,
            "POST",
            self._url(f"/me/calendars/{quote(calendar_id, safe='')}/events"),
            provider=self.name,
            token=token,
            json_body=build_graph_event_body(event),
            headers=_UTC_PREFERENCE,
        )
        return graph_event_to_external(json_object(response, provider=self.name))

    async def update_event(
        self,
        *,
        token: str,
        calendar_id: str,
        event_id: str,
        event: EventDraft,
        etag: str | None = None,
    ) -> ExternalEvent:
        headers = dict(_UTC_PREFERENCE)
        if etag:
            headers["If-Match"] = etag
        response = await send_request(
            self._http_client,
            "PATCH",
            self._url(f"/me/events/{quote(event_id, safe='')}"),
            provider=self.name,
            token=token,
            json_body=build_graph_event_body(event),
            headers=headers,
        )
        return graph_event_to_external(json_object(response, provider=self.name))

    async def delete_event(
        self, *, token: str, calendar_id: str, event_id: str, event: EventDraft
    ) -> ExternalEvent:
        response = await send_request(
            self._http_client,
            "DELETE",
            self._url(f"/me/events/{quote(event_id, safe='')}"),
            provider=self.name,
            token=token,
            allow_status=frozenset({404}),
        )
        if response.status_code == 404:
            logger.info(
                "Outlook event '%s' in calendar '%s' already deleted", event_id, calendar_id
            )
        return deleted_event(response, provider=self.name, event_id=event_id, event=event)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
