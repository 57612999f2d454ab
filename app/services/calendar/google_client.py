"""
Google Calendar change feed client.

Reads the primary calendar through events.list with sync tokens so each call
returns one bounded page of changes plus the cursor to resume from.
"""

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import CalendarEvent
from app.models.domain.sync_domain import EntityType, RemotePage, SyncCursor
from app.services.infrastructure import google_http

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

# Calendar answers an expired or unknown syncToken with 410 Gone
CURSOR_INVALID_STATUSES = frozenset({410})


class GoogleCalendarService:
    """Pull-sync provider for calendar events."""

    entity_type = EntityType.CALENDAR

    def __init__(self, client: httpx.AsyncClient | None = None, calendar_id: str = CALENDAR_PRIMARY):
        self._client = client
        self.calendar_id = calendar_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = google_http.create_client()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_auth_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def fetch_changes(
        self, access_token: str, cursor: SyncCursor, initial: bool, page_size: int
    ) -> RemotePage:
        """
        Fetch one page of changed events.

        An initial listing ignores any stored sync token; the last page of a
        listing yields `nextSyncToken`, which becomes the incremental start.

        Raises:
            ProviderError: auth_expired, cursor_invalid or provider_unavailable
        """
        params: dict = {
            "maxResults": page_size,
            "singleEvents": "true",
            "showDeleted": "true",
        }
        if cursor.sync_token and not initial:
            params["syncToken"] = cursor.sync_token
        if cursor.page_token:
            params["pageToken"] = cursor.page_token

        url = f"{CALENDAR_API_BASE_URL}/calendars/{self.calendar_id}/events"
        response = await google_http.request_with_retry(
            self._get_client(),
            "GET",
            url,
            service="google_calendar",
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        if not response.is_success:
            raise google_http.classify_error(
                response, "google_calendar", CURSOR_INVALID_STATUSES
            )

        data = google_http.parse_json(response, "google_calendar")
        records = [
            CalendarEvent(item, calendar_id=self.calendar_id).to_record()
            for item in data.get("items", [])
            if item.get("id")
        ]

        next_page = data.get("nextPageToken")
        if next_page:
            keep_sync = None if initial else cursor.sync_token
            next_cursor = SyncCursor(sync_token=keep_sync, page_token=next_page)
        else:
            next_cursor = SyncCursor(sync_token=data.get("nextSyncToken") or cursor.sync_token)

        logger.info(
            "Calendar changes fetched",
            calendar_id=self.calendar_id,
            initial=initial,
            record_count=len(records),
            has_more=bool(next_page),
        )
        return RemotePage(records=records, next_cursor=next_cursor, has_more=bool(next_page))


google_calendar_service = GoogleCalendarService()
