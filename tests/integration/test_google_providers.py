import re
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from app.models.domain.errors import ErrorKind, ProviderError, ReauthRequiredError
from app.models.domain.sync_domain import SyncCursor
from app.services.calendar.google_client import GoogleCalendarService
from app.services.google_gmail_service import GoogleGmailService
from app.services.google_oauth_service import GOOGLE_TOKEN_URL, GoogleOAuthService

GMAIL = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_EVENTS = re.compile(r"https://www\.googleapis\.com/calendar/v3/calendars/primary/events.*")


def gmail_url(path: str) -> re.Pattern:
    return re.compile(re.escape(f"{GMAIL}/{path}") + r"(\?.*)?$")


def message(message_id, history_id, subject="Hello"):
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "historyId": history_id,
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "preview",
        "internalDate": "1767225600000",
        "payload": {
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "Ann Lee <ann@example.com>"},
                {"name": "To", "value": "me@example.com, Bob <bob@example.com>"},
            ]
        },
    }


@pytest.fixture
def no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("app.services.infrastructure.google_http.asyncio.sleep", sleep)
    return sleep


@pytest_asyncio.fixture
async def gmail():
    service = GoogleGmailService(client=httpx.AsyncClient())
    yield service
    await service.close()


@pytest_asyncio.fixture
async def calendar():
    service = GoogleCalendarService(client=httpx.AsyncClient())
    yield service
    await service.close()


# ----------------------------------------------------------------------
# Gmail
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_gmail_initial_page_pins_history_id(httpx_mock, gmail):
    httpx_mock.add_response(url=gmail_url("profile"), json={"historyId": "500"})
    httpx_mock.add_response(
        url=gmail_url("messages"), json={"messages": [{"id": "m1"}], "nextPageToken": "p2"}
    )
    httpx_mock.add_response(url=gmail_url("messages/m1"), json=message("m1", "480", "Hi"))

    page = await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    (record,) = page.records
    assert record.remote_id == "m1"
    assert record.revision == "480"
    assert record.fields["subject"] == "Hi"
    assert record.fields["from_address"] == "ann@example.com"
    assert record.fields["to_addresses"] == ["me@example.com", "bob@example.com"]
    assert record.fields["is_read"] is False
    assert page.next_cursor == SyncCursor(sync_token="500", page_token="p2")
    assert page.has_more

    metadata_request = httpx_mock.get_requests()[-1]
    assert metadata_request.url.params["format"] == "metadata"
    assert metadata_request.headers["Authorization"] == "Bearer token"


@pytest.mark.asyncio
async def test_gmail_listing_continuation_keeps_pinned_id(httpx_mock, gmail):
    httpx_mock.add_response(url=gmail_url("messages"), json={"messages": []})

    page = await gmail.fetch_changes(
        "token", SyncCursor(sync_token="500", page_token="p2"), initial=True, page_size=10
    )

    assert page.next_cursor == SyncCursor(sync_token="500")
    assert not page.has_more
    assert httpx_mock.get_requests()[0].url.params["pageToken"] == "p2"


@pytest.mark.asyncio
async def test_gmail_history_walk_reports_adds_and_deletes(httpx_mock, gmail):
    httpx_mock.add_response(
        url=gmail_url("history"),
        json={
            "historyId": "610",
            "history": [
                {"messagesAdded": [{"message": {"id": "m2"}}]},
                {"messagesDeleted": [{"message": {"id": "m3"}}]},
            ],
        },
    )
    httpx_mock.add_response(url=gmail_url("messages/m2"), json=message("m2", "605"))

    page = await gmail.fetch_changes("token", SyncCursor(sync_token="500"), initial=False, page_size=10)

    added, deleted = page.records
    assert added.remote_id == "m2" and not added.deleted
    assert deleted.remote_id == "m3" and deleted.deleted
    assert deleted.revision == "610"
    assert page.next_cursor == SyncCursor(sync_token="610")
    assert httpx_mock.get_requests()[0].url.params["startHistoryId"] == "500"


@pytest.mark.asyncio
async def test_gmail_message_gone_is_a_deletion(httpx_mock, gmail):
    httpx_mock.add_response(
        url=gmail_url("history"),
        json={"historyId": "700", "history": [{"messagesAdded": [{"message": {"id": "gone"}}]}]},
    )
    httpx_mock.add_response(url=gmail_url("messages/gone"), status_code=404, json={"error": {"code": 404}})

    page = await gmail.fetch_changes("token", SyncCursor(sync_token="650"), initial=False, page_size=10)

    assert page.records[0].deleted


@pytest.mark.asyncio
async def test_gmail_expired_history_id_is_cursor_invalid(httpx_mock, gmail):
    httpx_mock.add_response(url=gmail_url("history"), status_code=404, json={"error": {"code": 404}})

    with pytest.raises(ProviderError) as exc:
        await gmail.fetch_changes("token", SyncCursor(sync_token="1"), initial=False, page_size=10)

    assert exc.value.kind == ErrorKind.CURSOR_INVALID


@pytest.mark.asyncio
async def test_gmail_unauthorized_is_auth_expired(httpx_mock, gmail):
    httpx_mock.add_response(
        url=gmail_url("profile"), status_code=401, json={"error": {"code": 401, "message": "Invalid Credentials"}}
    )

    with pytest.raises(ProviderError) as exc:
        await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    assert exc.value.kind == ErrorKind.AUTH_EXPIRED
    assert exc.value.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("reason", "kind"),
    [("rateLimitExceeded", ErrorKind.PROVIDER_UNAVAILABLE), ("insufficientPermissions", ErrorKind.AUTH_EXPIRED)],
)
async def test_gmail_forbidden_depends_on_reason(httpx_mock, gmail, reason, kind):
    httpx_mock.add_response(
        url=gmail_url("profile"),
        status_code=403,
        json={"error": {"code": 403, "errors": [{"reason": reason}]}},
    )

    with pytest.raises(ProviderError) as exc:
        await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    assert exc.value.kind == kind


@pytest.mark.asyncio
async def test_transient_status_is_retried(httpx_mock, gmail, no_sleep):
    httpx_mock.add_response(url=gmail_url("profile"), status_code=503)
    httpx_mock.add_response(url=gmail_url("profile"), json={"historyId": "9"})
    httpx_mock.add_response(url=gmail_url("messages"), json={})

    page = await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    assert page.next_cursor == SyncCursor(sync_token="9")
    no_sleep.assert_awaited_once_with(2)


@pytest.mark.asyncio
async def test_persistent_outage_is_provider_unavailable(httpx_mock, gmail, no_sleep):
    for _ in range(3):
        httpx_mock.add_response(url=gmail_url("profile"), status_code=503)

    with pytest.raises(ProviderError) as exc:
        await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert [call.args[0] for call in no_sleep.await_args_list] == [2, 4]


@pytest.mark.asyncio
async def test_network_errors_become_provider_unavailable(httpx_mock, gmail, no_sleep):
    for _ in range(3):
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=gmail_url("profile"))

    with pytest.raises(ProviderError) as exc:
        await gmail.fetch_changes("token", SyncCursor(), initial=True, page_size=10)

    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE


# ----------------------------------------------------------------------
# Calendar
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_calendar_initial_page_maps_events_and_cancellations(httpx_mock, calendar):
    httpx_mock.add_response(
        url=CALENDAR_EVENTS,
        json={
            "items": [
                {
                    "id": "e1",
                    "status": "confirmed",
                    "summary": "Standup",
                    "updated": "2026-01-02T09:00:00.000Z",
                    "start": {"dateTime": "2026-01-05T09:00:00Z"},
                    "end": {"dateTime": "2026-01-05T09:15:00Z"},
                    "attendees": [{"email": "ann@example.com", "responseStatus": "accepted"}],
                },
                {"id": "e2", "status": "cancelled", "updated": "2026-01-03T10:00:00.000Z"},
            ],
            "nextPageToken": "page-2",
        },
    )

    page = await calendar.fetch_changes("token", SyncCursor(sync_token="old"), initial=True, page_size=50)

    live, cancelled = page.records
    assert live.fields["summary"] == "Standup"
    assert live.revision == "2026-01-02T09:00:00.000Z"
    assert live.fields["attendees"][0]["response_status"] == "accepted"
    assert cancelled.deleted
    assert page.next_cursor == SyncCursor(page_token="page-2")
    assert "syncToken" not in httpx_mock.get_requests()[0].url.params


@pytest.mark.asyncio
async def test_calendar_incremental_sends_sync_token(httpx_mock, calendar):
    httpx_mock.add_response(url=CALENDAR_EVENTS, json={"items": [], "nextSyncToken": "sync-2"})

    page = await calendar.fetch_changes("token", SyncCursor(sync_token="sync-1"), initial=False, page_size=50)

    params = httpx_mock.get_requests()[0].url.params
    assert params["syncToken"] == "sync-1"
    assert params["showDeleted"] == "true"
    assert page.next_cursor == SyncCursor(sync_token="sync-2")
    assert not page.has_more


@pytest.mark.asyncio
async def test_calendar_gone_sync_token_is_cursor_invalid(httpx_mock, calendar):
    httpx_mock.add_response(url=CALENDAR_EVENTS, status_code=410, json={"error": {"code": 410}})

    with pytest.raises(ProviderError) as exc:
        await calendar.fetch_changes("token", SyncCursor(sync_token="stale"), initial=False, page_size=50)

    assert exc.value.kind == ErrorKind.CURSOR_INVALID


# ----------------------------------------------------------------------
# OAuth token endpoint
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_returns_new_access_token(httpx_mock):
    httpx_mock.add_response(
        method="POST",
        url=GOOGLE_TOKEN_URL,
        json={"access_token": "new", "expires_in": 3599, "scope": "a b", "token_type": "Bearer"},
    )
    oauth = GoogleOAuthService(client=httpx.AsyncClient())

    token = await oauth.refresh_access_token("refresh-1", tenant_id="t")
    await oauth.close()

    assert token.access_token == "new"
    assert token.refresh_token is None
    assert token.scopes == ["a", "b"]
    assert b"grant_type=refresh_token" in httpx_mock.get_requests()[0].content


@pytest.mark.asyncio
async def test_revoked_grant_requires_reauth(httpx_mock):
    httpx_mock.add_response(method="POST", url=GOOGLE_TOKEN_URL, status_code=400, json={"error": "invalid_grant"})
    oauth = GoogleOAuthService(client=httpx.AsyncClient())

    with pytest.raises(ReauthRequiredError):
        await oauth.refresh_access_token("refresh-1")
    await oauth.close()


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauth_without_calling_google():
    oauth = GoogleOAuthService(client=httpx.AsyncClient())

    with pytest.raises(ReauthRequiredError):
        await oauth.refresh_access_token(None)
    await oauth.close()


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_provider_unavailable(httpx_mock, no_sleep):
    for _ in range(3):
        httpx_mock.add_response(method="POST", url=GOOGLE_TOKEN_URL, status_code=500)
    oauth = GoogleOAuthService(client=httpx.AsyncClient())

    with pytest.raises(ProviderError) as exc:
        await oauth.refresh_access_token("refresh-1")
    await oauth.close()

    assert exc.value.kind == ErrorKind.PROVIDER_UNAVAILABLE
