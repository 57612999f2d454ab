"""
Gmail change feed client.

Initial sync lists inbox messages page by page and pins the mailbox
historyId taken from the profile before the first page; incremental sync
walks history.list from that id. Message bodies are never fetched, only
metadata headers.
"""

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.errors import ErrorKind, ProviderError
from app.models.domain.gmail_domain import METADATA_HEADERS, GmailMessage
from app.models.domain.sync_domain import EntityType, RemotePage, RemoteRecord, SyncCursor
from app.services.infrastructure import google_http

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"
INBOX_LABEL = "INBOX"

# history.list answers a startHistoryId older than the retained history with 404
HISTORY_CURSOR_INVALID_STATUSES = frozenset({404})
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]


class GoogleGmailService:
    """Pull-sync provider for inbox messages."""

    entity_type = EntityType.EMAIL

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

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

    async def _get(
        self,
        access_token: str,
        path: str,
        params: dict | None = None,
        cursor_invalid_statuses: frozenset[int] = frozenset(),
    ) -> dict:
        response = await google_http.request_with_retry(
            self._get_client(),
            "GET",
            f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/{path}",
            service="gmail",
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        if not response.is_success:
            raise google_http.classify_error(response, "gmail", cursor_invalid_statuses)
        return google_http.parse_json(response, "gmail")

    async def get_profile_history_id(self, access_token: str) -> str:
        profile = await self._get(access_token, "profile")
        history_id = profile.get("historyId")
        if not history_id:
            raise ProviderError(
                "Gmail profile returned no historyId",
                kind=ErrorKind.PROVIDER_UNAVAILABLE,
                provider="google",
            )
        return str(history_id)

    async def get_message_record(self, access_token: str, message_id: str) -> RemoteRecord:
        """Fetch message metadata; a message that no longer exists is a deletion."""
        try:
            data = await self._get(
                access_token,
                f"messages/{message_id}",
                params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
            )
        except ProviderError as e:
            if e.status_code == 404:
                logger.debug("Gmail message gone, treating as deletion", message_id=message_id)
                return RemoteRecord(remote_id=message_id, revision=None, deleted=True)
            raise
        return GmailMessage(data).to_record()

    async def fetch_changes(
        self, access_token: str, cursor: SyncCursor, initial: bool, page_size: int
    ) -> RemotePage:
        """
        Fetch one page of changed messages.

        Raises:
            ProviderError: auth_expired, cursor_invalid or provider_unavailable
        """
        if initial or not cursor.sync_token:
            return await self._list_inbox(access_token, cursor, page_size)
        return await self._walk_history(access_token, cursor, page_size)

    async def _list_inbox(self, access_token: str, cursor: SyncCursor, page_size: int) -> RemotePage:
        # Pin the history id before listing so changes made mid-listing are replayed later
        history_id = cursor.sync_token if cursor.page_token else None
        if not history_id:
            history_id = await self.get_profile_history_id(access_token)

        params = {"labelIds": INBOX_LABEL, "maxResults": page_size}
        if cursor.page_token:
            params["pageToken"] = cursor.page_token
        data = await self._get(access_token, "messages", params=params)

        records = []
        for item in data.get("messages", []):
            records.append(await self.get_message_record(access_token, item["id"]))

        next_page = data.get("nextPageToken")
        logger.info(
            "Gmail inbox page listed",
            record_count=len(records),
            has_more=bool(next_page),
        )
        return RemotePage(
            records=records,
            next_cursor=SyncCursor(sync_token=history_id, page_token=next_page),
            has_more=bool(next_page),
        )

    async def _walk_history(self, access_token: str, cursor: SyncCursor, page_size: int) -> RemotePage:
        params = {
            "startHistoryId": cursor.sync_token,
            "maxResults": page_size,
            "historyTypes": HISTORY_TYPES,
            "labelId": INBOX_LABEL,
        }
        if cursor.page_token:
            params["pageToken"] = cursor.page_token
        data = await self._get(
            access_token,
            "history",
            params=params,
            cursor_invalid_statuses=HISTORY_CURSOR_INVALID_STATUSES,
        )
        mailbox_history_id = str(data.get("historyId") or cursor.sync_token)

        # Last change per message wins; keep first-seen order
        deleted: dict[str, bool] = {}
        for entry in data.get("history", []):
            for item in entry.get("messagesAdded", []):
                deleted[item["message"]["id"]] = False
            for key in ("labelsAdded", "labelsRemoved"):
                for item in entry.get(key, []):
                    deleted.setdefault(item["message"]["id"], False)
            for item in entry.get("messagesDeleted", []):
                deleted[item["message"]["id"]] = True

        records = []
        for message_id, is_deleted in deleted.items():
            if is_deleted:
                records.append(
                    RemoteRecord(remote_id=message_id, revision=mailbox_history_id, deleted=True)
                )
            else:
                records.append(await self.get_message_record(access_token, message_id))

        next_page = data.get("nextPageToken")
        if next_page:
            next_cursor = SyncCursor(sync_token=cursor.sync_token, page_token=next_page)
        else:
            next_cursor = SyncCursor(sync_token=mailbox_history_id)

        logger.info(
            "Gmail history page walked",
            start_history_id=cursor.sync_token,
            record_count=len(records),
            has_more=bool(next_page),
        )
        return RemotePage(records=records, next_cursor=next_cursor, has_more=bool(next_page))


google_gmail_service = GoogleGmailService()
