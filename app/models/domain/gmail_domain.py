# app/models/domain/gmail_domain.py
"""
Gmail Domain Models
Wraps a raw Gmail message (metadata format) and turns it into a
reconcilable record.
PATTERN: Follows the exact same structure as calendar_domain.py
"""

from datetime import UTC, datetime

from app.models.domain.sync_domain import RemoteRecord

METADATA_HEADERS = ["Subject", "From", "To", "Cc", "Date"]


class GmailMessage:
    """Domain model for Gmail messages."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.thread_id = data.get("threadId")
        self.label_ids = data.get("labelIds", [])
        self.snippet = data.get("snippet", "")
        # Revision marker: the mailbox history id of the last change to this message
        self.history_id = data.get("historyId")
        self.internal_date = data.get("internalDate")
        self.payload = data.get("payload", {})
        self.raw_data = data

        self._parse_headers()

    def _parse_headers(self):
        headers = self.payload.get("headers", [])
        self.headers = {h["name"].lower(): h["value"] for h in headers}

        self.subject = self.headers.get("subject", "(No Subject)")
        self.sender = self._parse_email_address(self.headers.get("from", ""))
        self.recipients = self._parse_email_addresses(self.headers.get("to", ""))
        self.cc = self._parse_email_addresses(self.headers.get("cc", ""))

    @staticmethod
    def _parse_email_address(address_str: str) -> str:
        """Extract the bare address from 'Name <addr>' or 'addr'."""
        if "<" in address_str and ">" in address_str:
            return address_str.split("<")[1].split(">")[0].strip()
        return address_str.strip()

    def _parse_email_addresses(self, addresses_str: str) -> list[str]:
        if not addresses_str:
            return []
        parsed = (self._parse_email_address(addr) for addr in addresses_str.split(","))
        return [addr for addr in parsed if addr]

    @property
    def is_read(self) -> bool:
        return "UNREAD" not in self.label_ids

    @property
    def is_starred(self) -> bool:
        return "STARRED" in self.label_ids

    @property
    def received_at(self) -> datetime | None:
        if not self.internal_date:
            return None
        return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)

    def to_record(self) -> RemoteRecord:
        return RemoteRecord(
            remote_id=self.id,
            revision=str(self.history_id) if self.history_id is not None else None,
            fields={
                "thread_id": self.thread_id,
                "subject": self.subject,
                "snippet": self.snippet,
                "from_address": self.sender,
                "to_addresses": self.recipients,
                "cc_addresses": self.cc,
                "labels": list(self.label_ids),
                "is_read": self.is_read,
                "is_starred": self.is_starred,
                "internal_date": self.received_at,
            },
        )
