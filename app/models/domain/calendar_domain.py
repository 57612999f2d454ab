# app/models/domain/calendar_domain.py
"""
Calendar Domain Models
Wraps a raw Google Calendar event and turns it into a reconcilable record.
"""

from datetime import UTC, datetime

from app.models.domain.sync_domain import RemoteRecord


class CalendarEvent:
    """Domain model for calendar events as returned by events.list."""

    def __init__(self, data: dict, calendar_id: str = "primary"):
        self.id = data.get("id")
        self.calendar_id = calendar_id
        self.summary = data.get("summary", "")
        self.description = data.get("description", "")
        self.location = data.get("location", "")
        self.status = data.get("status", "confirmed")
        self.start_time = self._parse_datetime(data.get("start", {}))
        self.end_time = self._parse_datetime(data.get("end", {}))
        self.attendees = data.get("attendees", [])
        self.hangout_link = data.get("hangoutLink")
        # Revision marker: RFC3339 last-modification time
        self.updated = data.get("updated")
        self.raw_data = data

    def _parse_datetime(self, dt_data: dict) -> datetime | None:
        """Parse datetime from Google Calendar format."""
        if not dt_data:
            return None

        # All-day events carry a date only
        if "date" in dt_data:
            return datetime.strptime(dt_data["date"], "%Y-%m-%d").replace(tzinfo=UTC)

        if "dateTime" in dt_data:
            try:
                return datetime.fromisoformat(dt_data["dateTime"].replace("Z", "+00:00"))
            except ValueError:
                return None

        return None

    def is_cancelled(self) -> bool:
        """Cancelled events are how the incremental feed reports deletions."""
        return self.status == "cancelled"

    def is_all_day(self) -> bool:
        return "date" in self.raw_data.get("start", {})

    def to_record(self) -> RemoteRecord:
        if self.is_cancelled():
            return RemoteRecord(remote_id=self.id, revision=self.updated, deleted=True)

        return RemoteRecord(
            remote_id=self.id,
            revision=self.updated,
            fields={
                "calendar_id": self.calendar_id,
                "summary": self.summary,
                "description": self.description,
                "location": self.location,
                "status": self.status,
                "start_at": self.start_time,
                "end_at": self.end_time,
                "attendees": [
                    {
                        "email": attendee.get("email"),
                        "response_status": attendee.get("responseStatus"),
                        "organizer": attendee.get("organizer", False),
                    }
                    for attendee in self.attendees
                ],
                "hangout_link": self.hangout_link,
            },
        )
