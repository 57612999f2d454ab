"""
Revision comparison shared by pull-sync mappings and subscription events.

Markers are opaque strings. Two all-digit markers (Gmail historyId, epoch
seconds) compare numerically, two ISO-8601 timestamps (Calendar `updated`)
compare as instants, anything else compares textually. Equal markers are
never "newer", so re-delivery of an identical revision is a no-op.
"""

from datetime import UTC, datetime
from enum import Enum

from app.models.domain.sync_domain import EntityMapping, ReconcileOutcome, RemoteRecord


class ReconcileAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    IGNORE_STALE = "ignore_stale"
    IGNORE_MISSING = "ignore_missing"


def _as_instant(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def compare_revisions(left: str | None, right: str | None) -> int:
    """Return -1, 0 or 1. A missing marker sorts before any present one."""
    if left == right:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1

    if left.isdigit() and right.isdigit():
        a, b = int(left), int(right)
        return (a > b) - (a < b)

    left_instant, right_instant = _as_instant(left), _as_instant(right)
    if left_instant is not None and right_instant is not None:
        return (left_instant > right_instant) - (left_instant < right_instant)

    return (left > right) - (left < right)


def is_newer(incoming: str | None, stored: str | None) -> bool:
    """True only when `incoming` strictly supersedes `stored`."""
    return compare_revisions(incoming, stored) > 0


def decide_action(mapping: EntityMapping | None, record: RemoteRecord) -> ReconcileAction:
    """Last-write-wins by revision: the remote side always wins a pull when newer."""
    if record.deleted:
        return ReconcileAction.DELETE if mapping else ReconcileAction.IGNORE_MISSING
    if mapping is None:
        return ReconcileAction.CREATE
    if is_newer(record.revision, mapping.remote_revision):
        return ReconcileAction.UPDATE
    return ReconcileAction.IGNORE_STALE


ACTION_OUTCOMES = {
    ReconcileAction.CREATE: ReconcileOutcome.CREATED,
    ReconcileAction.UPDATE: ReconcileOutcome.UPDATED,
    ReconcileAction.DELETE: ReconcileOutcome.DELETED,
    ReconcileAction.IGNORE_STALE: ReconcileOutcome.STALE,
    ReconcileAction.IGNORE_MISSING: ReconcileOutcome.SKIPPED,
}
