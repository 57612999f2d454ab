"""
Tests for revision comparison and the per-record reconcile decision.
"""

from app.models.domain.sync_domain import EntityMapping, EntityType, RemoteRecord
from app.services.reconciliation.revision import (
    ReconcileAction,
    compare_revisions,
    decide_action,
    is_newer,
)


def _mapping(revision):
    return EntityMapping(
        tenant_id="t",
        entity_type=EntityType.EMAIL,
        local_id="local-1",
        remote_id="remote-1",
        remote_revision=revision,
    )


def test_numeric_markers_compare_as_numbers():
    # Textually "9" > "10", numerically it is older
    assert is_newer("10", "9")
    assert not is_newer("9", "10")


def test_timestamps_compare_as_instants():
    assert is_newer("2026-03-01T10:00:00.000Z", "2026-03-01T09:59:59.999Z")
    assert compare_revisions("2026-03-01T10:00:00+00:00", "2026-03-01T10:00:00Z") == 0


def test_equal_marker_is_not_newer():
    assert not is_newer("5", "5")
    assert not is_newer("abc", "abc")


def test_missing_marker_sorts_first():
    assert is_newer("1", None)
    assert not is_newer(None, "1")


def test_stale_pull_update_is_ignored():
    record = RemoteRecord(remote_id="remote-1", revision="3")
    assert decide_action(_mapping("5"), record) == ReconcileAction.IGNORE_STALE


def test_newer_revision_updates():
    record = RemoteRecord(remote_id="remote-1", revision="6")
    assert decide_action(_mapping("5"), record) == ReconcileAction.UPDATE


def test_first_sight_creates():
    assert decide_action(None, RemoteRecord(remote_id="r", revision="1")) == ReconcileAction.CREATE


def test_deletion_with_and_without_mapping():
    deleted = RemoteRecord(remote_id="remote-1", revision="7", deleted=True)
    assert decide_action(_mapping("5"), deleted) == ReconcileAction.DELETE
    assert decide_action(None, deleted) == ReconcileAction.IGNORE_MISSING
