"""Mapping of provider records onto local entity rows."""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from resource_sync.sync.errors import ReconciliationError
from resource_sync.sync.interfaces import LocalStore
from resource_sync.sync.models import (
    EntityKind,
    EntityRecord,
    EntityStatus,
    RemoteRecord,
)

logger = logging.getLogger(__name__)

RESPONSE_STATUSES = ("accepted", "declined", "tentative", "needsAction")
VIDEO_ENTRY_POINT = "video"


def normalize_attendee(attendee: dict[str, Any]) -> dict[str, Any]:
    """Flatten a provider attendee into the internal attendee shape."""
    if not isinstance(attendee, dict):
        raise TypeError(f"attendee must be a mapping, got {type(attendee).__name__}")
    return {
        "email": attendee.get("email"),
        "display_name": attendee.get("displayName"),
        "response_status": attendee.get("responseStatus") or "needsAction",
        "is_organizer": bool(attendee.get("organizer", False)),
        "is_self": bool(attendee.get("self", False)),
        "is_optional": bool(attendee.get("optional", False)),
        "is_resource": bool(attendee.get("resource", False)),
    }


def find_self_attendee(attendees: Iterable[dict[str, Any]]) -> Optional[dict[str, Any]]:
    for attendee in attendees:
        if attendee.get("is_self"):
            return attendee
    return None


def count_responses(attendees: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Tally attendees by response status."""
    counts = {status: 0 for status in RESPONSE_STATUSES}
    for attendee in attendees:
        status = attendee.get("response_status") or "needsAction"
        counts[status] = counts.get(status, 0) + 1
    return counts


def extract_meeting_url(
    entry_points: Iterable[dict[str, Any]], fallback: Optional[str] = None
) -> Optional[str]:
    """Pick the video join URL out of a typed entry-point list."""
    for entry in entry_points or []:
        if entry.get("entryPointType") == VIDEO_ENTRY_POINT and entry.get("uri"):
            return entry["uri"]
    return fallback


def classify_kind(record: RemoteRecord) -> EntityKind:
    """Recurring master, expanded instance, or standalone record.

    Recurrence is never expanded here; instances are trusted as the provider
    delivered them.
    """
    has_rules = bool(record.recurrence)
    has_parent = bool(record.parent_id)
    if has_rules and not has_parent:
        return EntityKind.MASTER
    if has_parent and not has_rules:
        return EntityKind.INSTANCE
    return EntityKind.SINGLE


def map_record(record: RemoteRecord, sub_resource_id: str) -> EntityRecord:
    """Build the storage record for an active remote record.

    Raises:
        ReconciliationError: when the record cannot be mapped.
    """
    if not record.provider_id:
        raise ReconciliationError(None, "record has no provider id")
    try:
        revision = int(record.revision)
        attendees = [normalize_attendee(a) for a in record.attendees or []]
        self_attendee = find_self_attendee(attendees)
        return EntityRecord(
            provider_id=record.provider_id,
            sub_resource_id=sub_resource_id,
            revision=revision,
            status=EntityStatus.ACTIVE,
            kind=classify_kind(record),
            parent_id=record.parent_id,
            recurrence=list(record.recurrence or []),
            attendees=attendees,
            response_tally=count_responses(attendees),
            self_response=self_attendee["response_status"] if self_attendee else None,
            meeting_url=extract_meeting_url(record.entry_points, record.fallback_meeting_url),
            updated_at=record.updated_at,
            payload=dict(record.payload or {}),
        )
    except (TypeError, ValueError, KeyError, AttributeError) as e:
        raise ReconciliationError(record.provider_id, f"cannot map record: {e}") from e


def _cancellation_revision(record: RemoteRecord) -> int:
    try:
        return int(record.revision or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class ReconcilePlan:
    """What one page turns into: rows to write, ids to soft-delete, and counts."""

    upserts: dict[str, EntityRecord] = field(default_factory=dict)
    # provider id -> revision of the cancellation
    deletions: dict[str, int] = field(default_factory=dict)
    created: int = 0
    updated: int = 0
    stale: int = 0
    failed: list[str] = field(default_factory=list)


class ChangeReconciler:
    """Classify each record of a page as create, update, soft-delete, or stale."""

    def __init__(self, store: LocalStore):
        self.store = store

    async def reconcile(
        self,
        user_id: str,
        family: str,
        sub_resource_id: str,
        records: Iterable[RemoteRecord],
    ) -> ReconcilePlan:
        records = list(records)
        known = await self.store.get_entity_revisions(
            user_id, family, sub_resource_id, [r.provider_id for r in records if r.provider_id]
        )
        plan = ReconcilePlan()
        # Revisions accepted earlier in this page count as stored.
        accepted: dict[str, int] = {}

        for record in records:
            if not record.provider_id:
                logger.warning(f"Skipping {family} record without provider id in {sub_resource_id}")
                plan.failed.append("<missing id>")
                continue

            if record.status == EntityStatus.CANCELLED:
                if plan.upserts.pop(record.provider_id, None) is not None:
                    if record.provider_id in known:
                        plan.updated -= 1
                    else:
                        plan.created -= 1
                revision = _cancellation_revision(record)
                plan.deletions[record.provider_id] = max(
                    revision, plan.deletions.get(record.provider_id, revision)
                )
                # Older replays of a cancelled record must stay stale.
                stored = accepted.get(record.provider_id, known.get(record.provider_id))
                accepted[record.provider_id] = revision if stored is None else max(stored, revision)
                continue

            try:
                entity = map_record(record, sub_resource_id)
            except ReconciliationError as e:
                logger.warning(f"Skipping {family} record {record.provider_id}: {e}")
                plan.failed.append(record.provider_id)
                continue

            stored = accepted.get(record.provider_id, known.get(record.provider_id))
            if stored is not None and entity.revision <= stored:
                logger.debug(
                    f"Dropping stale {family} record {record.provider_id} "
                    f"(revision {entity.revision} <= {stored})"
                )
                plan.stale += 1
                continue

            plan.deletions.pop(record.provider_id, None)
            if record.provider_id not in plan.upserts:
                if record.provider_id in known:
                    plan.updated += 1
                else:
                    plan.created += 1
            plan.upserts[record.provider_id] = entity
            accepted[record.provider_id] = entity.revision

        return plan
