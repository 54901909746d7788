from __future__ import annotations

import calendar
import copy
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from leadhub.crm.activity_log import build_activity
from leadhub.crm.actors import ActorUser, coerce_user_uuid, resolve_actor
from leadhub.crm.derived import budget_of, decode_tags, ensure_aware, utcnow
from leadhub.crm.directory import DisplayNameResolver
from leadhub.crm.models import CRMLead, CRMLeadActivity
from leadhub.crm.options import field_display_name, inquiry_type_label, priority_label, status_label
from leadhub.metrics import observe_audit_trail_activity, observe_audit_trail_failure

logger = logging.getLogger("leadhub.crm.audit_trail")

# bookkeeping columns written by the aggregate reactor or the write path itself
AUDIT_SKIP_FIELDS = frozenset(
    {
        "updated_at",
        "last_activity_at",
        "lead_score",
        "pending_activities_count",
        "next_follow_up_at",
        "assigned_at",
        "row_version",
        "tag_values",
    }
)

SNAPSHOT_FIELDS = (
    "name",
    "email",
    "phone",
    "occupation",
    "address",
    "city",
    "country",
    "latitude",
    "longitude",
    "detail",
    "service_id",
    "lead_source_id",
    "inquiry_status",
    "priority",
    "inquiry_type",
    "inquiry_country",
    "assigned_to",
    "custom_fields",
    "lead_score",
    "assigned_at",
    "last_activity_at",
    "next_follow_up_at",
    "pending_activities_count",
    "updated_at",
    "row_version",
    "tag_values",
)


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any


@dataclass(frozen=True)
class StatusFollowUp:
    activity_type: str
    subject: str
    description: str
    scheduled_in: tuple[int, int]
    due_in: tuple[int, int]
    priority: str
    category: str


# (months, days) offsets from the moment of the status change
STATUS_FOLLOW_UPS: dict[str, StatusFollowUp] = {
    "contacted": StatusFollowUp(
        activity_type="follow_up",
        subject="Follow up on contacted lead",
        description="Lead has been contacted. Schedule follow-up call or meeting.",
        scheduled_in=(0, 2),
        due_in=(0, 3),
        priority="medium",
        category="follow_up",
    ),
    "qualified": StatusFollowUp(
        activity_type="task",
        subject="Prepare proposal for qualified lead",
        description="Lead has been qualified. Prepare and send proposal.",
        scheduled_in=(0, 1),
        due_in=(0, 2),
        priority="high",
        category="sales",
    ),
    "proposal": StatusFollowUp(
        activity_type="follow_up",
        subject="Follow up on proposal",
        description="Proposal has been sent. Follow up for feedback and next steps.",
        scheduled_in=(0, 3),
        due_in=(0, 5),
        priority="high",
        category="sales",
    ),
    "nurturing": StatusFollowUp(
        activity_type="follow_up",
        subject="Nurture lead - Monthly check-in",
        description="Lead is in nurturing phase. Schedule monthly check-in.",
        scheduled_in=(1, 0),
        due_in=(1, 2),
        priority="low",
        category="nurturing",
    ),
}


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _offset(moment: datetime, offset: tuple[int, int]) -> datetime:
    months, days = offset
    return add_months(moment, months) + timedelta(days=days)


def lead_snapshot(lead: CRMLead) -> dict[str, Any]:
    """Logical field values of a lead, with budget and tags as structured values."""
    snapshot = {name: copy.deepcopy(getattr(lead, name)) for name in SNAPSHOT_FIELDS}
    snapshot["budget"] = budget_of(lead)
    snapshot["tags"] = copy.deepcopy(decode_tags(lead.tags))
    return snapshot


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_aware(value)
    return value


def diff_snapshots(before: dict[str, Any], after: dict[str, Any]) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for field in after:
        if field in AUDIT_SKIP_FIELDS:
            continue
        old = before.get(field)
        new = after.get(field)
        if _comparable(old) != _comparable(new):
            changes.append(FieldChange(field=field, old=old, new=new))
    return changes


def json_safe(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    return value


def format_moment(value: datetime) -> str:
    moment = ensure_aware(value)
    hour = moment.hour % 12 or 12
    return f"{moment:%b} {moment.day}, {moment.year} {hour}:{moment:%M} {moment:%p}"


class AuditTrailGenerator:
    """Turns a lead field diff into activity log entries.

    Entries are built per field; a field that fails to render is logged and
    skipped so the remaining fields and the lead write itself go through.
    """

    def __init__(self, session: Session, resolver: DisplayNameResolver, now: datetime | None = None) -> None:
        self.session = session
        self.resolver = resolver
        self.now = now

    def generate(self, lead: CRMLead, changes: list[FieldChange], actor_user: ActorUser | None) -> list[CRMLeadActivity]:
        actor = resolve_actor(actor_user)
        actor_id = coerce_user_uuid(actor.user_id)
        moment = self.now or utcnow()

        activities: list[CRMLeadActivity] = []
        for change in changes:
            if change.field in AUDIT_SKIP_FIELDS:
                continue
            try:
                entries = self._entries_for(lead, change, actor_id, moment)
            except Exception as exc:
                observe_audit_trail_failure(change.field)
                logger.warning(
                    "crm.audit_trail.field_failed",
                    extra={"lead_id": str(lead.id), "field": change.field, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            activities.extend(entries)

        if activities:
            self.session.add_all(activities)
        for activity in activities:
            observe_audit_trail_activity(str(activity.activity_metadata.get("change_type") or activity.activity_type))
        logger.info(
            "crm.audit_trail.generated",
            extra={"lead_id": str(lead.id), "activities_written": len(activities)},
        )
        return activities

    def _entries_for(self, lead: CRMLead, change: FieldChange, actor_id: uuid.UUID, moment: datetime) -> list[CRMLeadActivity]:
        if change.field == "inquiry_status":
            return self._status_entries(lead, change, actor_id, moment)
        if change.field == "assigned_to":
            return self._assignment_entries(lead, change, actor_id, moment)
        if change.field == "tags":
            return self._tag_entries(lead, change, actor_id, moment)
        return [self._field_entry(lead, change, actor_id, moment)]

    def _field_entry(self, lead: CRMLead, change: FieldChange, actor_id: uuid.UUID, moment: datetime) -> CRMLeadActivity:
        display_name = field_display_name(change.field)
        old_display = self.format_value(change.field, change.old)
        new_display = self.format_value(change.field, change.new)
        return build_activity(
            lead_id=lead.id,
            user_id=actor_id,
            activity_type="note",
            status="completed",
            subject=f"Updated {display_name}",
            description=f"{display_name} was changed from {old_display} to {new_display}.",
            category="system",
            metadata={
                "field": change.field,
                "old_value": json_safe(change.old),
                "new_value": json_safe(change.new),
                "change_type": "field_update",
            },
            now=moment,
        )

    def _status_entries(self, lead: CRMLead, change: FieldChange, actor_id: uuid.UUID, moment: datetime) -> list[CRMLeadActivity]:
        old_label = status_label(change.old) or "Not set"
        new_label = status_label(change.new) or "Not set"
        entries = [
            build_activity(
                lead_id=lead.id,
                user_id=actor_id,
                activity_type="status_change",
                status="completed",
                subject=f"Status changed from {old_label} to {new_label}",
                description=f"Lead status was updated from '{old_label}' to '{new_label}'.",
                category="system",
                metadata={
                    "field": "inquiry_status",
                    "old_status": change.old,
                    "new_status": change.new,
                    "old_status_label": old_label,
                    "new_status_label": new_label,
                    "change_type": "status_change",
                },
                now=moment,
            )
        ]

        follow_up = STATUS_FOLLOW_UPS.get(change.new)
        if follow_up is not None:
            entries.append(
                build_activity(
                    lead_id=lead.id,
                    user_id=lead.assigned_to or actor_id,
                    activity_type=follow_up.activity_type,
                    status="pending",
                    subject=follow_up.subject,
                    description=follow_up.description,
                    category=follow_up.category,
                    priority=follow_up.priority,
                    scheduled_at=_offset(moment, follow_up.scheduled_in),
                    due_at=_offset(moment, follow_up.due_in),
                    metadata={"change_type": "status_follow_up", "trigger_status": change.new},
                    now=moment,
                )
            )
        return entries

    def _user_display(self, user_id: Any) -> str:
        if user_id is None:
            return "Unassigned"
        return self.resolver.user_name(user_id) or f"ID: {user_id}"

    def _assignment_entries(self, lead: CRMLead, change: FieldChange, actor_id: uuid.UUID, moment: datetime) -> list[CRMLeadActivity]:
        old_name = self._user_display(change.old)
        new_name = self._user_display(change.new)
        entries = [
            build_activity(
                lead_id=lead.id,
                user_id=actor_id,
                activity_type="assignment_change",
                status="completed",
                subject=f"Lead reassigned from {old_name} to {new_name}",
                description=f"Lead assignment was changed from '{old_name}' to '{new_name}'.",
                category="system",
                metadata={
                    "field": "assigned_to",
                    "old_user_id": json_safe(change.old),
                    "new_user_id": json_safe(change.new),
                    "old_user_name": old_name,
                    "new_user_name": new_name,
                    "change_type": "assignment_change",
                },
                now=moment,
            )
        ]

        new_assignee = coerce_user_uuid(change.new) if change.new is not None else None
        if new_assignee is not None and new_assignee != actor_id:
            entries.append(
                build_activity(
                    lead_id=lead.id,
                    user_id=new_assignee,
                    activity_type="task",
                    status="pending",
                    subject="New lead assigned - Follow up required",
                    description=f"You have been assigned a new lead: {lead.name}. Please review and follow up.",
                    category="follow_up",
                    priority="urgent" if lead.priority == "urgent" else "medium",
                    scheduled_at=moment + timedelta(hours=1),
                    due_at=moment + timedelta(days=1),
                    metadata={"change_type": "assignment_task", "assigned_by": str(actor_id)},
                    now=moment,
                )
            )
        return entries

    def _tag_entries(self, lead: CRMLead, change: FieldChange, actor_id: uuid.UUID, moment: datetime) -> list[CRMLeadActivity]:
        old_tags = decode_tags(change.old)
        new_tags = decode_tags(change.new)
        old_values = [str(tag["value"]) for tag in old_tags]
        new_values = [str(tag["value"]) for tag in new_tags]
        added = [value for value in new_values if value not in old_values]
        removed = [value for value in old_values if value not in new_values]

        def details(tags: list[dict[str, Any]], values: list[str]) -> list[dict[str, Any]]:
            return [tag for tag in tags if str(tag["value"]) in values]

        def labels(tags: list[dict[str, Any]], values: list[str]) -> list[str]:
            return [str(tag.get("label") or tag["value"]) for tag in details(tags, values)]

        entries: list[CRMLeadActivity] = []
        if added:
            entries.append(
                build_activity(
                    lead_id=lead.id,
                    user_id=actor_id,
                    activity_type="note",
                    status="completed",
                    subject="Added tags",
                    description="Added tags: " + ", ".join(labels(new_tags, added)),
                    category="tag_change",
                    metadata={
                        "field": "tags",
                        "action": "added",
                        "tags": added,
                        "tag_details": details(new_tags, added),
                        "change_type": "tags_added",
                    },
                    now=moment,
                )
            )
        if removed:
            entries.append(
                build_activity(
                    lead_id=lead.id,
                    user_id=actor_id,
                    activity_type="note",
                    status="completed",
                    subject="Removed tags",
                    description="Removed tags: " + ", ".join(labels(old_tags, removed)),
                    category="tag_change",
                    metadata={
                        "field": "tags",
                        "action": "removed",
                        "tags": removed,
                        "tag_details": details(old_tags, removed),
                        "change_type": "tags_removed",
                    },
                    now=moment,
                )
            )
        if added and removed:
            entries.append(
                build_activity(
                    lead_id=lead.id,
                    user_id=actor_id,
                    activity_type="note",
                    status="completed",
                    subject="Tags updated",
                    description=(
                        f"Tags were updated. Added: {', '.join(labels(new_tags, added))}. "
                        f"Removed: {', '.join(labels(old_tags, removed))}."
                    ),
                    category="tag_change",
                    metadata={
                        "field": "tags",
                        "action": "updated",
                        "added_tags": added,
                        "removed_tags": removed,
                        "old_tags": old_tags,
                        "new_tags": new_tags,
                        "change_type": "tags_updated",
                    },
                    now=moment,
                )
            )
        return entries

    def format_value(self, field: str, value: Any) -> str:
        if value is None:
            return "Not set"
        if isinstance(value, bool):
            return "Yes" if value else "No"
        if isinstance(value, (dict, list)):
            return json.dumps(json_safe(value))
        if "_at" in field or "date" in field:
            if isinstance(value, datetime):
                return format_moment(value)
            try:
                return format_moment(datetime.fromisoformat(str(value)))
            except ValueError:
                return str(value)
        if field.endswith("_id") or field == "assigned_to":
            name = None
            if field == "service_id":
                name = self.resolver.service_name(value)
            elif field == "lead_source_id":
                name = self.resolver.source_name(value)
            elif field == "assigned_to":
                name = self.resolver.user_name(value)
            return name or f"ID: {value}"
        if field == "priority":
            return priority_label(value) or str(value)
        if field == "inquiry_type":
            return inquiry_type_label(value) or str(value)
        return str(value)
