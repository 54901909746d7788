from __future__ import annotations

from datetime import datetime

from leadhub.crm.derived import (
    budget_of,
    days_in_current_status,
    days_since_created,
    decode_tags,
    ensure_aware,
    formatted_budget,
    is_hot_lead,
    is_overdue,
    utcnow,
)
from leadhub.crm.models import CRMLead, CRMLeadActivity
from leadhub.crm.options import activity_type_label, inquiry_type_label, priority_label, status_label
from leadhub.crm.schemas import ActivityRead, LeadRead

_LEAD_DATETIME_FIELDS = ("assigned_at", "last_activity_at", "next_follow_up_at", "created_at", "updated_at", "deleted_at")
_ACTIVITY_DATETIME_FIELDS = ("scheduled_at", "due_at", "completed_at", "created_at", "updated_at", "deleted_at")


def lead_to_read(lead: CRMLead, now: datetime | None = None) -> LeadRead:
    moment = now or utcnow()
    return LeadRead(
        id=lead.id,
        name=lead.name,
        email=lead.email,
        phone=lead.phone,
        occupation=lead.occupation,
        address=lead.address,
        city=lead.city,
        country=lead.country,
        latitude=lead.latitude,
        longitude=lead.longitude,
        detail=lead.detail,
        service_id=lead.service_id,
        service_name=lead.service.name if lead.service is not None else None,
        lead_source_id=lead.lead_source_id,
        source_name=lead.source.name if lead.source is not None else None,
        inquiry_status=lead.inquiry_status,
        status_label=status_label(lead.inquiry_status),
        priority=lead.priority,
        priority_label=priority_label(lead.priority),
        inquiry_type=lead.inquiry_type,
        inquiry_type_label=inquiry_type_label(lead.inquiry_type),
        inquiry_country=lead.inquiry_country,
        lead_score=lead.lead_score,
        budget=budget_of(lead),
        formatted_budget=formatted_budget(lead),
        custom_fields=lead.custom_fields or {},
        tags=decode_tags(lead.tags),
        assigned_to=lead.assigned_to,
        assigned_user_name=lead.assignee.name if lead.assignee is not None else None,
        assigned_user_email=lead.assignee.email if lead.assignee is not None else None,
        created_by=lead.created_by,
        pending_activities_count=lead.pending_activities_count,
        is_hot_lead=is_hot_lead(lead),
        is_overdue=is_overdue(lead, moment),
        days_since_created=days_since_created(lead, moment),
        days_in_current_status=days_in_current_status(lead, moment),
        row_version=lead.row_version,
        **{name: ensure_aware(getattr(lead, name)) for name in _LEAD_DATETIME_FIELDS},
    )


def activity_to_read(activity: CRMLeadActivity) -> ActivityRead:
    read = ActivityRead.model_validate(activity)
    updates = {name: ensure_aware(getattr(activity, name)) for name in _ACTIVITY_DATETIME_FIELDS}
    updates["type_label"] = activity_type_label(activity.activity_type)
    return read.model_copy(update=updates)
