from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from leadhub.crm.derived import ensure_aware, utcnow
from leadhub.crm.models import CRMLeadActivity
from leadhub.crm.options import CLOSED_ACTIVITY_STATUSES, OPEN_ACTIVITY_STATUSES


def derive_open_status(due_at: datetime | None, now: datetime | None = None) -> str:
    due = ensure_aware(due_at)
    if due is not None and due < (now or utcnow()):
        return "overdue"
    return "pending"


def refresh_activity_status(activity: CRMLeadActivity, now: datetime | None = None) -> bool:
    """Re-derive pending/overdue from ``due_at``; closed activities are left alone.

    Returns True when the stored status changed.
    """
    if activity.status not in OPEN_ACTIVITY_STATUSES:
        return False
    derived = derive_open_status(activity.due_at, now)
    if derived == activity.status:
        return False
    activity.status = derived
    return True


def is_closed(activity: CRMLeadActivity) -> bool:
    return activity.status in CLOSED_ACTIVITY_STATUSES


def build_activity(
    *,
    lead_id: uuid.UUID,
    user_id: uuid.UUID,
    activity_type: str | None,
    subject: str,
    description: str | None = None,
    status: str = "pending",
    category: str | None = None,
    priority: str = "medium",
    scheduled_at: datetime | None = None,
    due_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> CRMLeadActivity:
    moment = now or utcnow()
    activity = CRMLeadActivity(
        id=uuid.uuid4(),
        lead_id=lead_id,
        user_id=user_id,
        activity_type=activity_type,
        status=status,
        subject=subject,
        description=description,
        category=category,
        priority=priority,
        scheduled_at=scheduled_at,
        due_at=due_at,
        completed_at=moment if status == "completed" else None,
        activity_metadata=metadata or {},
        created_at=moment,
        updated_at=moment,
        row_version=1,
    )
    refresh_activity_status(activity, moment)
    return activity
