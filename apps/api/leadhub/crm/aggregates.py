from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from leadhub.crm.derived import ensure_aware, utcnow
from leadhub.crm.errors import AggregateConsistencyError
from leadhub.crm.models import CRMLead, CRMLeadActivity
from leadhub.metrics import observe_aggregate_recomputation

logger = logging.getLogger("leadhub.crm.aggregates")


@dataclass(frozen=True)
class LeadAggregates:
    next_follow_up_at: datetime | None
    pending_activities_count: int
    last_activity_at: datetime


def compute_lead_aggregates(session: Session, lead: CRMLead, now: datetime | None = None) -> LeadAggregates:
    moment = now or utcnow()
    live = and_(CRMLeadActivity.lead_id == lead.id, CRMLeadActivity.deleted_at.is_(None))

    next_follow_up_at = session.scalar(
        select(func.min(CRMLeadActivity.scheduled_at)).where(
            live,
            CRMLeadActivity.status == "pending",
            CRMLeadActivity.scheduled_at.is_not(None),
            CRMLeadActivity.scheduled_at > moment,
        )
    )
    pending_count = session.scalar(
        select(func.count(CRMLeadActivity.id)).where(live, CRMLeadActivity.status == "pending")
    )
    latest_created_at = session.scalar(select(func.max(CRMLeadActivity.created_at)).where(live))

    last_activity_at = latest_created_at or lead.created_at
    if last_activity_at is None:
        raise AggregateConsistencyError(
            "lead has no creation time to fall back on",
            {"lead_id": str(lead.id)},
        )

    return LeadAggregates(
        next_follow_up_at=ensure_aware(next_follow_up_at),
        pending_activities_count=int(pending_count or 0),
        last_activity_at=ensure_aware(last_activity_at),
    )


def recompute_lead_aggregates(session: Session, lead_id: uuid.UUID | None, now: datetime | None = None) -> LeadAggregates | None:
    """Rewrite a lead's derived activity fields from the current activity log.

    Pending changes are flushed first so the log read reflects the triggering
    write. The write-back is a bulk UPDATE that pins ``updated_at`` and
    ``row_version``; it never goes through the lead update path, so it
    produces no audit entries. A lead that no longer exists is skipped.
    """
    if lead_id is None:
        return None
    session.flush()
    lead = session.get(CRMLead, lead_id)
    if lead is None:
        observe_aggregate_recomputation("skipped")
        logger.info("crm.aggregates.lead_missing", extra={"lead_id": str(lead_id)})
        return None

    try:
        aggregates = compute_lead_aggregates(session, lead, now)
    except AggregateConsistencyError:
        observe_aggregate_recomputation("failed")
        raise

    session.execute(
        update(CRMLead)
        .where(CRMLead.id == lead.id)
        .values(
            next_follow_up_at=aggregates.next_follow_up_at,
            pending_activities_count=aggregates.pending_activities_count,
            last_activity_at=aggregates.last_activity_at,
            updated_at=lead.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    session.expire(lead, ["next_follow_up_at", "pending_activities_count", "last_activity_at"])
    observe_aggregate_recomputation("updated")
    return aggregates


def recompute_many(session: Session, lead_ids: Iterable[uuid.UUID | None], now: datetime | None = None) -> int:
    seen: list[uuid.UUID] = []
    for lead_id in lead_ids:
        if lead_id is not None and lead_id not in seen:
            seen.append(lead_id)
    for lead_id in seen:
        recompute_lead_aggregates(session, lead_id, now)
    return len(seen)
