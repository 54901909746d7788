from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from leadhub import events
from leadhub.crm.activity_log import build_activity, is_closed, refresh_activity_status
from leadhub.crm.actors import ActorUser, coerce_user_uuid, resolve_actor
from leadhub.crm.aggregates import recompute_lead_aggregates, recompute_many
from leadhub.crm.audit_trail import AuditTrailGenerator, diff_snapshots, lead_snapshot
from leadhub.crm.cache import LEADS_LIST_TAG, LEADS_STATS_TAG, LEADS_TAG, TaggedCache, lead_tag
from leadhub.crm.derived import (
    add_tag,
    calculate_activity_score,
    calculate_initial_score,
    dedupe_tags,
    normalize_email,
    normalize_phone,
    remove_tag,
    tag_values_projection,
    utcnow,
)
from leadhub.crm.directory import SqlDisplayNameResolver
from leadhub.crm.errors import (
    ActivityNotFoundError,
    InvalidActivityTransitionError,
    LeadNotFoundError,
    RowVersionConflictError,
)
from leadhub.crm.models import CRMLead, CRMLeadActivity
from leadhub.crm.options import AUTO_COMPLETED_ACTIVITY_TYPES, activity_type_label
from leadhub.crm.query_engine import LeadQueryEngine
from leadhub.crm.schemas import (
    ActivityCreate,
    ActivityPage,
    ActivityRead,
    ActivityUpdate,
    CancelActivityRequest,
    CompleteActivityRequest,
    LeadCreate,
    LeadListFilters,
    LeadRead,
    LeadStatsQuery,
    LeadUpdate,
    ReindexResult,
    TagAddRequest,
)
from leadhub.crm.search_index import LeadSearchIndex, reindex_leads, sync_lead
from leadhub.crm.serializers import activity_to_read, lead_to_read
from leadhub.metrics import observe_search_index_sync_failure
from leadhub.otel import get_tracer

logger = logging.getLogger("leadhub.crm.service")
tracer = get_tracer("leadhub.crm.service")

LEAD_SCALAR_FIELDS = (
    "name",
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
)
ACTIVITY_SCALAR_FIELDS = (
    "activity_type",
    "subject",
    "description",
    "scheduled_at",
    "due_at",
    "priority",
    "category",
    "duration_minutes",
    "cost",
    "outcome",
    "notes",
)
RESCORE_WINDOW = timedelta(days=7)


class _LeadWriteSupport:
    """Post-commit fan-out shared by the lead and activity write paths."""

    def __init__(self, cache: TaggedCache, index: LeadSearchIndex) -> None:
        self.cache = cache
        self.index = index

    def _get_live_lead(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None))))
        if lead is None:
            raise LeadNotFoundError(lead_id)
        return lead

    def _invalidate(self, tags: list[str]) -> None:
        removed = self.cache.invalidate_tags(tags)
        logger.info("crm.cache.invalidated", extra={"cache_tags": tags, "updated_count": removed})

    def _sync_index(self, session: Session, lead_ids: Iterable[uuid.UUID]) -> None:
        for lead_id in lead_ids:
            lead = session.get(CRMLead, lead_id)
            if lead is None:
                continue
            operation = "upsert" if lead.deleted_at is None else "remove"
            try:
                sync_lead(self.index, lead)
            except Exception as exc:
                observe_search_index_sync_failure(operation)
                logger.warning(
                    "crm.search.index_sync_failed",
                    extra={"lead_id": str(lead_id), "operation": operation, "error": f"{type(exc).__name__}: {exc}"},
                )


class LeadService(_LeadWriteSupport):
    entity_type = "crm.lead"

    def _query_engine(self, session: Session) -> LeadQueryEngine:
        return LeadQueryEngine(session, self.cache, self.index)

    def list_leads(self, session: Session, actor_user: ActorUser, filters: LeadListFilters) -> dict[str, Any]:
        return self._query_engine(session).list_leads(filters, actor_user)

    def get_lead(self, session: Session, lead_id: uuid.UUID) -> dict[str, Any]:
        return self._query_engine(session).get_lead_detail(lead_id)

    def get_stats(self, session: Session, query: LeadStatsQuery) -> dict[str, Any]:
        return self._query_engine(session).get_stats(query)

    def create_lead(self, session: Session, actor_user: ActorUser | None, dto: LeadCreate) -> LeadRead:
        actor = resolve_actor(actor_user)
        now = utcnow()
        tags = dedupe_tags([tag.model_dump() for tag in dto.tags])
        lead = CRMLead(
            id=uuid.uuid4(),
            name=dto.name.strip(),
            email=normalize_email(str(dto.email)) if dto.email is not None else None,
            phone=normalize_phone(dto.phone),
            occupation=dto.occupation,
            address=dto.address,
            city=dto.city,
            country=dto.country,
            latitude=dto.latitude,
            longitude=dto.longitude,
            detail=dto.detail,
            service_id=dto.service_id,
            lead_source_id=dto.lead_source_id,
            inquiry_status=dto.inquiry_status,
            priority=dto.priority,
            inquiry_type=dto.inquiry_type,
            inquiry_country=dto.inquiry_country,
            budget_amount=dto.budget.amount if dto.budget is not None else None,
            budget_currency=dto.budget.currency if dto.budget is not None else None,
            custom_fields=dict(dto.custom_fields),
            tags=tags,
            tag_values=tag_values_projection(tags),
            assigned_to=dto.assigned_to,
            assigned_at=now if dto.assigned_to is not None else None,
            created_by=coerce_user_uuid(actor.user_id),
            pending_activities_count=0,
            created_at=now,
            updated_at=now,
            row_version=1,
        )
        lead.lead_score = dto.lead_score if dto.lead_score is not None else calculate_initial_score(lead)

        try:
            session.add(lead)
            session.flush()
            recompute_lead_aggregates(session, lead.id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_lead_commit(session, lead.id)
        events.publish_domain_event(
            "crm.lead.created",
            actor.user_id,
            {"lead_id": str(lead.id), "inquiry_status": lead.inquiry_status, "lead_score": lead.lead_score},
        )
        logger.info("crm.lead.created", extra={"lead_id": str(lead.id)})
        return lead_to_read(self._get_live_lead(session, lead.id))

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser | None,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> LeadRead:
        actor = resolve_actor(actor_user)
        lead = self._get_live_lead(session, lead_id)
        if dto.row_version is not None and dto.row_version != lead.row_version:
            raise RowVersionConflictError(lead.id, dto.row_version, lead.row_version)

        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if not payload:
            return lead_to_read(lead)

        with tracer.start_as_current_span("crm.leads.update"):
            try:
                before = lead_snapshot(lead)
                self._apply_lead_payload(lead, payload)
                changes = diff_snapshots(before, lead_snapshot(lead))
                if not changes:
                    session.rollback()
                    return lead_to_read(self._get_live_lead(session, lead_id))

                lead.row_version = lead.row_version + 1
                session.flush()
                AuditTrailGenerator(session, SqlDisplayNameResolver(session)).generate(lead, changes, actor)
                recompute_lead_aggregates(session, lead.id)
                session.commit()
            except Exception:
                session.rollback()
                raise

        self._after_lead_commit(session, lead_id)
        events.publish_domain_event(
            "crm.lead.updated",
            actor.user_id,
            {"lead_id": str(lead_id), "changed_fields": [change.field for change in changes]},
        )
        return lead_to_read(self._get_live_lead(session, lead_id))

    def _apply_lead_payload(self, lead: CRMLead, payload: dict[str, Any]) -> None:
        for field in LEAD_SCALAR_FIELDS:
            if field in payload:
                value = payload[field]
                if field == "name" and value is not None:
                    value = value.strip()
                setattr(lead, field, value)
        if "email" in payload:
            lead.email = normalize_email(str(payload["email"])) if payload["email"] is not None else None
        if "phone" in payload:
            lead.phone = normalize_phone(payload["phone"])
        if "budget" in payload:
            budget = payload["budget"] or {}
            lead.budget_amount = budget.get("amount")
            lead.budget_currency = budget.get("currency")
        if "custom_fields" in payload:
            lead.custom_fields = dict(payload["custom_fields"] or {})
        if "tags" in payload:
            tags = dedupe_tags(payload["tags"] or [])
            lead.tags = tags
            lead.tag_values = tag_values_projection(tags)
        if "assigned_to" in payload and payload["assigned_to"] != lead.assigned_to:
            lead.assigned_to = payload["assigned_to"]
            lead.assigned_at = utcnow() if payload["assigned_to"] is not None else None

    def add_tag(self, session: Session, actor_user: ActorUser | None, lead_id: uuid.UUID, dto: TagAddRequest) -> LeadRead:
        lead = self._get_live_lead(session, lead_id)
        tags = add_tag(lead.tags, dto.model_dump())
        return self.update_lead(session, actor_user, lead_id, LeadUpdate(tags=tags))

    def remove_tag(self, session: Session, actor_user: ActorUser | None, lead_id: uuid.UUID, value: str) -> LeadRead:
        lead = self._get_live_lead(session, lead_id)
        tags = remove_tag(lead.tags, value)
        return self.update_lead(session, actor_user, lead_id, LeadUpdate(tags=tags))

    def delete_lead(self, session: Session, actor_user: ActorUser | None, lead_id: uuid.UUID) -> None:
        actor = resolve_actor(actor_user)
        lead = self._get_live_lead(session, lead_id)
        try:
            lead.deleted_at = utcnow()
            lead.row_version = lead.row_version + 1
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_lead_commit(session, lead_id)
        events.publish_domain_event("crm.lead.deleted", actor.user_id, {"lead_id": str(lead_id)})

    def rescore_lead(self, session: Session, lead_id: uuid.UUID, now: datetime | None = None) -> LeadRead:
        """Recalculate ``lead_score`` from the lead profile plus recent activity volume."""
        moment = now or utcnow()
        lead = self._get_live_lead(session, lead_id)
        recent = session.scalar(
            select(func.count(CRMLeadActivity.id)).where(
                CRMLeadActivity.lead_id == lead.id,
                CRMLeadActivity.deleted_at.is_(None),
                CRMLeadActivity.created_at >= moment - RESCORE_WINDOW,
            )
        )
        score = calculate_activity_score(lead, int(recent or 0))
        try:
            session.execute(
                update(CRMLead)
                .where(CRMLead.id == lead.id)
                .values(lead_score=score, updated_at=lead.updated_at)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_lead_commit(session, lead_id)
        return lead_to_read(self._get_live_lead(session, lead_id))

    def reindex(self, session: Session) -> ReindexResult:
        outcome = reindex_leads(session, self.index)
        return ReindexResult(success=outcome.success, indexed_count=outcome.indexed_count, duration_ms=outcome.duration_ms)

    def _after_lead_commit(self, session: Session, lead_id: uuid.UUID) -> None:
        self._invalidate([LEADS_TAG])
        self._sync_index(session, [lead_id])


class ActivityService(_LeadWriteSupport):
    entity_type = "crm.activity"

    def _get_live_activity(self, session: Session, activity_id: uuid.UUID) -> CRMLeadActivity:
        activity = session.scalar(
            select(CRMLeadActivity).where(
                and_(CRMLeadActivity.id == activity_id, CRMLeadActivity.deleted_at.is_(None))
            )
        )
        if activity is None:
            raise ActivityNotFoundError(activity_id)
        return activity

    def list_activities(
        self,
        session: Session,
        lead_id: uuid.UUID,
        types: list[str] | None = None,
        page: int = 1,
        per_page: int = 25,
    ) -> ActivityPage:
        self._get_live_lead(session, lead_id)
        page = max(1, page)
        per_page = max(1, min(per_page, 100))
        conditions = [CRMLeadActivity.lead_id == lead_id, CRMLeadActivity.deleted_at.is_(None)]
        if types:
            type_condition = CRMLeadActivity.activity_type.in_(types)
            if "note" in types:
                type_condition = or_(type_condition, CRMLeadActivity.activity_type.is_(None))
            conditions.append(type_condition)

        total = int(session.scalar(select(func.count(CRMLeadActivity.id)).where(*conditions)) or 0)
        rows = session.scalars(
            select(CRMLeadActivity)
            .where(*conditions)
            .order_by(CRMLeadActivity.created_at.desc(), CRMLeadActivity.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        last_page = max(1, -(-total // per_page))
        return ActivityPage(
            data=[activity_to_read(activity) for activity in rows],
            pagination={
                "current_page": page,
                "per_page": per_page,
                "total": total,
                "last_page": last_page,
                "has_more": page < last_page,
            },
        )

    def create_activity(self, session: Session, actor_user: ActorUser | None, dto: ActivityCreate) -> ActivityRead:
        actor = resolve_actor(actor_user)
        lead = self._get_live_lead(session, dto.lead_id)
        activity_type = dto.activity_type
        status = "completed" if activity_type is None or activity_type in AUTO_COMPLETED_ACTIVITY_TYPES else "pending"
        activity = build_activity(
            lead_id=lead.id,
            user_id=dto.user_id or coerce_user_uuid(actor.user_id),
            activity_type=activity_type,
            subject=dto.subject or f"{activity_type_label(activity_type)} activity",
            description=dto.description,
            status=status,
            category=dto.category,
            priority=dto.priority,
            scheduled_at=dto.scheduled_at,
            due_at=dto.due_at,
            metadata=dict(dto.metadata),
        )
        activity.duration_minutes = dto.duration_minutes
        activity.cost = dto.cost
        activity.outcome = dto.outcome
        activity.notes = dto.notes

        try:
            session.add(activity)
            recompute_lead_aggregates(session, lead.id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_activity_commit(session, [lead.id])
        events.publish_domain_event(
            "crm.activity.created",
            actor.user_id,
            {"activity_id": str(activity.id), "lead_id": str(lead.id), "activity_type": activity_type, "status": status},
        )
        return activity_to_read(self._get_live_activity(session, activity.id))

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser | None,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        actor = resolve_actor(actor_user)
        activity = self._get_live_activity(session, activity_id)
        if dto.row_version is not None and dto.row_version != activity.row_version:
            raise RowVersionConflictError(activity.id, dto.row_version, activity.row_version)

        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        previous_lead_id = activity.lead_id
        target_lead_id = payload.pop("lead_id", None) or previous_lead_id
        if target_lead_id != previous_lead_id:
            self._get_live_lead(session, target_lead_id)
        requested_status = payload.pop("status", None)

        try:
            if requested_status is not None:
                self._transition(activity, requested_status)
            for field in ACTIVITY_SCALAR_FIELDS:
                if field in payload:
                    setattr(activity, field, payload[field])
            if "metadata" in payload:
                activity.activity_metadata = dict(payload["metadata"] or {})
            activity.lead_id = target_lead_id
            refresh_activity_status(activity)
            activity.row_version = activity.row_version + 1
            recompute_many(session, [target_lead_id, previous_lead_id])
            session.commit()
        except Exception:
            session.rollback()
            raise

        touched = [target_lead_id] if target_lead_id == previous_lead_id else [target_lead_id, previous_lead_id]
        if target_lead_id != previous_lead_id:
            logger.info(
                "crm.activity.moved",
                extra={"activity_id": str(activity_id), "lead_id": str(target_lead_id), "previous_lead_id": str(previous_lead_id)},
            )
        self._after_activity_commit(session, touched)
        events.publish_domain_event(
            "crm.activity.updated",
            actor.user_id,
            {"activity_id": str(activity_id), "lead_id": str(target_lead_id), "previous_lead_id": str(previous_lead_id)},
        )
        return activity_to_read(self._get_live_activity(session, activity_id))

    def _transition(self, activity: CRMLeadActivity, requested_status: str, now: datetime | None = None) -> None:
        current = activity.status
        if current == requested_status:
            return
        if is_closed(activity):
            raise InvalidActivityTransitionError(current, requested_status)
        if requested_status == "completed":
            activity.status = "completed"
            activity.completed_at = now or utcnow()
        elif requested_status == "cancelled":
            activity.status = "cancelled"
        elif requested_status == "pending":
            # pending and overdue are both open; the due date decides which applies
            activity.status = "pending"
        else:
            raise InvalidActivityTransitionError(current, requested_status)

    def complete_activity(
        self,
        session: Session,
        actor_user: ActorUser | None,
        activity_id: uuid.UUID,
        dto: CompleteActivityRequest,
    ) -> ActivityRead:
        actor = resolve_actor(actor_user)
        activity = self._get_live_activity(session, activity_id)
        if is_closed(activity):
            raise InvalidActivityTransitionError(activity.status, "completed")
        try:
            self._transition(activity, "completed")
            activity.notes = dto.notes or activity.notes
            activity.outcome = dto.outcome or activity.outcome
            activity.row_version = activity.row_version + 1
            recompute_lead_aggregates(session, activity.lead_id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_activity_commit(session, [activity.lead_id])
        events.publish_domain_event(
            "crm.activity.updated",
            actor.user_id,
            {"activity_id": str(activity_id), "lead_id": str(activity.lead_id), "status": "completed"},
        )
        return activity_to_read(self._get_live_activity(session, activity_id))

    def cancel_activity(
        self,
        session: Session,
        actor_user: ActorUser | None,
        activity_id: uuid.UUID,
        dto: CancelActivityRequest,
    ) -> ActivityRead:
        actor = resolve_actor(actor_user)
        activity = self._get_live_activity(session, activity_id)
        if is_closed(activity):
            raise InvalidActivityTransitionError(activity.status, "cancelled")
        try:
            self._transition(activity, "cancelled")
            if dto.reason:
                reason_line = f"Cancellation reason: {dto.reason}"
                activity.notes = f"{activity.notes}\n\n{reason_line}" if activity.notes else reason_line
            activity.row_version = activity.row_version + 1
            recompute_lead_aggregates(session, activity.lead_id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_activity_commit(session, [activity.lead_id])
        events.publish_domain_event(
            "crm.activity.updated",
            actor.user_id,
            {"activity_id": str(activity_id), "lead_id": str(activity.lead_id), "status": "cancelled"},
        )
        return activity_to_read(self._get_live_activity(session, activity_id))

    def delete_activity(self, session: Session, actor_user: ActorUser | None, activity_id: uuid.UUID) -> None:
        actor = resolve_actor(actor_user)
        activity = self._get_live_activity(session, activity_id)
        lead_id = activity.lead_id
        try:
            activity.deleted_at = utcnow()
            activity.row_version = activity.row_version + 1
            recompute_lead_aggregates(session, lead_id)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._after_activity_commit(session, [lead_id])
        events.publish_domain_event(
            "crm.activity.deleted",
            actor.user_id,
            {"activity_id": str(activity_id), "lead_id": str(lead_id)},
        )

    def refresh_overdue_activities(self, session: Session, now: datetime | None = None) -> int:
        """Flip open activities between pending and overdue as their due dates pass or move.

        Returns the number of activities whose status changed.
        """
        moment = now or utcnow()
        candidates = session.scalars(
            select(CRMLeadActivity).where(
                CRMLeadActivity.deleted_at.is_(None),
                or_(
                    and_(
                        CRMLeadActivity.status == "pending",
                        CRMLeadActivity.due_at.is_not(None),
                        CRMLeadActivity.due_at < moment,
                    ),
                    and_(
                        CRMLeadActivity.status == "overdue",
                        or_(CRMLeadActivity.due_at.is_(None), CRMLeadActivity.due_at >= moment),
                    ),
                ),
            )
        ).all()

        touched: list[uuid.UUID] = []
        changed = 0
        try:
            for activity in candidates:
                if refresh_activity_status(activity, moment):
                    changed += 1
                    if activity.lead_id not in touched:
                        touched.append(activity.lead_id)
            recompute_many(session, touched, moment)
            session.commit()
        except Exception:
            session.rollback()
            raise

        if touched:
            self._after_activity_commit(session, touched)
        logger.info("crm.activities.overdue_refreshed", extra={"updated_count": changed})
        return changed

    def _after_activity_commit(self, session: Session, lead_ids: list[uuid.UUID]) -> None:
        self._invalidate([LEADS_LIST_TAG, LEADS_STATS_TAG, *[lead_tag(lead_id) for lead_id in lead_ids]])
        self._sync_index(session, lead_ids)
