from __future__ import annotations

import hashlib
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, func, or_, select
from sqlalchemy.orm import Session

from leadhub.core.config import get_settings
from leadhub.crm.actors import ActorUser, is_elevated
from leadhub.crm.cache import LEADS_LIST_TAG, LEADS_STATS_TAG, LEADS_TAG, TaggedCache, lead_tag
from leadhub.crm.derived import HOT_PRIORITY_STATUSES, ensure_aware, utcnow
from leadhub.crm.errors import LeadNotFoundError, SearchIndexUnavailableError
from leadhub.crm.models import CRMLead, CRMLeadSource
from leadhub.crm.schemas import LeadListFilters, LeadStatsQuery
from leadhub.crm.search_index import IndexFilter, LeadSearchIndex
from leadhub.crm.serializers import lead_to_read
from leadhub.metrics import observe_lead_cache, observe_lead_query, observe_search_query
from leadhub.otel import annotate_span, get_tracer

logger = logging.getLogger("leadhub.crm.query_engine")
tracer = get_tracer("leadhub.crm.query_engine")

LIST_KEY_PREFIX = "leads:list:"
STATS_KEY_PREFIX = "leads:stats:"
INACTIVE_STATUSES = ("won", "lost")
KM_PER_DEGREE = 111.045

SORT_COLUMNS = {
    "created_at": CRMLead.created_at,
    "updated_at": CRMLead.updated_at,
    "name": CRMLead.name,
    "email": CRMLead.email,
    "lead_score": CRMLead.lead_score,
    "inquiry_status": CRMLead.inquiry_status,
    "priority": CRMLead.priority,
    "budget_amount": CRMLead.budget_amount,
    "last_activity_at": CRMLead.last_activity_at,
    "next_follow_up_at": CRMLead.next_follow_up_at,
    "assigned_at": CRMLead.assigned_at,
    "id": CRMLead.id,
}

# age-style sort keys are answered by the timestamp they count from, in the opposite direction
INVERTED_SORTS = {
    "days_since_created": "created_at",
    "days_in_current_status": "updated_at",
}

INDEX_SORT_FIELDS = {
    "created_at": "created_at_timestamp",
    "updated_at": "updated_at_timestamp",
    "last_activity_at": "last_activity_at_timestamp",
    "next_follow_up_at": "next_follow_up_at_timestamp",
    "assigned_at": "assigned_at_timestamp",
    "name": "name",
    "email": "email",
    "lead_score": "lead_score",
    "inquiry_status": "inquiry_status",
    "priority": "priority",
    "budget_amount": "budget_amount",
    "days_since_created": "days_since_created",
    "days_in_current_status": "days_in_current_status",
    "id": "id",
}


def _digest(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_list_cache_key(filters: LeadListFilters) -> str:
    return LIST_KEY_PREFIX + _digest(filters.normalized())


def build_detail_cache_key(lead_id: uuid.UUID) -> str:
    return f"lead:{lead_id}:full"


def build_stats_cache_key(query: LeadStatsQuery) -> str:
    return STATS_KEY_PREFIX + _digest(query.model_dump(mode="json", exclude_none=True))


def resolve_list_ttl(filters: LeadListFilters) -> int:
    settings = get_settings()
    if filters.assigned_to is not None or filters.hot_leads:
        return settings.lead_list_ttl_volatile_seconds
    if filters.predicate_count() <= 2:
        return settings.lead_list_ttl_broad_seconds
    return settings.lead_list_ttl_default_seconds


def resolve_bypass_reason(filters: LeadListFilters, actor_user: ActorUser | None, now: datetime | None = None) -> str | None:
    if filters.force_refresh:
        return "force_refresh"
    if filters.real_time:
        return "real_time"
    if filters.no_cache:
        return "no_cache"
    if filters.updated_after is not None:
        window = timedelta(seconds=get_settings().realtime_bypass_window_seconds)
        if ensure_aware(filters.updated_after) > (now or utcnow()) - window:
            return "recent_updates"
    if filters.bulk_operation and is_elevated(actor_user):
        return "bulk_operation"
    return None


@dataclass(frozen=True)
class ResolvedSort:
    field: str
    direction: str
    column_name: str
    column_direction: str


def resolve_sort(sort_by: str | None, sort_order: str | None) -> ResolvedSort:
    direction = sort_order if sort_order in {"asc", "desc"} else "desc"
    field = sort_by if sort_by in SORT_COLUMNS or sort_by in INVERTED_SORTS else "created_at"
    if field in INVERTED_SORTS:
        return ResolvedSort(
            field=field,
            direction=direction,
            column_name=INVERTED_SORTS[field],
            column_direction="desc" if direction == "asc" else "asc",
        )
    return ResolvedSort(field=field, direction=direction, column_name=field, column_direction=direction)


def build_order_by(sort: ResolvedSort) -> list[Any]:
    column = SORT_COLUMNS[sort.column_name]
    clauses = [column.asc() if sort.column_direction == "asc" else column.desc()]
    if sort.column_name != "id":
        clauses.append(CRMLead.id.desc())
    return clauses


def hot_lead_condition() -> ColumnElement[bool]:
    return or_(
        CRMLead.lead_score >= get_settings().hot_lead_score_threshold,
        and_(CRMLead.priority == "high", CRMLead.inquiry_status.in_(HOT_PRIORITY_STATUSES)),
    )


def build_conditions(filters: LeadListFilters, now: datetime | None = None) -> list[ColumnElement[bool]]:
    moment = now or utcnow()
    conditions: list[ColumnElement[bool]] = [CRMLead.deleted_at.is_(None)]

    if filters.status:
        conditions.append(CRMLead.inquiry_status.in_(filters.status))
    if filters.priority:
        conditions.append(CRMLead.priority.in_(filters.priority))
    if filters.assigned_to is not None:
        conditions.append(CRMLead.assigned_to == filters.assigned_to)
    if filters.unassigned:
        conditions.append(CRMLead.assigned_to.is_(None))
    if filters.source_id is not None:
        conditions.append(CRMLead.lead_source_id == filters.source_id)
    if filters.service_id is not None:
        conditions.append(CRMLead.service_id == filters.service_id)
    if filters.inquiry_type:
        conditions.append(CRMLead.inquiry_type == filters.inquiry_type)
    if filters.inquiry_country:
        conditions.append(CRMLead.inquiry_country == filters.inquiry_country)
    if filters.min_budget is not None:
        conditions.append(CRMLead.budget_amount >= filters.min_budget)
    if filters.max_budget is not None:
        conditions.append(CRMLead.budget_amount <= filters.max_budget)
    if filters.budget_currency:
        conditions.append(CRMLead.budget_currency == filters.budget_currency)
    if filters.date_from is not None:
        conditions.append(CRMLead.created_at >= filters.date_from)
    if filters.date_to is not None:
        conditions.append(CRMLead.created_at <= filters.date_to)
    if filters.updated_after is not None:
        conditions.append(CRMLead.updated_at >= filters.updated_after)
    if filters.min_score is not None:
        conditions.append(CRMLead.lead_score >= filters.min_score)
    if filters.max_score is not None:
        conditions.append(CRMLead.lead_score <= filters.max_score)
    if filters.country:
        conditions.append(CRMLead.country == filters.country)
    if filters.city:
        conditions.append(func.lower(CRMLead.city).like(f"%{filters.city.lower()}%"))
    if filters.lat is not None and filters.lng is not None and filters.radius:
        # bounding box around the point; corners reach slightly past the radius
        lat_delta = filters.radius / KM_PER_DEGREE
        lng_delta = filters.radius / (KM_PER_DEGREE * max(math.cos(math.radians(filters.lat)), 0.01))
        conditions.extend(
            [
                CRMLead.latitude.between(filters.lat - lat_delta, filters.lat + lat_delta),
                CRMLead.longitude.between(filters.lng - lng_delta, filters.lng + lng_delta),
            ]
        )
    if filters.assigned_date_from is not None:
        conditions.append(CRMLead.assigned_at >= filters.assigned_date_from)
    if filters.assigned_date_to is not None:
        conditions.append(CRMLead.assigned_at <= filters.assigned_date_to)
    if filters.has_follow_up:
        conditions.append(CRMLead.next_follow_up_at.is_not(None))
    if filters.overdue_follow_ups:
        conditions.append(CRMLead.next_follow_up_at < moment)
    if filters.follow_up_date_from is not None:
        conditions.append(CRMLead.next_follow_up_at >= filters.follow_up_date_from)
    if filters.follow_up_date_to is not None:
        conditions.append(CRMLead.next_follow_up_at <= filters.follow_up_date_to)
    if filters.recent_activity_days:
        conditions.append(CRMLead.last_activity_at >= moment - timedelta(days=filters.recent_activity_days))
    if filters.no_activity_days:
        conditions.append(CRMLead.last_activity_at <= moment - timedelta(days=filters.no_activity_days))
    if filters.min_days_in_status is not None:
        conditions.append(CRMLead.updated_at <= moment - timedelta(days=filters.min_days_in_status))
    if filters.max_days_in_status is not None:
        conditions.append(CRMLead.updated_at >= moment - timedelta(days=filters.max_days_in_status + 1))
    if filters.hot_leads:
        conditions.append(hot_lead_condition())
    if filters.active_only:
        conditions.append(CRMLead.inquiry_status.not_in(INACTIVE_STATUSES))
    if filters.tags:
        conditions.append(or_(*[CRMLead.tag_values.like(f"%|{value}|%") for value in filters.tags]))
    return conditions


def translate_index_filters(filters: LeadListFilters, now: datetime | None = None) -> tuple[list[IndexFilter], list[str]]:
    """Express list filters in index terms.

    Returns the index filters plus the names of filters the index cannot
    evaluate; those are accepted and left unapplied.
    """
    moment = now or utcnow()
    translated: list[IndexFilter] = []
    ignored: list[str] = []

    def epoch(value: datetime) -> int:
        return int(ensure_aware(value).timestamp())

    if filters.status:
        translated.append(IndexFilter("inquiry_status", "in", list(filters.status)))
    if filters.priority:
        translated.append(IndexFilter("priority", "in", list(filters.priority)))
    if filters.assigned_to is not None:
        translated.append(IndexFilter("assigned_to", "eq", str(filters.assigned_to)))
    if filters.unassigned:
        translated.append(IndexFilter("assigned_to", "is_null"))
    if filters.source_id is not None:
        translated.append(IndexFilter("lead_source_id", "eq", str(filters.source_id)))
    if filters.service_id is not None:
        translated.append(IndexFilter("service_id", "eq", str(filters.service_id)))
    for name in ("inquiry_type", "inquiry_country", "budget_currency", "country", "city"):
        value = getattr(filters, name)
        if value:
            translated.append(IndexFilter(name, "eq", value))
    if filters.min_budget is not None:
        translated.append(IndexFilter("budget_amount", "gte", filters.min_budget))
    if filters.max_budget is not None:
        translated.append(IndexFilter("budget_amount", "lte", filters.max_budget))
    if filters.min_score is not None:
        translated.append(IndexFilter("lead_score", "gte", filters.min_score))
    if filters.max_score is not None:
        translated.append(IndexFilter("lead_score", "lte", filters.max_score))

    ranges = (
        ("date_from", "created_at_timestamp", "gte"),
        ("date_to", "created_at_timestamp", "lte"),
        ("updated_after", "updated_at_timestamp", "gte"),
        ("assigned_date_from", "assigned_at_timestamp", "gte"),
        ("assigned_date_to", "assigned_at_timestamp", "lte"),
        ("follow_up_date_from", "next_follow_up_at_timestamp", "gte"),
        ("follow_up_date_to", "next_follow_up_at_timestamp", "lte"),
    )
    for name, doc_field, op in ranges:
        value = getattr(filters, name)
        if value is not None:
            translated.append(IndexFilter(doc_field, op, epoch(value)))

    if filters.has_follow_up:
        translated.append(IndexFilter("next_follow_up_at_timestamp", "not_null"))
    if filters.overdue_follow_ups:
        translated.append(IndexFilter("is_overdue", "eq", True))
    if filters.recent_activity_days:
        translated.append(
            IndexFilter("last_activity_at_timestamp", "gte", epoch(moment - timedelta(days=filters.recent_activity_days)))
        )
    if filters.no_activity_days:
        translated.append(
            IndexFilter("last_activity_at_timestamp", "lte", epoch(moment - timedelta(days=filters.no_activity_days)))
        )
    if filters.min_days_in_status is not None:
        translated.append(IndexFilter("days_in_current_status", "gte", filters.min_days_in_status))
    if filters.max_days_in_status is not None:
        translated.append(IndexFilter("days_in_current_status", "lte", filters.max_days_in_status))
    if filters.hot_leads:
        translated.append(IndexFilter("is_hot_lead", "eq", True))
    if filters.active_only:
        translated.append(IndexFilter("inquiry_status", "not_in", list(INACTIVE_STATUSES)))
    if filters.tags:
        translated.append(IndexFilter("tag_values", "contains_any", list(filters.tags)))

    if filters.lat is not None or filters.lng is not None or filters.radius is not None:
        ignored.append("geo_radius")
    return translated, ignored


def build_pagination(page: int, per_page: int, total: int, returned: int) -> dict[str, Any]:
    last_page = max(1, math.ceil(total / per_page)) if per_page else 1
    offset = (page - 1) * per_page
    return {
        "current_page": page,
        "per_page": per_page,
        "total": total,
        "last_page": last_page,
        "from": offset + 1 if returned else None,
        "to": offset + returned if returned else None,
        "has_more": page < last_page,
    }


class LeadQueryEngine:
    """Serves lead list, detail and stats reads.

    Free-text list queries go to the search index and are never cached. Other
    list queries read the relational store through the tagged cache unless a
    bypass rule applies.
    """

    def __init__(self, session: Session, cache: TaggedCache, index: LeadSearchIndex, now: datetime | None = None) -> None:
        self.session = session
        self.cache = cache
        self.index = index
        self.now = now

    def _now(self) -> datetime:
        return self.now or utcnow()

    def list_leads(self, filters: LeadListFilters, actor_user: ActorUser | None = None) -> dict[str, Any]:
        cache_key = build_list_cache_key(filters)
        if filters.has_search:
            result = self._search_leads(filters)
            result["cache"] = {
                "served_from_cache": False,
                "cache_key": cache_key,
                "ttl_used": 0,
                "bypass_reason": "search",
            }
            return result

        bypass_reason = resolve_bypass_reason(filters, actor_user, self._now())
        if bypass_reason is not None:
            observe_lead_cache("list", "bypass")
            logger.info("crm.cache.bypass", extra={"cache_key": cache_key, "bypass_reason": bypass_reason})
            payload = self._relational_page(filters)
            return {
                **payload,
                "cache": {
                    "served_from_cache": False,
                    "cache_key": cache_key,
                    "ttl_used": 0,
                    "bypass_reason": bypass_reason,
                },
            }

        ttl = resolve_list_ttl(filters)
        payload, hit = self.cache.remember(
            cache_key,
            ttl,
            [LEADS_TAG, LEADS_LIST_TAG],
            lambda: self._relational_page(filters),
        )
        observe_lead_cache("list", "hit" if hit else "miss")
        return {
            **payload,
            "cache": {
                "served_from_cache": hit,
                "cache_key": cache_key,
                "ttl_used": ttl,
                "bypass_reason": None,
            },
        }

    def _relational_page(self, filters: LeadListFilters) -> dict[str, Any]:
        started = time.perf_counter()
        moment = self._now()
        page = filters.page or 1
        per_page = filters.per_page or get_settings().lead_list_default_page_size
        sort = resolve_sort(filters.sort_by, filters.sort_order)
        conditions = build_conditions(filters, moment)

        with tracer.start_as_current_span("crm.leads.list") as span:
            total = int(self.session.scalar(select(func.count(CRMLead.id)).where(*conditions)) or 0)
            rows = self.session.scalars(
                select(CRMLead)
                .where(*conditions)
                .order_by(*build_order_by(sort))
                .offset((page - 1) * per_page)
                .limit(per_page)
            ).unique().all()
            annotate_span(span, total=total, returned=len(rows), sort_by=sort.field)

        observe_lead_query("list", "relational", time.perf_counter() - started)
        return {
            "data": [lead_to_read(lead, moment).model_dump(mode="json") for lead in rows],
            "pagination": build_pagination(page, per_page, total, len(rows)),
            "sort": {"sort_by": sort.field, "sort_order": sort.direction},
        }

    def _search_leads(self, filters: LeadListFilters) -> dict[str, Any]:
        started = time.perf_counter()
        moment = self._now()
        term = (filters.search or "").strip()
        page = filters.page or 1
        per_page = filters.per_page or get_settings().lead_list_default_page_size
        index_filters, ignored = translate_index_filters(filters, moment)

        sort: list[tuple[str, str]] = []
        if filters.sort_by in INDEX_SORT_FIELDS:
            sort.append((INDEX_SORT_FIELDS[filters.sort_by], filters.sort_order or "desc"))

        with tracer.start_as_current_span("crm.leads.search") as span:
            annotate_span(span, search_term=term, ignored_filters=",".join(ignored))
            try:
                hits = self.index.search(term, index_filters, sort, (page - 1) * per_page, per_page)
            except SearchIndexUnavailableError:
                observe_search_query("failed")
                raise
            except Exception as exc:
                observe_search_query("failed")
                logger.error("crm.search.query_failed", extra={"search_term": term, "error": f"{type(exc).__name__}: {exc}"})
                raise SearchIndexUnavailableError("search index query failed", {"cause": type(exc).__name__}) from exc

            ordered: list[CRMLead] = []
            if hits.ids:
                wanted = [uuid.UUID(doc_id) for doc_id in hits.ids]
                rows = self.session.scalars(
                    select(CRMLead).where(CRMLead.id.in_(wanted), CRMLead.deleted_at.is_(None))
                ).unique().all()
                by_id = {lead.id: lead for lead in rows}
                ordered = [by_id[lead_id] for lead_id in wanted if lead_id in by_id]
            annotate_span(span, total=hits.total, returned=len(ordered))

        observe_search_query("ok")
        if ignored:
            logger.info("crm.search.filters_ignored", extra={"search_term": term, "ignored_filters": ignored})
        observe_lead_query("list", "search", time.perf_counter() - started)
        return {
            "data": [lead_to_read(lead, moment).model_dump(mode="json") for lead in ordered],
            "pagination": build_pagination(page, per_page, hits.total, len(ordered)),
            "search_info": {
                "engine": "index",
                "query": term,
                "total_hits": hits.total,
                "processing_time_ms": hits.processing_ms,
                "ignored_filters": ignored,
            },
        }

    def get_lead_detail(self, lead_id: uuid.UUID) -> dict[str, Any]:
        settings = get_settings()
        cache_key = build_detail_cache_key(lead_id)

        def compute() -> dict[str, Any]:
            lead = self.session.scalar(select(CRMLead).where(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None)))
            if lead is None:
                raise LeadNotFoundError(lead_id)
            return lead_to_read(lead, self._now()).model_dump(mode="json")

        data, hit = self.cache.remember(cache_key, settings.lead_detail_ttl_seconds, [LEADS_TAG, lead_tag(lead_id)], compute)
        observe_lead_cache("detail", "hit" if hit else "miss")
        return {
            "data": data,
            "cache": {
                "served_from_cache": hit,
                "cache_key": cache_key,
                "ttl_used": settings.lead_detail_ttl_seconds,
                "bypass_reason": None,
            },
        }

    def get_stats(self, query: LeadStatsQuery) -> dict[str, Any]:
        settings = get_settings()
        cache_key = build_stats_cache_key(query)
        data, hit = self.cache.remember(
            cache_key,
            settings.lead_stats_ttl_seconds,
            [LEADS_TAG, LEADS_STATS_TAG],
            lambda: self._compute_stats(query),
        )
        observe_lead_cache("stats", "hit" if hit else "miss")
        return {
            "data": data,
            "cache": {
                "served_from_cache": hit,
                "cache_key": cache_key,
                "ttl_used": settings.lead_stats_ttl_seconds,
                "bypass_reason": None,
            },
        }

    def _compute_stats(self, query: LeadStatsQuery) -> dict[str, Any]:
        started = time.perf_counter()
        moment = self._now()
        date_from = query.date_from or moment - timedelta(days=30)
        date_to = query.date_to or moment
        live = CRMLead.deleted_at.is_(None)
        in_window = and_(live, CRMLead.created_at >= date_from, CRMLead.created_at <= date_to)

        def count(*conditions: ColumnElement[bool]) -> int:
            return int(self.session.scalar(select(func.count(CRMLead.id)).where(*conditions)) or 0)

        status_rows = self.session.execute(
            select(CRMLead.inquiry_status, func.count(CRMLead.id)).where(live).group_by(CRMLead.inquiry_status)
        ).all()
        priority_rows = self.session.execute(
            select(CRMLead.priority, func.count(CRMLead.id)).where(live).group_by(CRMLead.priority)
        ).all()
        source_rows = self.session.execute(
            select(CRMLeadSource.name, func.count(CRMLead.id))
            .select_from(CRMLead)
            .outerjoin(CRMLeadSource, CRMLeadSource.id == CRMLead.lead_source_id)
            .where(live, CRMLead.lead_source_id.is_not(None))
            .group_by(CRMLeadSource.name)
        ).all()
        average = self.session.scalar(select(func.avg(CRMLead.lead_score)).where(live))
        trend_day = func.date(CRMLead.created_at)
        trend_rows = self.session.execute(
            select(trend_day, func.count(CRMLead.id)).where(in_window).group_by(trend_day).order_by(trend_day)
        ).all()

        period_leads = count(in_window)
        won_in_period = count(in_window, CRMLead.inquiry_status == "won")
        stats = {
            "total_leads": count(live),
            "period_leads": period_leads,
            "status_breakdown": {status: total for status, total in status_rows},
            "priority_breakdown": {priority: total for priority, total in priority_rows},
            "source_breakdown": {(name or "Unknown"): total for name, total in source_rows},
            "avg_lead_score": round(float(average or 0), 2),
            "hot_leads_count": count(live, hot_lead_condition()),
            "unassigned_count": count(live, CRMLead.assigned_to.is_(None)),
            "conversion_rate": round(won_in_period / period_leads * 100, 2) if period_leads else 0.0,
            "daily_trend": {str(day): total for day, total in trend_rows},
            "window": {"date_from": ensure_aware(date_from).isoformat(), "date_to": ensure_aware(date_to).isoformat()},
        }
        observe_lead_query("stats", "relational", time.perf_counter() - started)
        return stats
