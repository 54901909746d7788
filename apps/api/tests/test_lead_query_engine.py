from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadhub import events
from leadhub.core.config import get_settings
from leadhub.core.database import Base
from leadhub.crm.actors import ActorUser
from leadhub.crm.cache import InMemoryTaggedCache
from leadhub.crm.errors import LeadNotFoundError
from leadhub.crm.query_engine import (
    build_list_cache_key,
    resolve_bypass_reason,
    resolve_list_ttl,
    resolve_sort,
    translate_index_filters,
)
from leadhub.crm.schemas import ActivityCreate, LeadCreate, LeadListFilters, LeadStatsQuery, LeadUpdate
from leadhub.crm.search_index import InMemoryLeadSearchIndex
from leadhub.crm.service import ActivityService, LeadService


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def services() -> tuple[LeadService, ActivityService]:
    cache = InMemoryTaggedCache()
    index = InMemoryLeadSearchIndex()
    return LeadService(cache, index), ActivityService(cache, index)


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=str(uuid.uuid4()), permissions={"crm.leads.read"})


def _filters(**params: object) -> LeadListFilters:
    return LeadListFilters.model_validate(params)


def test_cache_key_ignores_order_defaults_and_cache_flags() -> None:
    first = _filters(status=["new", "contacted"], priority="high")
    second = _filters(priority=["high"], status="contacted,new", page="1", per_page="25", force_refresh="1")

    assert build_list_cache_key(first) == build_list_cache_key(second)
    assert build_list_cache_key(first).startswith("leads:list:")
    assert build_list_cache_key(first) != build_list_cache_key(_filters(status="new", priority="high"))
    assert build_list_cache_key(_filters()) == build_list_cache_key(_filters(search="  ", tags=[]))


def test_malformed_parameters_are_tolerated() -> None:
    filters = _filters(page="abc", per_page="1000", sort_order="sideways", min_score="250", assigned_to="not-a-uuid")

    assert filters.page == 1
    assert filters.per_page == 100
    assert filters.sort_order is None
    assert filters.min_score == 100
    assert filters.assigned_to is None
    assert _filters(date_to="2026-01-31").date_to == datetime(2026, 1, 31, 23, 59, 59, tzinfo=timezone.utc)


def test_ttl_tiers() -> None:
    assert resolve_list_ttl(_filters()) == 900
    assert resolve_list_ttl(_filters(status="new", priority="high", sort_by="name")) == 900
    assert resolve_list_ttl(_filters(status="new", priority="high", city="Dubai")) == 600
    assert resolve_list_ttl(_filters(assigned_to=str(uuid.uuid4()))) == 300
    assert resolve_list_ttl(_filters(hot_leads="true", status="new", priority="high", city="Dubai")) == 300


def test_bypass_reasons_in_precedence_order(actor: ActorUser) -> None:
    admin = ActorUser(user_id=str(uuid.uuid4()), roles={"admin"})

    assert resolve_bypass_reason(_filters(), actor, NOW) is None
    assert resolve_bypass_reason(_filters(force_refresh="1", real_time="1"), actor, NOW) == "force_refresh"
    assert resolve_bypass_reason(_filters(real_time="true", no_cache="true"), actor, NOW) == "real_time"
    assert resolve_bypass_reason(_filters(no_cache="yes"), actor, NOW) == "no_cache"

    recent = (NOW - timedelta(seconds=30)).isoformat()
    stale = (NOW - timedelta(hours=2)).isoformat()
    assert resolve_bypass_reason(_filters(updated_after=recent), actor, NOW) == "recent_updates"
    assert resolve_bypass_reason(_filters(updated_after=stale), actor, NOW) is None

    assert resolve_bypass_reason(_filters(bulk_operation="1"), actor, NOW) is None
    assert resolve_bypass_reason(_filters(bulk_operation="1"), admin, NOW) == "bulk_operation"


def test_age_sorts_map_to_inverted_timestamps() -> None:
    sort = resolve_sort("days_since_created", "asc")
    assert (sort.field, sort.column_name, sort.column_direction) == ("days_since_created", "created_at", "desc")

    fallback = resolve_sort("password", None)
    assert (fallback.field, fallback.direction) == ("created_at", "desc")


def test_geo_filters_are_reported_as_ignored_by_the_index() -> None:
    translated, ignored = translate_index_filters(_filters(lat="25.2", lng="55.3", radius="10", status="new"), NOW)

    assert ignored == ["geo_radius"]
    assert [(item.field, item.op) for item in translated] == [("inquiry_status", "in")]


def test_list_is_cached_until_a_write_invalidates_it(
    db_session: Session,
    services: tuple[LeadService, ActivityService],
    actor: ActorUser,
) -> None:
    lead_service, activity_service = services
    first = lead_service.create_lead(db_session, actor, LeadCreate(name="Ana"))
    lead_service.create_lead(db_session, actor, LeadCreate(name="Bo"))

    miss = lead_service.list_leads(db_session, actor, _filters())
    hit = lead_service.list_leads(db_session, actor, _filters())

    assert miss["cache"]["served_from_cache"] is False
    assert miss["cache"]["ttl_used"] == 900
    assert hit["cache"]["served_from_cache"] is True
    assert hit["cache"]["cache_key"] == miss["cache"]["cache_key"]
    assert hit["pagination"]["total"] == 2

    lead_service.create_lead(db_session, actor, LeadCreate(name="Cy"))
    after_lead_write = lead_service.list_leads(db_session, actor, _filters())
    assert after_lead_write["cache"]["served_from_cache"] is False
    assert after_lead_write["pagination"]["total"] == 3

    lead_service.list_leads(db_session, actor, _filters())
    activity_service.create_activity(db_session, actor, ActivityCreate(lead_id=first.id))
    after_activity_write = lead_service.list_leads(db_session, actor, _filters())
    assert after_activity_write["cache"]["served_from_cache"] is False


def test_bypassed_list_reads_through_and_leaves_cache_alone(
    db_session: Session,
    services: tuple[LeadService, ActivityService],
    actor: ActorUser,
) -> None:
    lead_service, _ = services
    lead_service.create_lead(db_session, actor, LeadCreate(name="Ana"))

    bypassed = lead_service.list_leads(db_session, actor, _filters(force_refresh="1"))

    assert bypassed["cache"] == {
        "served_from_cache": False,
        "cache_key": build_list_cache_key(_filters()),
        "ttl_used": 0,
        "bypass_reason": "force_refresh",
    }
    assert lead_service.list_leads(db_session, actor, _filters())["cache"]["served_from_cache"] is False


def test_relational_filters_and_sorting(
    db_session: Session,
    services: tuple[LeadService, ActivityService],
    actor: ActorUser,
) -> None:
    lead_service, _ = services
    lead_service.create_lead(
        db_session,
        actor,
        LeadCreate(name="Hot", lead_score=90, city="Dubai Marina", tags=[{"value": "vip"}], latitude=25.08, longitude=55.14),
    )
    lead_service.create_lead(
        db_session,
        actor,
        LeadCreate(name="Warm", lead_score=60, priority="high", inquiry_status="contacted", city="Abu Dhabi"),
    )
    lead_service.create_lead(db_session, actor, LeadCreate(name="Cold", lead_score=10, inquiry_status="lost"))

    def names(**params: object) -> list[str]:
        return [row["name"] for row in lead_service.list_leads(db_session, actor, _filters(no_cache="1", **params))["data"]]

    assert names(sort_by="lead_score", sort_order="asc") == ["Cold", "Warm", "Hot"]
    assert names(hot_leads="1", sort_by="name", sort_order="asc") == ["Hot", "Warm"]
    assert names(city="dubai") == ["Hot"]
    assert names(tags="vip,expo") == ["Hot"]
    assert names(active_only="1", sort_by="name", sort_order="asc") == ["Hot", "Warm"]
    assert names(lat="25.1", lng="55.15", radius="10") == ["Hot"]

    page = lead_service.list_leads(db_session, actor, _filters(per_page="2", page="2", sort_by="name", sort_order="asc"))
    assert [row["name"] for row in page["data"]] == ["Warm"]
    assert page["pagination"]["last_page"] == 2
    assert page["pagination"]["has_more"] is False
    assert page["sort"] == {"sort_by": "name", "sort_order": "asc"}


def test_detail_is_cached_and_invalidated_by_updates(
    db_session: Session,
    services: tuple[LeadService, ActivityService],
    actor: ActorUser,
) -> None:
    lead_service, _ = services
    lead = lead_service.create_lead(db_session, actor, LeadCreate(name="Ana"))

    first = lead_service.get_lead(db_session, lead.id)
    second = lead_service.get_lead(db_session, lead.id)
    assert first["cache"]["served_from_cache"] is False
    assert first["cache"]["cache_key"] == f"lead:{lead.id}:full"
    assert second["cache"]["served_from_cache"] is True

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(name="Ana Maria"))
    refreshed = lead_service.get_lead(db_session, lead.id)
    assert refreshed["cache"]["served_from_cache"] is False
    assert refreshed["data"]["name"] == "Ana Maria"

    with pytest.raises(LeadNotFoundError):
        lead_service.get_lead(db_session, uuid.uuid4())


def test_stats_are_computed_and_cached(
    db_session: Session,
    services: tuple[LeadService, ActivityService],
    actor: ActorUser,
) -> None:
    lead_service, _ = services
    lead_service.create_lead(db_session, actor, LeadCreate(name="Ana", lead_score=85))
    lead_service.create_lead(db_session, actor, LeadCreate(name="Bo", lead_score=40, inquiry_status="won"))
    deleted = lead_service.create_lead(db_session, actor, LeadCreate(name="Cy", lead_score=40, priority="low"))
    lead_service.create_lead(db_session, actor, LeadCreate(name="Di", lead_score=30))
    lead_service.delete_lead(db_session, actor, deleted.id)

    stats = lead_service.get_stats(db_session, LeadStatsQuery())
    data = stats["data"]

    assert stats["cache"]["served_from_cache"] is False
    assert data["total_leads"] == 3
    assert data["period_leads"] == 3
    assert data["status_breakdown"] == {"new": 2, "won": 1}
    assert data["priority_breakdown"] == {"medium": 3}
    assert data["hot_leads_count"] == 1
    assert data["unassigned_count"] == 3
    assert data["avg_lead_score"] == 51.67
    assert data["conversion_rate"] == 33.33
    assert sum(data["daily_trend"].values()) == 3

    assert lead_service.get_stats(db_session, LeadStatsQuery())["cache"]["served_from_cache"] is True
