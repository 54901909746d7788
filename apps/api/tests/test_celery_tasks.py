from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadhub import events
from leadhub.core import celery_app as tasks
from leadhub.core.config import get_settings
from leadhub.core.database import Base
from leadhub.crm import search_index
from leadhub.crm.actors import ActorUser
from leadhub.crm.cache import InMemoryTaggedCache, get_lead_cache
from leadhub.crm.derived import utcnow
from leadhub.crm.models import CRMLeadActivity
from leadhub.crm.schemas import ActivityCreate, LeadCreate
from leadhub.crm.search_index import InMemoryLeadSearchIndex, RedisLeadSearchIndex, get_search_index
from leadhub.crm.service import ActivityService, LeadService


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    get_lead_cache.cache_clear()
    get_search_index.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()
    get_lead_cache.cache_clear()
    get_search_index.cache_clear()


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _actor() -> ActorUser:
    return ActorUser(user_id="task-user", permissions={"crm.leads.create"})


class SharedHashRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}

    def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        return sum(1 for name in fields if bucket.pop(name, None) is not None)

    def hvals(self, key: str) -> list[str]:
        return list(self.hashes.get(key, {}).values())

    def hlen(self, key: str) -> int:
        return len(self.hashes.get(key, {}))

    def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.hashes.pop(key, None) is not None)


def test_reindex_task_rebuilds_the_shared_index(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    client = SharedHashRedis()
    monkeypatch.setenv("SEARCH_BACKEND", "redis")
    monkeypatch.setenv("SEARCH_PREFIX", "test:search")
    monkeypatch.setattr(search_index.redis, "from_url", lambda url, **kwargs: client)
    get_settings.cache_clear()

    lead_service = LeadService(InMemoryTaggedCache(), InMemoryLeadSearchIndex())
    lead_service.create_lead(db_session, _actor(), LeadCreate(name="Task Lead One"))
    lead_service.create_lead(db_session, _actor(), LeadCreate(name="Task Lead Two"))

    result = tasks.reindex_leads_task()

    assert result["success"] is True
    assert result["indexed_count"] == 2
    api_index = RedisLeadSearchIndex(client, "test:search:documents")
    assert api_index.search("task", [], [], 0, 10).total == 2


def test_reindex_task_skips_a_process_local_index(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    LeadService(InMemoryTaggedCache(), InMemoryLeadSearchIndex()).create_lead(
        db_session, _actor(), LeadCreate(name="Task Lead One")
    )

    with caplog.at_level(logging.WARNING, logger="leadhub.tasks"):
        result = tasks.reindex_leads_task()

    assert result == {"success": False, "indexed_count": 0, "skipped": "process_local_index"}
    assert get_search_index().count() == 0
    assert any(record.getMessage() == "tasks.reindex_skipped" for record in caplog.records)


def test_overdue_task_flips_past_due_activities(db_session: Session) -> None:
    cache = InMemoryTaggedCache()
    index = InMemoryLeadSearchIndex()
    lead = LeadService(cache, index).create_lead(db_session, _actor(), LeadCreate(name="Due Lead"))
    activity = ActivityService(cache, index).create_activity(
        db_session,
        _actor(),
        ActivityCreate(lead_id=lead.id, activity_type="call", due_at=utcnow() + timedelta(days=1)),
    )
    assert activity.status == "pending"

    db_session.execute(
        update(CRMLeadActivity).where(CRMLeadActivity.id == activity.id).values(due_at=utcnow() - timedelta(hours=2))
    )
    db_session.commit()

    assert tasks.refresh_overdue_activities_task() == 1
    assert tasks.refresh_overdue_activities_task() == 0

    db_session.expire_all()
    assert db_session.get(CRMLeadActivity, activity.id).status == "overdue"
