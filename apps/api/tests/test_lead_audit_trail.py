from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadhub import events
from leadhub.core.config import get_settings
from leadhub.core.database import Base
from leadhub.crm.actors import ActorUser, coerce_user_uuid
from leadhub.crm.audit_trail import AuditTrailGenerator, add_months, format_moment
from leadhub.crm.cache import InMemoryTaggedCache
from leadhub.crm.derived import ensure_aware
from leadhub.crm.errors import RowVersionConflictError
from leadhub.crm.models import CRMLead, CRMLeadActivity, CRMLeadSource, CRMUser
from leadhub.crm.schemas import LeadCreate, LeadUpdate, TagAddRequest
from leadhub.crm.search_index import InMemoryLeadSearchIndex
from leadhub.crm.service import LeadService


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
def lead_service() -> LeadService:
    return LeadService(InMemoryTaggedCache(), InMemoryLeadSearchIndex())


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id=str(uuid.uuid4()), permissions={"crm.leads.update"}, correlation_id="corr-audit")


@pytest.fixture()
def agent(db_session: Session) -> CRMUser:
    user = CRMUser(id=uuid.uuid4(), name="Sam Agent", email="sam@example.com")
    db_session.add(user)
    db_session.commit()
    return user


def _activities(db_session: Session, lead_id: uuid.UUID) -> list[CRMLeadActivity]:
    db_session.expire_all()
    return list(
        db_session.scalars(
            select(CRMLeadActivity).where(CRMLeadActivity.lead_id == lead_id).order_by(CRMLeadActivity.created_at)
        ).all()
    )


def _create(lead_service: LeadService, db_session: Session, actor: ActorUser, **overrides: object):
    payload: dict[str, object] = {"name": "Jamie", "email": "jamie@example.com"}
    payload.update(overrides)
    return lead_service.create_lead(db_session, actor, LeadCreate(**payload))


def test_create_writes_no_audit_entries(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor)

    assert _activities(db_session, lead.id) == []
    assert lead.row_version == 1
    assert lead.last_activity_at == lead.created_at
    assert [event["event_type"] for event in events.published_events] == ["crm.lead.created"]


def test_status_change_writes_entry_and_follow_up(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
) -> None:
    lead = _create(lead_service, db_session, actor)

    updated = lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(inquiry_status="contacted"))

    activities = _activities(db_session, lead.id)
    status_entry = next(item for item in activities if item.activity_type == "status_change")
    follow_up = next(item for item in activities if item.activity_type == "follow_up")

    assert status_entry.status == "completed"
    assert status_entry.subject == "Status changed from New to Contacted"
    assert status_entry.description == "Lead status was updated from 'New' to 'Contacted'."
    assert status_entry.user_id == actor.user_uuid
    assert status_entry.activity_metadata["old_status"] == "new"
    assert status_entry.activity_metadata["new_status"] == "contacted"
    assert status_entry.activity_metadata["change_type"] == "status_change"

    assert follow_up.status == "pending"
    assert follow_up.subject == "Follow up on contacted lead"
    assert follow_up.user_id == actor.user_uuid
    created_at = ensure_aware(follow_up.created_at)
    assert ensure_aware(follow_up.scheduled_at) - created_at == timedelta(days=2)
    assert ensure_aware(follow_up.due_at) - created_at == timedelta(days=3)

    assert updated.row_version == 2
    assert updated.pending_activities_count == 1
    assert updated.next_follow_up_at == ensure_aware(follow_up.scheduled_at)
    assert updated.last_activity_at == created_at
    assert events.published_events[-1]["event_type"] == "crm.lead.updated"
    assert events.published_events[-1]["payload"]["changed_fields"] == ["inquiry_status"]


def test_status_follow_up_is_addressed_to_assignee(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
    agent: CRMUser,
) -> None:
    lead = _create(lead_service, db_session, actor, assigned_to=str(agent.id))

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(inquiry_status="nurturing"))

    follow_up = next(item for item in _activities(db_session, lead.id) if item.activity_type == "follow_up")
    assert follow_up.user_id == agent.id
    assert follow_up.priority == "low"
    scheduled = ensure_aware(follow_up.scheduled_at)
    assert scheduled == add_months(ensure_aware(follow_up.created_at), 1)


def test_statuses_without_follow_up_write_single_entry(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
) -> None:
    lead = _create(lead_service, db_session, actor)

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(inquiry_status="won"))

    activities = _activities(db_session, lead.id)
    assert [item.activity_type for item in activities] == ["status_change"]


def test_assignment_change_writes_entry_and_task_for_new_assignee(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
    agent: CRMUser,
) -> None:
    lead = _create(lead_service, db_session, actor, priority="urgent")

    updated = lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(assigned_to=agent.id))

    activities = _activities(db_session, lead.id)
    assignment = next(item for item in activities if item.activity_type == "assignment_change")
    task = next(item for item in activities if item.activity_type == "task")

    assert assignment.subject == "Lead reassigned from Unassigned to Sam Agent"
    assert assignment.activity_metadata["new_user_id"] == str(agent.id)
    assert task.user_id == agent.id
    assert task.priority == "urgent"
    assert task.description == "You have been assigned a new lead: Jamie. Please review and follow up."
    assert updated.assigned_at is not None
    assert updated.assigned_user_name == "Sam Agent"


def test_self_assignment_skips_follow_up_task(lead_service: LeadService, db_session: Session, agent: CRMUser) -> None:
    actor = ActorUser(user_id=str(agent.id))
    lead = _create(lead_service, db_session, actor)

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(assigned_to=agent.id))

    assert [item.activity_type for item in _activities(db_session, lead.id)] == ["assignment_change"]


def test_unknown_assignee_renders_raw_id(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor)
    stranger = uuid.uuid4()

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(assigned_to=stranger))

    assignment = next(item for item in _activities(db_session, lead.id) if item.activity_type == "assignment_change")
    assert assignment.subject == f"Lead reassigned from Unassigned to ID: {stranger}"


def test_generic_field_change_text(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    source = CRMLeadSource(id=uuid.uuid4(), name="Website", slug="website")
    db_session.add(source)
    db_session.commit()
    lead = _create(lead_service, db_session, actor, city="Dubai")

    lead_service.update_lead(
        db_session,
        actor,
        lead.id,
        LeadUpdate(name="Jamie Smith", city=None, lead_source_id=source.id, priority="high"),
    )

    by_field = {item.activity_metadata["field"]: item for item in _activities(db_session, lead.id)}
    assert set(by_field) == {"name", "city", "lead_source_id", "priority"}
    assert by_field["name"].subject == "Updated Name"
    assert by_field["name"].description == "Name was changed from Jamie to Jamie Smith."
    assert by_field["city"].description == "City was changed from Dubai to Not set."
    assert by_field["lead_source_id"].description == "Lead Source was changed from Not set to Website."
    assert by_field["priority"].description == "Priority was changed from Medium to High."
    assert all(item.status == "completed" and item.category == "system" for item in by_field.values())


def test_budget_and_custom_fields_compare_as_values(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
) -> None:
    lead = _create(lead_service, db_session, actor, budget={"amount": 1000, "currency": "USD"}, custom_fields={"a": 1})

    lead_service.update_lead(
        db_session,
        actor,
        lead.id,
        LeadUpdate(budget={"amount": 1000, "currency": "USD"}, custom_fields={"a": 1}),
    )
    assert _activities(db_session, lead.id) == []

    lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(budget={"amount": 2500, "currency": "USD"}))
    entries = _activities(db_session, lead.id)
    assert len(entries) == 1
    assert entries[0].subject == "Updated Budget"
    assert entries[0].description == (
        'Budget was changed from {"amount": 1000.0, "currency": "USD"} to {"amount": 2500.0, "currency": "USD"}.'
    )


def test_tag_changes_write_added_removed_and_summary(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
) -> None:
    lead = _create(lead_service, db_session, actor, tags=[{"value": "vip", "label": "VIP"}])

    lead_service.update_lead(
        db_session,
        actor,
        lead.id,
        LeadUpdate(tags=[{"value": "expo", "label": "Expo"}, {"value": "b2b"}]),
    )

    by_change = {item.activity_metadata["change_type"]: item for item in _activities(db_session, lead.id)}
    assert set(by_change) == {"tags_added", "tags_removed", "tags_updated"}
    assert by_change["tags_added"].description == "Added tags: Expo, b2b"
    assert by_change["tags_removed"].description == "Removed tags: VIP"
    assert by_change["tags_updated"].description == "Tags were updated. Added: Expo, b2b. Removed: VIP."
    assert all(item.category == "tag_change" for item in by_change.values())


def test_add_tag_helper_is_audited_once(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor)

    updated = lead_service.add_tag(db_session, actor, lead.id, TagAddRequest(value="vip", label="VIP"))
    again = lead_service.add_tag(db_session, actor, lead.id, TagAddRequest(value="vip", label="VIP"))

    assert [tag.value for tag in updated.tags] == ["vip"]
    assert again.row_version == updated.row_version
    assert [item.activity_metadata["change_type"] for item in _activities(db_session, lead.id)] == ["tags_added"]


def test_noop_update_changes_nothing(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor)
    events.published_events.clear()

    result = lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(name="Jamie", priority="medium"))

    assert result.row_version == 1
    assert _activities(db_session, lead.id) == []
    assert events.published_events == []


def test_rescore_is_not_audited(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor, phone="+971 555")

    rescored = lead_service.rescore_lead(db_session, lead.id)

    assert rescored.lead_score == 75
    assert rescored.row_version == 1
    assert rescored.updated_at == lead.updated_at
    assert _activities(db_session, lead.id) == []


def test_row_version_conflict(lead_service: LeadService, db_session: Session, actor: ActorUser) -> None:
    lead = _create(lead_service, db_session, actor)

    with pytest.raises(RowVersionConflictError):
        lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(row_version=7, name="Other"))

    assert db_session.get(CRMLead, lead.id).name == "Jamie"


def test_anonymous_edits_are_attributed_to_system_actor(lead_service: LeadService, db_session: Session) -> None:
    lead = _create(lead_service, db_session, None)

    lead_service.update_lead(db_session, None, lead.id, LeadUpdate(occupation="CTO"))

    entries = _activities(db_session, lead.id)
    assert len(entries) == 1
    assert entries[0].user_id == coerce_user_uuid(get_settings().system_actor_user_id)


def test_failing_field_is_skipped_and_logged(
    lead_service: LeadService,
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)
    lead = _create(lead_service, db_session, actor)
    original = AuditTrailGenerator._field_entry

    def flaky_field_entry(self, lead, change, actor_id, moment):  # type: ignore[no-untyped-def]
        if change.field == "city":
            raise ValueError("cannot render city")
        return original(self, lead, change, actor_id, moment)

    monkeypatch.setattr(AuditTrailGenerator, "_field_entry", flaky_field_entry)

    updated = lead_service.update_lead(db_session, actor, lead.id, LeadUpdate(city="Paris", country="France"))

    assert updated.city == "Paris"
    assert [item.activity_metadata["field"] for item in _activities(db_session, lead.id)] == ["country"]
    assert any(
        record.getMessage() == "crm.audit_trail.field_failed" and getattr(record, "field", None) == "city"
        for record in caplog.records
    )


def test_format_moment_renders_twelve_hour_clock() -> None:
    moment = ensure_aware(datetime(2026, 1, 5, 15, 7))
    assert format_moment(moment) == "Jan 5, 2026 3:07 PM"
