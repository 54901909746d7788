from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadhub import events
from leadhub.core.config import get_settings
from leadhub.core.database import Base, get_db
from leadhub.crm.actors import ActorUser
from leadhub.crm.api import get_current_user
from leadhub.crm.cache import InMemoryTaggedCache, get_lead_cache
from leadhub.crm.search_index import InMemoryLeadSearchIndex, get_search_index
from leadhub.main import app


LEAD_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.create",
    "crm.leads.update",
    "crm.leads.delete",
    "crm.activities.read",
    "crm.activities.write",
}


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
def search_index() -> InMemoryLeadSearchIndex:
    return InMemoryLeadSearchIndex()


@pytest.fixture()
def client(
    db_session: Session,
    search_index: InMemoryLeadSearchIndex,
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "agent": ActorUser(user_id=str(uuid.uuid4()), permissions=set(LEAD_PERMISSIONS)),
        "viewer": ActorUser(user_id=str(uuid.uuid4()), permissions={"crm.leads.read", "crm.activities.read"}),
        "admin": ActorUser(user_id=str(uuid.uuid4()), roles={"admin"}, is_super_admin=True),
    }
    current = {"name": "agent"}

    def override_get_current_user(request: Request) -> ActorUser:
        actor = actors[current["name"]]
        actor.correlation_id = getattr(request.state, "correlation_id", None)
        return actor

    def set_actor(name: str) -> None:
        current["name"] = name

    cache = InMemoryTaggedCache()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_lead_cache] = lambda: cache
    app.dependency_overrides[get_search_index] = lambda: search_index
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {"name": "Jamie Rivera"}
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_lead_normalizes_and_scores(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/crm/leads",
        json={
            "name": "  Jamie Rivera ",
            "email": "Jamie@Acme.IO",
            "phone": "+971 (50) 123-4567 ext",
            "occupation": "Director",
            "tags": [{"value": "vip", "label": "VIP"}, {"value": "vip"}],
            "budget": {"amount": 1200000, "currency": "AED"},
        },
        headers={"X-Correlation-Id": "corr-create-1"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Jamie Rivera"
    assert body["email"] == "jamie@acme.io"
    assert body["phone"] == "+971 (50) 123-4567"
    assert body["lead_score"] == 100
    assert body["is_hot_lead"] is True
    assert body["status_label"] == "New"
    assert body["formatted_budget"] == "AED 1,200,000"
    assert [tag["value"] for tag in body["tags"]] == ["vip"]
    assert body["row_version"] == 1
    assert body["pending_activities_count"] == 0
    assert body["last_activity_at"] is not None

    created = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created[-1]["payload"]["lead_id"] == body["id"]
    assert created[-1]["correlation_id"] == "corr-create-1"


def test_missing_lead_returns_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead_id = uuid.uuid4()

    response = test_client.get(f"/api/crm/leads/{lead_id}", headers={"X-Correlation-Id": "corr-404"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "crm_lead_not_found",
        "message": "lead not found",
        "details": {"lead_id": str(lead_id)},
        "correlation_id": "corr-404",
    }


def test_detail_reports_cache_state(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    first = test_client.get(f"/api/crm/leads/{lead['id']}").json()
    second = test_client.get(f"/api/crm/leads/{lead['id']}").json()

    assert first["data"]["id"] == lead["id"]
    assert first["cache"]["served_from_cache"] is False
    assert second["cache"]["served_from_cache"] is True
    assert second["cache"]["ttl_used"] == 900


def test_list_accepts_repeated_and_bracketed_params(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_lead(test_client, name="Ana", inquiry_status="new")
    _create_lead(test_client, name="Bo", inquiry_status="contacted")
    _create_lead(test_client, name="Cy", inquiry_status="lost")

    repeated = test_client.get("/api/crm/leads?status=new&status=contacted&sort_by=name&sort_order=asc")
    bracketed = test_client.get("/api/crm/leads?status[]=contacted&status[]=new&sort_by=name&sort_order=asc")

    assert repeated.status_code == 200
    assert [row["name"] for row in repeated.json()["data"]] == ["Ana", "Bo"]
    assert bracketed.json()["cache"]["cache_key"] == repeated.json()["cache"]["cache_key"]
    assert bracketed.json()["cache"]["served_from_cache"] is True


def test_list_tolerates_malformed_params(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_lead(test_client)

    response = test_client.get("/api/crm/leads?page=abc&per_page=9999&sort_order=sideways&min_budget=lots")

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"]["current_page"] == 1
    assert body["pagination"]["per_page"] == 100
    assert body["sort"]["sort_order"] == "desc"
    assert body["pagination"]["total"] == 1


def test_search_list_uses_the_index(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    high = _create_lead(test_client, name="Dubai Buyer", priority="high", lead_score=70)
    _create_lead(test_client, name="Dubai Browser", priority="low", lead_score=90)

    response = test_client.get("/api/crm/leads?search=dubai&priority=high")

    assert response.status_code == 200
    body = response.json()
    assert [row["id"] for row in body["data"]] == [high["id"]]
    assert body["search_info"]["total_hits"] == 1
    assert body["cache"]["bypass_reason"] == "search"


def test_search_fails_loudly_when_index_is_down(
    client: tuple[TestClient, Callable[[str], None]],
    search_index: InMemoryLeadSearchIndex,
) -> None:
    test_client, _ = client
    search_index.available = False

    response = test_client.get("/api/crm/leads?search=anything")

    assert response.status_code == 503
    assert response.json()["code"] == "crm_search_unavailable"


def test_patch_status_writes_audit_trail_and_follow_up(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)
    test_client.get(f"/api/crm/leads/{lead['id']}")

    response = test_client.patch(
        f"/api/crm/leads/{lead['id']}",
        json={"inquiry_status": "contacted", "row_version": lead["row_version"]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["inquiry_status"] == "contacted"
    assert body["row_version"] == 2
    assert body["pending_activities_count"] == 1
    assert body["next_follow_up_at"] is not None

    detail = test_client.get(f"/api/crm/leads/{lead['id']}").json()
    assert detail["cache"]["served_from_cache"] is False
    assert detail["data"]["inquiry_status"] == "contacted"

    activities = test_client.get(f"/api/crm/leads/{lead['id']}/activities").json()
    types = {item["activity_type"] for item in activities["data"]}
    assert {"status_change", "follow_up"} <= types

    updated = [item for item in events.published_events if item["event_type"] == "crm.lead.updated"]
    assert updated[-1]["payload"]["changed_fields"] == ["inquiry_status"]


def test_patch_with_stale_row_version_conflicts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)
    assert test_client.patch(f"/api/crm/leads/{lead['id']}", json={"name": "First"}).status_code == 200

    response = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"name": "Second", "row_version": 1})

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "crm_row_version_conflict"
    assert body["details"]["current_row_version"] == 2


def test_patch_rejects_null_for_required_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    for payload in ({"inquiry_status": None}, {"name": None}, {"priority": None}):
        response = test_client.patch(f"/api/crm/leads/{lead['id']}", json=payload)
        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["body", next(iter(payload))]

    unchanged = test_client.get(f"/api/crm/leads/{lead['id']}").json()["data"]
    assert unchanged["inquiry_status"] == "new"
    assert unchanged["row_version"] == 1

    cleared = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"city": None})
    assert cleared.status_code == 200


def test_permissions_are_enforced(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client)
    set_actor("viewer")

    create = test_client.post("/api/crm/leads", json={"name": "Blocked"})
    reindex = test_client.post("/api/crm/leads/reindex")
    read = test_client.get(f"/api/crm/leads/{lead['id']}")

    assert create.status_code == 403
    assert create.json()["code"] == "crm_lead_create_failed"
    assert create.json()["message"] == "Missing permission: crm.leads.create"
    assert reindex.status_code == 403
    assert read.status_code == 200


def test_admin_can_reindex(client: tuple[TestClient, Callable[[str], None]], search_index: InMemoryLeadSearchIndex) -> None:
    test_client, set_actor = client
    _create_lead(test_client, name="Ana")
    _create_lead(test_client, name="Spammer", inquiry_status="spam")
    search_index.documents.clear()
    set_actor("admin")

    response = test_client.post("/api/crm/leads/reindex")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["indexed_count"] == 1
    assert len(search_index.documents) == 1


def test_tag_endpoints(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    added = test_client.post(f"/api/crm/leads/{lead['id']}/tags", json={"value": "expo", "label": "Expo 2026"})
    assert added.status_code == 200
    assert [tag["value"] for tag in added.json()["tags"]] == ["expo"]

    removed = test_client.delete(f"/api/crm/leads/{lead['id']}/tags/expo")
    assert removed.status_code == 200
    assert removed.json()["tags"] == []
    assert removed.json()["row_version"] == 3


def test_rescore_does_not_bump_row_version(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, email="jamie@acme.io", lead_score=10)
    for _ in range(2):
        response = test_client.post("/api/crm/activities", json={"lead_id": lead["id"], "activity_type": "call"})
        assert response.status_code == 201

    rescored = test_client.post(f"/api/crm/leads/{lead['id']}/rescore")

    assert rescored.status_code == 200
    assert rescored.json()["lead_score"] == 70
    assert rescored.json()["row_version"] == 1


def test_delete_lead_hides_it(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    response = test_client.delete(f"/api/crm/leads/{lead['id']}")

    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    assert test_client.get(f"/api/crm/leads/{lead['id']}").status_code == 404
    assert test_client.get("/api/crm/leads").json()["pagination"]["total"] == 0
    assert test_client.delete(f"/api/crm/leads/{lead['id']}").json()["code"] == "crm_lead_not_found"


def test_stats_endpoint(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_lead(test_client, lead_score=90)
    _create_lead(test_client, lead_score=20, inquiry_status="won")

    response = test_client.get("/api/crm/leads/stats")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_leads"] == 2
    assert data["hot_leads_count"] == 1
    assert data["conversion_rate"] == 50.0
