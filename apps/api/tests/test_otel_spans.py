from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from leadhub.core.config import get_settings
from leadhub.core.database import Base, get_db
from leadhub.crm.actors import ActorUser
from leadhub.crm.api import get_current_user as crm_get_current_user
from leadhub.crm.cache import InMemoryTaggedCache, get_lead_cache
from leadhub.crm.search_index import InMemoryLeadSearchIndex, get_search_index
from leadhub.main import app
from leadhub.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.leads.read",
    "crm.leads.create",
    "crm.leads.update",
    "crm.leads.reindex",
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    cache = InMemoryTaggedCache()
    index = InMemoryLeadSearchIndex()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    app.dependency_overrides[get_lead_cache] = lambda: cache
    app.dependency_overrides[get_search_index] = lambda: index
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/crm/leads", json={"name": "Span Lead"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_list_span_records_query_shape(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    assert client.post("/api/crm/leads", json={"name": "Span Lead"}).status_code == 201

    response = client.get("/api/crm/leads?sort_by=name", headers={"X-Correlation-Id": "otel-list-1"})
    assert response.status_code == 200

    list_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.leads.list"]
    assert list_spans
    assert any(
        span.attributes.get("total") == 1
        and span.attributes.get("returned") == 1
        and span.attributes.get("sort_by") == "name"
        and span.attributes.get("correlation_id") == "otel-list-1"
        for span in list_spans
    )


def test_reindex_span_reports_outcome(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    assert client.post("/api/crm/leads", json={"name": "Span Lead"}).status_code == 201

    response = client.post("/api/crm/leads/reindex", headers={"X-Correlation-Id": "otel-reindex-1"})
    assert response.status_code == 200

    reindex_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.search.reindex"]
    assert reindex_spans
    assert reindex_spans[-1].attributes.get("indexed_count") == 1
    assert reindex_spans[-1].attributes.get("outcome") == "succeeded"
