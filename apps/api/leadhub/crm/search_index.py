from __future__ import annotations

import json
import logging
import re
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadhub.core.config import get_settings
from leadhub.crm.derived import (
    days_in_current_status,
    days_since_created,
    decode_tags,
    ensure_aware,
    formatted_budget,
    is_hot_lead,
    is_overdue,
    utcnow,
)
from leadhub.crm.errors import ReindexError, SearchIndexUnavailableError
from leadhub.crm.models import CRMLead
from leadhub.crm.options import NON_INDEXABLE_STATUSES
from leadhub.metrics import observe_reindex
from leadhub.otel import annotate_span, get_tracer

logger = logging.getLogger("leadhub.crm.search_index")
tracer = get_tracer("leadhub.crm.search_index")

_TOKEN_RE = re.compile(r"[\w@.+-]+", re.UNICODE)

SEARCHABLE_ATTRIBUTES = (
    "name",
    "email",
    "phone",
    "occupation",
    "address",
    "city",
    "country",
    "detail",
    "inquiry_country",
    "tags",
    "custom_fields_text",
    "service_name",
    "source_name",
    "assigned_user_name",
    "assigned_user_email",
)

TIMESTAMP_FIELDS = {
    "created_at": "created_at_timestamp",
    "updated_at": "updated_at_timestamp",
    "last_activity_at": "last_activity_at_timestamp",
    "next_follow_up_at": "next_follow_up_at_timestamp",
    "assigned_at": "assigned_at_timestamp",
}


def _epoch(value: datetime | None) -> int | None:
    moment = ensure_aware(value)
    return int(moment.timestamp()) if moment is not None else None


def _string_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


def is_indexable(lead: CRMLead) -> bool:
    return lead.deleted_at is None and lead.inquiry_status not in NON_INDEXABLE_STATUSES


def build_search_doc_for_lead(lead: CRMLead, now: datetime | None = None) -> dict[str, Any]:
    moment = now or utcnow()
    tags = decode_tags(lead.tags)
    custom_text = " ".join(value for value in (lead.custom_fields or {}).values() if isinstance(value, str))
    doc: dict[str, Any] = {
        "id": str(lead.id),
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "occupation": lead.occupation,
        "address": lead.address,
        "city": lead.city,
        "country": lead.country,
        "detail": lead.detail,
        "inquiry_status": lead.inquiry_status,
        "priority": lead.priority,
        "inquiry_type": lead.inquiry_type,
        "inquiry_country": lead.inquiry_country,
        "lead_score": lead.lead_score,
        "service_id": _string_or_none(lead.service_id),
        "lead_source_id": _string_or_none(lead.lead_source_id),
        "assigned_to": _string_or_none(lead.assigned_to),
        "created_by": _string_or_none(lead.created_by),
        "budget_amount": lead.budget_amount,
        "budget_currency": lead.budget_currency,
        "formatted_budget": formatted_budget(lead),
        "latitude": lead.latitude,
        "longitude": lead.longitude,
        "tags": ", ".join(str(tag.get("label") or tag["value"]) for tag in tags),
        "tag_values": [str(tag["value"]) for tag in tags],
        "custom_fields_text": custom_text or None,
        "service_name": lead.service.name if lead.service is not None else None,
        "source_name": lead.source.name if lead.source is not None else None,
        "assigned_user_name": lead.assignee.name if lead.assignee is not None else None,
        "assigned_user_email": lead.assignee.email if lead.assignee is not None else None,
        "days_since_created": days_since_created(lead, moment),
        "days_in_current_status": days_in_current_status(lead, moment),
        "is_hot_lead": is_hot_lead(lead),
        "is_assigned": lead.assigned_to is not None,
        "is_overdue": is_overdue(lead, moment),
    }
    for attribute, doc_field in TIMESTAMP_FIELDS.items():
        doc[doc_field] = _epoch(getattr(lead, attribute))
    return {key: value for key, value in doc.items() if value is not None}


@dataclass(frozen=True)
class IndexFilter:
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class SearchPage:
    ids: list[str]
    total: int
    processing_ms: float = 0.0


class LeadSearchIndex(Protocol):
    def upsert(self, docs: Iterable[dict[str, Any]]) -> int: ...

    def remove(self, ids: Iterable[str]) -> int: ...

    def remove_all(self) -> None: ...

    def count(self) -> int: ...

    def search(
        self,
        term: str,
        filters: list[IndexFilter],
        sort: list[tuple[str, str]],
        offset: int,
        limit: int,
    ) -> SearchPage: ...


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN_RE.findall(text or "")]


def _matches(doc: dict[str, Any], condition: IndexFilter) -> bool:
    value = doc.get(condition.field)
    if condition.op == "eq":
        return value == condition.value
    if condition.op == "in":
        return value in condition.value
    if condition.op == "not_in":
        return value not in condition.value
    if condition.op == "is_null":
        return value is None
    if condition.op == "not_null":
        return value is not None
    if condition.op == "contains_any":
        return bool(set(value or []) & set(condition.value))
    if value is None:
        return False
    if condition.op == "gte":
        return value >= condition.value
    if condition.op == "lte":
        return value <= condition.value
    if condition.op == "lt":
        return value < condition.value
    raise ValueError(f"unsupported index filter operator: {condition.op}")


class _Descending:
    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value

    def __lt__(self, other: _Descending) -> bool:
        return other.value < self.value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _Descending) and other.value == self.value


def _relevance(doc: dict[str, Any], query_tokens: list[str]) -> int:
    doc_tokens: set[str] = set()
    for attribute in SEARCHABLE_ATTRIBUTES:
        value = doc.get(attribute)
        if value is not None:
            doc_tokens.update(tokenize(str(value)))
    return sum(1 for token in query_tokens if any(candidate.startswith(token) for candidate in doc_tokens))


def _rank_key(relevance: int, doc: dict[str, Any], sort: list[tuple[str, str]]) -> tuple[Any, ...]:
    key: list[Any] = [-relevance]
    for sort_field, direction in sort:
        value = doc.get(sort_field)
        # documents without the sort attribute go last in either direction
        present = 0 if value is not None else 1
        if direction == "asc":
            key.extend([present, value if value is not None else 0])
        else:
            key.extend([present, _Descending(value if value is not None else 0)])
    key.extend([-int(doc.get("lead_score") or 0), -int(bool(doc.get("is_hot_lead"))), str(doc["id"])])
    return tuple(key)


def rank_documents(
    documents: Iterable[dict[str, Any]],
    term: str,
    filters: list[IndexFilter],
    sort: list[tuple[str, str]],
    offset: int,
    limit: int,
) -> SearchPage:
    """Filter, match and order search documents, returning one page of ids.

    Matching is word-prefix based. Ranking applies the same ordered rules as
    the production index: matched words, then the caller's explicit sort, then
    ``lead_score`` descending, then ``is_hot_lead`` descending, then id.
    """
    started = time.perf_counter()
    query_tokens = tokenize(term)
    ranked: list[tuple[int, dict[str, Any]]] = []
    for doc in documents:
        if not all(_matches(doc, condition) for condition in filters):
            continue
        relevance = _relevance(doc, query_tokens)
        if query_tokens and relevance == 0:
            continue
        ranked.append((relevance, doc))

    ranked.sort(key=lambda item: _rank_key(item[0], item[1], sort))
    ids = [str(doc["id"]) for _, doc in ranked[offset : offset + limit]]
    return SearchPage(ids=ids, total=len(ranked), processing_ms=round((time.perf_counter() - started) * 1000, 2))


@dataclass
class InMemoryLeadSearchIndex:
    """Index mirror held in process memory. Only the owning process sees it."""

    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    available: bool = True
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _ensure_available(self) -> None:
        if not self.available:
            raise SearchIndexUnavailableError("search index is unreachable")

    def upsert(self, docs: Iterable[dict[str, Any]]) -> int:
        self._ensure_available()
        written = 0
        with self._lock:
            for doc in docs:
                self.documents[str(doc["id"])] = dict(doc)
                written += 1
        return written

    def remove(self, ids: Iterable[str]) -> int:
        self._ensure_available()
        removed = 0
        with self._lock:
            for doc_id in ids:
                if self.documents.pop(str(doc_id), None) is not None:
                    removed += 1
        return removed

    def remove_all(self) -> None:
        self._ensure_available()
        with self._lock:
            self.documents.clear()

    def count(self) -> int:
        self._ensure_available()
        return len(self.documents)

    def search(
        self,
        term: str,
        filters: list[IndexFilter],
        sort: list[tuple[str, str]],
        offset: int,
        limit: int,
    ) -> SearchPage:
        self._ensure_available()
        with self._lock:
            snapshot = list(self.documents.values())
        return rank_documents(snapshot, term, filters, sort, offset, limit)


class RedisLeadSearchIndex:
    """Index mirror kept in one Redis hash, shared by API and worker processes.

    Each field is a lead id holding its JSON search document. Ranking runs in
    the calling process over the stored documents.
    """

    def __init__(self, client: redis.Redis, key: str) -> None:
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str) -> RedisLeadSearchIndex:
        client = redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
        return cls(client, key)

    @contextmanager
    def _reachable(self) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            raise SearchIndexUnavailableError("search index is unreachable") from exc

    def upsert(self, docs: Iterable[dict[str, Any]]) -> int:
        mapping = {str(doc["id"]): json.dumps(doc, separators=(",", ":"), default=str) for doc in docs}
        if not mapping:
            return 0
        with self._reachable():
            self.client.hset(self.key, mapping=mapping)
        return len(mapping)

    def remove(self, ids: Iterable[str]) -> int:
        fields = [str(doc_id) for doc_id in ids]
        if not fields:
            return 0
        with self._reachable():
            return int(self.client.hdel(self.key, *fields))

    def remove_all(self) -> None:
        with self._reachable():
            self.client.delete(self.key)

    def count(self) -> int:
        with self._reachable():
            return int(self.client.hlen(self.key))

    def search(
        self,
        term: str,
        filters: list[IndexFilter],
        sort: list[tuple[str, str]],
        offset: int,
        limit: int,
    ) -> SearchPage:
        with self._reachable():
            payloads = self.client.hvals(self.key)
        return rank_documents((json.loads(payload) for payload in payloads), term, filters, sort, offset, limit)


@dataclass(frozen=True)
class ReindexOutcome:
    success: bool
    indexed_count: int
    duration_ms: float


def sync_lead(index: LeadSearchIndex, lead: CRMLead) -> str:
    """Mirror one lead's current state; returns the operation applied."""
    if is_indexable(lead):
        index.upsert([build_search_doc_for_lead(lead)])
        return "upsert"
    index.remove([str(lead.id)])
    return "remove"


def reindex_leads(session: Session, index: LeadSearchIndex, batch_size: int | None = None) -> ReindexOutcome:
    """Drop every indexed lead, then re-add all eligible leads in batches.

    Safe to retry: each run starts from an empty index.
    """
    size = batch_size or get_settings().search_index_batch_size
    started = time.perf_counter()
    indexed = 0
    with tracer.start_as_current_span("crm.search.reindex") as span:
        try:
            index.remove_all()
            last_id: uuid.UUID | None = None
            while True:
                stmt = (
                    select(CRMLead)
                    .where(CRMLead.deleted_at.is_(None), CRMLead.inquiry_status.not_in(NON_INDEXABLE_STATUSES))
                    .order_by(CRMLead.id)
                    .limit(size)
                )
                if last_id is not None:
                    stmt = stmt.where(CRMLead.id > last_id)
                batch = session.scalars(stmt).unique().all()
                if not batch:
                    break
                indexed += index.upsert(build_search_doc_for_lead(lead) for lead in batch)
                last_id = batch[-1].id
        except Exception as exc:
            observe_reindex("failed", indexed)
            annotate_span(span, indexed_count=indexed, outcome="failed")
            logger.error("crm.search.reindex_failed", extra={"indexed_count": indexed, "error": f"{type(exc).__name__}: {exc}"})
            raise ReindexError("reindex failed", indexed_count=indexed, cause=exc) from exc

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_reindex("succeeded", indexed)
        annotate_span(span, indexed_count=indexed, outcome="succeeded")
        logger.info("crm.search.reindexed", extra={"indexed_count": indexed, "duration_ms": duration_ms})
        return ReindexOutcome(success=True, indexed_count=indexed, duration_ms=duration_ms)


@lru_cache
def get_search_index() -> LeadSearchIndex:
    settings = get_settings()
    if settings.search_backend == "redis":
        logger.info("crm.search.backend_selected", extra={"operation": "redis"})
        return RedisLeadSearchIndex.from_url(settings.redis_url, f"{settings.search_prefix}:documents")
    if settings.search_backend != "memory":
        raise RuntimeError(f"unsupported search backend: {settings.search_backend}")
    return InMemoryLeadSearchIndex()
