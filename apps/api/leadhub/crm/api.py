from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from leadhub.context import get_correlation_id
from leadhub.core.auth import AuthUser, get_current_user as get_auth_user
from leadhub.core.config import get_settings
from leadhub.core.database import get_db
from leadhub.crm.actors import ActorUser
from leadhub.crm.cache import TaggedCache, get_lead_cache
from leadhub.crm.errors import CRMError
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
from leadhub.crm.search_index import LeadSearchIndex, get_search_index
from leadhub.crm.service import ActivityService, LeadService

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException | CRMError, fallback_code: str) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    elevated_roles = {role.lower() for role in get_settings().elevated_roles}
    is_super_admin = bool(normalized_roles & elevated_roles)

    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        roles=normalized_roles,
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def get_lead_service(
    cache: TaggedCache = Depends(get_lead_cache),
    index: LeadSearchIndex = Depends(get_search_index),
) -> LeadService:
    return LeadService(cache, index)


def get_activity_service(
    cache: TaggedCache = Depends(get_lead_cache),
    index: LeadSearchIndex = Depends(get_search_index),
) -> ActivityService:
    return ActivityService(cache, index)


def _query_mapping(request: Request) -> dict[str, Any]:
    """Flatten query params; repeated keys (``status=a&status=b`` or ``status[]=a``) become lists."""
    mapping: dict[str, Any] = {}
    for raw_key in request.query_params.keys():
        key = raw_key[:-2] if raw_key.endswith("[]") else raw_key
        values = request.query_params.getlist(raw_key)
        existing = mapping.get(key)
        if existing is not None:
            values = (existing if isinstance(existing, list) else [existing]) + values
        mapping[key] = values if len(values) > 1 or raw_key.endswith("[]") else values[0]
    return mapping


@leads_router.get("/leads")
def list_leads(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> Any:
    try:
        require_permission(user, "crm.leads.read")
        filters = LeadListFilters.model_validate(_query_mapping(request))
        return lead_service.list_leads(db, user, filters)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_list_failed")


@leads_router.get("/leads/stats")
def lead_stats(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> Any:
    try:
        require_permission(user, "crm.leads.read")
        query = LeadStatsQuery.model_validate(_query_mapping(request))
        return lead_service.get_stats(db, query)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_stats_failed")


@leads_router.post("/leads/reindex", response_model=ReindexResult)
def reindex_leads(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> ReindexResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.reindex")
        return lead_service.reindex(db)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_reindex_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}")
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> Any:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, lead_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> Any:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.delete_lead(db, user, lead_id)
        return {"status": "deleted"}
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/tags", response_model=LeadRead)
def add_lead_tag(
    request: Request,
    lead_id: uuid.UUID,
    dto: TagAddRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.add_tag(db, user, lead_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_tag_failed")


@leads_router.delete("/leads/{lead_id}/tags/{tag_value}", response_model=LeadRead)
def remove_lead_tag(
    request: Request,
    lead_id: uuid.UUID,
    tag_value: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.remove_tag(db, user, lead_id, tag_value)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_tag_failed")


@leads_router.post("/leads/{lead_id}/rescore", response_model=LeadRead)
def rescore_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    lead_service: LeadService = Depends(get_lead_service),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.rescore_lead(db, lead_id)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_lead_rescore_failed")


@leads_router.get("/leads/{lead_id}/activities", response_model=ActivityPage)
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    types: str | None = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=25, ge=1, le=100),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityPage | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        type_filter = [item.strip() for item in (types or "").split(",") if item.strip()]
        return activity_service.list_activities(db, lead_id, types=type_filter or None, page=page, per_page=per_page)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_list_failed")


@activities_router.post("/activities", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.create_activity(db, user, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_create_failed")


@activities_router.patch("/activities/{activity_id}", response_model=ActivityRead)
def patch_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.update_activity(db, user, activity_id, dto)
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_update_failed")


@activities_router.post("/activities/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: CompleteActivityRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.complete_activity(db, user, activity_id, dto or CompleteActivityRequest())
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_complete_failed")


@activities_router.post("/activities/{activity_id}/cancel", response_model=ActivityRead)
def cancel_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: CancelActivityRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.cancel_activity(db, user, activity_id, dto or CancelActivityRequest())
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_cancel_failed")


@activities_router.delete("/activities/{activity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    activity_service: ActivityService = Depends(get_activity_service),
) -> Any:
    try:
        require_permission(user, "crm.activities.write")
        activity_service.delete_activity(db, user, activity_id)
        return {"status": "deleted"}
    except (HTTPException, CRMError) as exc:
        return _failure(request, exc, "crm_activity_delete_failed")
