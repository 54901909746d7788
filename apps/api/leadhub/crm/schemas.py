from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator

from leadhub.core.config import get_settings
from leadhub.crm.derived import decode_tags, dedupe_tags

LeadStatus = Literal["new", "contacted", "qualified", "proposal", "won", "lost", "nurturing", "spam"]
Priority = Literal["low", "medium", "high", "urgent"]
ActivityType = Literal[
    "call",
    "email",
    "meeting",
    "note",
    "message",
    "task",
    "follow_up",
    "status_change",
    "assignment_change",
]
ActivityStatus = Literal["pending", "completed", "cancelled", "overdue"]


class Tag(BaseModel):
    label: str | None = None
    value: str = Field(min_length=1)
    color: str | None = None


class Budget(BaseModel):
    amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, max_length=8)


def _coerce_tags(value: Any) -> list[dict[str, Any]]:
    return dedupe_tags(decode_tags(value))


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    occupation: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    detail: str | None = None
    service_id: UUID | None = None
    lead_source_id: UUID | None = None
    inquiry_status: LeadStatus = "new"
    priority: Priority = "medium"
    inquiry_type: str | None = None
    inquiry_country: str | None = None
    lead_score: int | None = Field(default=None, ge=0, le=100)
    assigned_to: UUID | None = None
    budget: Budget | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    tags: Annotated[list[Tag], BeforeValidator(_coerce_tags)] = Field(default_factory=list)


def _required_if_present(value: Any) -> Any:
    # optional on PATCH, but an explicit null would clear a NOT NULL column
    if value is None:
        raise ValueError("may be omitted but not null")
    return value


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    occupation: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    detail: str | None = None
    service_id: UUID | None = None
    lead_source_id: UUID | None = None
    inquiry_status: LeadStatus | None = None
    priority: Priority | None = None
    inquiry_type: str | None = None
    inquiry_country: str | None = None
    assigned_to: UUID | None = None
    budget: Budget | None = None
    custom_fields: dict[str, Any] | None = None
    tags: Annotated[list[Tag] | None, BeforeValidator(lambda value: None if value is None else _coerce_tags(value))] = None

    @field_validator("name", "inquiry_status", "priority")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        return _required_if_present(value)


class TagAddRequest(BaseModel):
    label: str | None = None
    value: str = Field(min_length=1)
    color: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    occupation: str | None
    address: str | None
    city: str | None
    country: str | None
    latitude: float | None
    longitude: float | None
    detail: str | None
    service_id: UUID | None
    service_name: str | None = None
    lead_source_id: UUID | None
    source_name: str | None = None
    inquiry_status: str
    status_label: str | None = None
    priority: str
    priority_label: str | None = None
    inquiry_type: str | None
    inquiry_type_label: str | None = None
    inquiry_country: str | None
    lead_score: int
    budget: Budget | None = None
    formatted_budget: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    tags: list[Tag] = Field(default_factory=list)
    assigned_to: UUID | None
    assigned_user_name: str | None = None
    assigned_user_email: str | None = None
    assigned_at: datetime | None
    created_by: UUID | None
    last_activity_at: datetime | None
    next_follow_up_at: datetime | None
    pending_activities_count: int
    is_hot_lead: bool = False
    is_overdue: bool = False
    days_since_created: int = 0
    days_in_current_status: int = 0
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class ActivityCreate(BaseModel):
    lead_id: UUID
    activity_type: ActivityType | None = "note"
    subject: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None
    due_at: datetime | None = None
    priority: Priority = "medium"
    category: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    cost: float | None = Field(default=None, ge=0)
    outcome: str | None = None
    notes: str | None = None
    user_id: UUID | None = None


class ActivityUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    lead_id: UUID | None = None
    activity_type: ActivityType | None = None
    status: Literal["pending", "completed", "cancelled"] | None = None
    subject: str | None = Field(default=None, min_length=1)
    description: str | None = None
    metadata: dict[str, Any] | None = None
    scheduled_at: datetime | None = None
    due_at: datetime | None = None
    priority: Priority | None = None
    category: str | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    cost: float | None = Field(default=None, ge=0)
    outcome: str | None = None
    notes: str | None = None

    @field_validator("subject", "priority")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        return _required_if_present(value)


class CompleteActivityRequest(BaseModel):
    outcome: str | None = None
    notes: str | None = None


class CancelActivityRequest(BaseModel):
    reason: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    user_id: UUID
    activity_type: str | None
    type_label: str | None = None
    status: str
    subject: str
    description: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="activity_metadata")
    scheduled_at: datetime | None
    due_at: datetime | None
    completed_at: datetime | None
    priority: str
    category: str | None
    duration_minutes: int | None
    cost: float | None
    outcome: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class ActivityPage(BaseModel):
    data: list[ActivityRead]
    pagination: dict[str, Any]


class ReindexResult(BaseModel):
    success: bool
    indexed_count: int
    duration_ms: float | None = None


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return None
    return value


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _lenient_float(value: Any) -> float | None:
    value = _blank_to_none(_first(value))
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _lenient_int(value: Any) -> int | None:
    parsed = _lenient_float(value)
    return int(parsed) if parsed is not None else None


def _lenient_bool(value: Any) -> bool:
    value = _first(value)
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _lenient_str(value: Any) -> str | None:
    value = _blank_to_none(_first(value))
    return str(value).strip() if value is not None else None


def _lenient_str_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    items = value if isinstance(value, (list, tuple)) else [value]
    parsed: list[str] = []
    for item in items:
        if item is None:
            continue
        for part in str(item).split(","):
            part = part.strip()
            if part and part not in parsed:
                parsed.append(part)
    return sorted(parsed) or None


def _lenient_uuid(value: Any) -> UUID | None:
    value = _blank_to_none(_first(value))
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value).strip())
    except ValueError:
        return None


def _parse_moment(value: Any, *, end_of_day: bool) -> datetime | None:
    value = _blank_to_none(_first(value))
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.max if end_of_day else time.min)
    else:
        raw = str(value).strip()
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if end_of_day and len(raw) == 10:
            parsed = datetime.combine(parsed.date(), time(23, 59, 59))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


LenientFloat = Annotated[float | None, BeforeValidator(_lenient_float)]
LenientInt = Annotated[int | None, BeforeValidator(_lenient_int)]
LenientBool = Annotated[bool, BeforeValidator(_lenient_bool)]
LenientStr = Annotated[str | None, BeforeValidator(_lenient_str)]
LenientStrList = Annotated[list[str] | None, BeforeValidator(_lenient_str_list)]
LenientUUID = Annotated[UUID | None, BeforeValidator(_lenient_uuid)]
RangeStart = Annotated[datetime | None, BeforeValidator(lambda value: _parse_moment(value, end_of_day=False))]
RangeEnd = Annotated[datetime | None, BeforeValidator(lambda value: _parse_moment(value, end_of_day=True))]

# request flags that steer caching but never change which leads match
CACHE_CONTROL_FIELDS = ("real_time", "no_cache", "force_refresh", "bulk_operation")
PAGING_FIELDS = ("page", "per_page", "sort_by", "sort_order")


class LeadListFilters(BaseModel):
    """Lead list query parameters.

    Malformed values never fail the request: unparseable inputs are dropped,
    page and per_page are clamped, and an unknown sort order is discarded so
    the query falls back to descending.
    """

    model_config = ConfigDict(extra="ignore")

    search: LenientStr = None
    status: LenientStrList = None
    priority: LenientStrList = None
    assigned_to: LenientUUID = None
    unassigned: LenientBool = False
    source_id: LenientUUID = None
    service_id: LenientUUID = None
    inquiry_type: LenientStr = None
    inquiry_country: LenientStr = None
    min_budget: LenientFloat = None
    max_budget: LenientFloat = None
    budget_currency: LenientStr = None
    date_from: RangeStart = None
    date_to: RangeEnd = None
    updated_after: RangeStart = None
    min_score: LenientInt = None
    max_score: LenientInt = None
    country: LenientStr = None
    city: LenientStr = None
    lat: LenientFloat = None
    lng: LenientFloat = None
    radius: LenientFloat = None
    assigned_date_from: RangeStart = None
    assigned_date_to: RangeEnd = None
    has_follow_up: LenientBool = False
    overdue_follow_ups: LenientBool = False
    follow_up_date_from: RangeStart = None
    follow_up_date_to: RangeEnd = None
    recent_activity_days: LenientInt = None
    no_activity_days: LenientInt = None
    min_days_in_status: LenientInt = None
    max_days_in_status: LenientInt = None
    hot_leads: LenientBool = False
    active_only: LenientBool = False
    tags: LenientStrList = None

    sort_by: LenientStr = None
    sort_order: LenientStr = None
    page: LenientInt = Field(default=None, validate_default=True)
    per_page: LenientInt = Field(default=None, validate_default=True)

    real_time: LenientBool = False
    no_cache: LenientBool = False
    force_refresh: LenientBool = False
    bulk_operation: LenientBool = False

    @field_validator("sort_order")
    @classmethod
    def _normalize_sort_order(cls, value: str | None) -> str | None:
        if value is None:
            return None
        lowered = value.lower()
        return lowered if lowered in {"asc", "desc"} else None

    @field_validator("page")
    @classmethod
    def _clamp_page(cls, value: int | None) -> int:
        if value is None or value < 1:
            return 1
        return value

    @field_validator("per_page")
    @classmethod
    def _clamp_per_page(cls, value: int | None) -> int:
        settings = get_settings()
        if value is None or value < 1:
            return settings.lead_list_default_page_size
        return min(value, settings.lead_list_max_page_size)

    @field_validator("min_score", "max_score")
    @classmethod
    def _clamp_score(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(0, min(100, value))

    def normalized(self) -> dict[str, Any]:
        """Effective filter map with empty values and cache-control flags removed."""
        settings = get_settings()
        payload = self.model_dump(mode="json", exclude=set(CACHE_CONTROL_FIELDS))
        result: dict[str, Any] = {}
        for key, value in payload.items():
            if value is None or value is False or value == "" or value == [] or value == {}:
                continue
            if key == "page" and value == 1:
                continue
            if key == "per_page" and value == settings.lead_list_default_page_size:
                continue
            result[key] = value
        return result

    def predicate_count(self) -> int:
        return len([key for key in self.normalized() if key not in PAGING_FIELDS])

    @property
    def has_search(self) -> bool:
        return bool(self.search)


class LeadStatsQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date_from: RangeStart = None
    date_to: RangeEnd = None
