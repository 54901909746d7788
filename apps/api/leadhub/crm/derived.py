from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

from leadhub.core.config import get_settings

_PHONE_STRIP_RE = re.compile(r"[^0-9+\-\s()]")
SENIOR_OCCUPATIONS = {"ceo", "cto", "manager", "director"}
HOT_PRIORITY_STATUSES = {"new", "contacted"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = _PHONE_STRIP_RE.sub("", value).strip()
    return normalized or None


def decode_tags(raw: Any) -> list[dict[str, Any]]:
    """Return a list of tag dicts from whatever was stored or posted.

    JSON strings are decoded; anything that is not a list afterwards counts as
    no tags, and list items without a ``value`` are dropped.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict) and item.get("value") not in (None, "")]


def dedupe_tags(tags: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    unique: list[dict[str, Any]] = []
    for tag in tags:
        value = str(tag["value"])
        if value in seen:
            continue
        seen.add(value)
        unique.append(
            {
                "label": tag.get("label") or value,
                "value": value,
                "color": tag.get("color"),
            }
        )
    return unique


def add_tag(tags: list[dict[str, Any]], tag: dict[str, Any]) -> list[dict[str, Any]]:
    return dedupe_tags([*decode_tags(tags), *decode_tags([tag])])


def remove_tag(tags: list[dict[str, Any]], value: str) -> list[dict[str, Any]]:
    return [tag for tag in dedupe_tags(decode_tags(tags)) if tag["value"] != value]


def tag_values_projection(tags: list[dict[str, Any]]) -> str:
    values = [str(tag["value"]) for tag in decode_tags(tags)]
    if not values:
        return ""
    return "|" + "|".join(values) + "|"


def budget_of(lead: Any) -> dict[str, Any] | None:
    if lead.budget_amount is None and lead.budget_currency is None:
        return None
    return {"amount": lead.budget_amount, "currency": lead.budget_currency}


def formatted_budget(lead: Any) -> str | None:
    if lead.budget_amount is None:
        return None
    currency = lead.budget_currency or "USD"
    return f"{currency} {float(lead.budget_amount):,.0f}"


def calculate_initial_score(lead: Any) -> int:
    score = 50
    email = lead.email or ""
    if email and "gmail.com" not in email:
        score += 10
    if lead.phone:
        score += 15
    if lead.occupation and lead.occupation.strip().lower() in SENIOR_OCCUPATIONS:
        score += 20
    if lead.lead_source_id:
        score += 5
    if lead.budget_amount is not None and float(lead.budget_amount) > 0:
        score += 10
    return min(100, score)


def calculate_activity_score(lead: Any, recent_activity_count: int) -> int:
    score = calculate_initial_score(lead) + min(20, recent_activity_count * 5)
    return min(100, score)


def is_hot_lead(lead: Any) -> bool:
    if (lead.lead_score or 0) >= get_settings().hot_lead_score_threshold:
        return True
    return lead.priority == "high" and lead.inquiry_status in HOT_PRIORITY_STATUSES


def is_overdue(lead: Any, now: datetime | None = None) -> bool:
    follow_up = ensure_aware(lead.next_follow_up_at)
    if follow_up is None:
        return False
    return follow_up < (now or utcnow())


def days_since_created(lead: Any, now: datetime | None = None) -> int:
    created_at = ensure_aware(lead.created_at)
    if created_at is None:
        return 0
    return max(0, ((now or utcnow()) - created_at).days)


def days_in_current_status(lead: Any, now: datetime | None = None) -> int:
    # measured from updated_at, so any edit restarts the count
    updated_at = ensure_aware(lead.updated_at)
    if updated_at is None:
        return 0
    return max(0, ((now or utcnow()) - updated_at).days)
