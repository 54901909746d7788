from __future__ import annotations

LEAD_STATUS_LABELS: dict[str, str] = {
    "new": "New",
    "contacted": "Contacted",
    "qualified": "Qualified",
    "proposal": "Proposal Sent",
    "won": "Won",
    "lost": "Lost",
    "nurturing": "Nurturing",
    "spam": "Spam",
}

# spam leads are kept in the store but never mirrored into the search index
NON_INDEXABLE_STATUSES = {"spam"}

PRIORITY_LABELS: dict[str, str] = {
    "low": "Low",
    "medium": "Medium",
    "high": "High",
    "urgent": "Urgent",
}

INQUIRY_TYPE_LABELS: dict[str, str] = {
    "phone": "Phone",
    "email": "Email",
    "web": "Website",
    "referral": "Referral",
    "social": "Social Media",
    "advertisement": "Advertisement",
}

ACTIVITY_TYPE_LABELS: dict[str, str] = {
    "call": "Phone Call",
    "email": "Email",
    "meeting": "Meeting",
    "note": "Note",
    "message": "Message",
    "task": "Task",
    "follow_up": "Follow Up",
    "status_change": "Status Change",
    "assignment_change": "Assignment Change",
}

ACTIVITY_STATUS_LABELS: dict[str, str] = {
    "pending": "Pending",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "overdue": "Overdue",
}

ACTIVITY_OUTCOME_LABELS: dict[str, str] = {
    "successful": "Successful",
    "no_answer": "No Answer",
    "busy": "Busy",
    "not_interested": "Not Interested",
    "callback_requested": "Callback Requested",
    "information_sent": "Information Sent",
}

# activity statuses a caller may still act on; completed and cancelled are final
OPEN_ACTIVITY_STATUSES = {"pending", "overdue"}
CLOSED_ACTIVITY_STATUSES = {"completed", "cancelled"}

# human-authored entries of these types describe something that already happened
AUTO_COMPLETED_ACTIVITY_TYPES = {"note", "message"}

FIELD_DISPLAY_NAMES: dict[str, str] = {
    "name": "Name",
    "email": "Email",
    "phone": "Phone",
    "occupation": "Occupation",
    "address": "Address",
    "country": "Country",
    "city": "City",
    "service_id": "Service",
    "lead_source_id": "Lead Source",
    "detail": "Details",
    "budget": "Budget",
    "custom_fields": "Custom Fields",
    "inquiry_status": "Status",
    "priority": "Priority",
    "inquiry_type": "Inquiry Type",
    "inquiry_country": "Inquiry Country",
    "assigned_to": "Assigned To",
    "next_follow_up_at": "Next Follow Up",
    "latitude": "Latitude",
    "longitude": "Longitude",
}


def field_display_name(field: str) -> str:
    return FIELD_DISPLAY_NAMES.get(field) or field.replace("_", " ").title()


def status_label(value: str | None) -> str | None:
    if value is None:
        return None
    return LEAD_STATUS_LABELS.get(value, value)


def priority_label(value: str | None) -> str | None:
    if value is None:
        return None
    return PRIORITY_LABELS.get(value, value)


def inquiry_type_label(value: str | None) -> str | None:
    if value is None:
        return None
    return INQUIRY_TYPE_LABELS.get(value, value)


def activity_type_label(value: str | None) -> str:
    if not value:
        return "Note"
    return ACTIVITY_TYPE_LABELS.get(value, value.replace("_", " ").title())
