from __future__ import annotations

import uuid
from typing import Any


class CRMError(Exception):
    """Base class for lead-domain failures surfaced through the HTTP error envelope."""

    status_code = 500
    code = "crm_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class LeadNotFoundError(CRMError):
    status_code = 404
    code = "crm_lead_not_found"

    def __init__(self, lead_id: uuid.UUID) -> None:
        super().__init__("lead not found", {"lead_id": str(lead_id)})
        self.lead_id = lead_id


class ActivityNotFoundError(CRMError):
    status_code = 404
    code = "crm_activity_not_found"

    def __init__(self, activity_id: uuid.UUID) -> None:
        super().__init__("activity not found", {"activity_id": str(activity_id)})
        self.activity_id = activity_id


class InvalidActivityTransitionError(CRMError):
    status_code = 422
    code = "crm_activity_invalid_transition"

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(
            f"activity cannot move from {current_status} to {requested_status}",
            {"current_status": current_status, "requested_status": requested_status},
        )


class RowVersionConflictError(CRMError):
    status_code = 409
    code = "crm_row_version_conflict"

    def __init__(self, entity_id: uuid.UUID, expected: int, actual: int) -> None:
        super().__init__(
            "row_version conflict",
            {"id": str(entity_id), "expected_row_version": expected, "current_row_version": actual},
        )


class AggregateConsistencyError(CRMError):
    """Raised when a lead's derived fields cannot be recomputed from its activity log.

    The triggering activity write is rolled back rather than leaving the lead
    aggregates out of step with the log.
    """

    status_code = 500
    code = "crm_aggregate_inconsistent"


class SearchIndexUnavailableError(CRMError):
    status_code = 503
    code = "crm_search_unavailable"


class ReindexError(CRMError):
    status_code = 500
    code = "crm_reindex_failed"

    def __init__(self, message: str, indexed_count: int = 0, cause: BaseException | None = None) -> None:
        details: dict[str, Any] = {"indexed_count": indexed_count}
        if cause is not None:
            details["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(message, details)
        self.indexed_count = indexed_count
