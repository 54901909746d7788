import logging

from celery import Celery

from leadhub.core.config import get_settings
from leadhub.core.database import SessionLocal
from leadhub.crm.cache import get_lead_cache
from leadhub.crm.search_index import get_search_index
from leadhub.crm.service import ActivityService, LeadService

settings = get_settings()
logger = logging.getLogger("leadhub.tasks")

celery_app = Celery("leadhub_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "crm-refresh-overdue-activities": {
        "task": "crm.refresh_overdue_activities",
        "schedule": 300.0,
    },
}


@celery_app.task(name="crm.reindex_leads")
def reindex_leads_task() -> dict[str, object]:
    backend = get_settings().search_backend
    if backend == "memory":
        # a worker rebuilding its own process-local index would leave the API index untouched
        logger.warning("tasks.reindex_skipped", extra={"search_backend": backend})
        return {"success": False, "indexed_count": 0, "skipped": "process_local_index"}
    session = SessionLocal()
    try:
        result = LeadService(get_lead_cache(), get_search_index()).reindex(session)
    finally:
        session.close()
    return result.model_dump()


@celery_app.task(name="crm.refresh_overdue_activities")
def refresh_overdue_activities_task() -> int:
    session = SessionLocal()
    try:
        changed = ActivityService(get_lead_cache(), get_search_index()).refresh_overdue_activities(session)
    finally:
        session.close()
    logger.info("tasks.overdue_refreshed", extra={"updated_count": changed})
    return changed
