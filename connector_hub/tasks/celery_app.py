"""Celery app and tasks for async connector syncs."""

from celery import Celery
from celery.exceptions import SoftTimeLimitExceeded

from connector_hub.core.config import settings

celery_app = Celery(
    "connector_hub",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_concurrency=settings.CONCURRENCY,
    # the reaper catches anything that outlives the hard limit
    task_soft_time_limit=settings.SYNC_MAX_DURATION_MINUTES * 60,
    task_time_limit=settings.SYNC_MAX_DURATION_MINUTES * 60 + 60,
    beat_schedule={
        "reap-stale-syncs": {
            "task": "reap_stale_syncs",
            "schedule": float(settings.SYNC_REAPER_INTERVAL_SECONDS),
        },
    },
)


@celery_app.task(bind=True, name="run_connector_sync")
def run_connector_sync(self, sync_log_id: int) -> dict:
    """Execute a connector sync as a Celery task.

    This is the main entry point for async sync execution.
    """
    from connector_hub.db.session import SessionLocal
    from connector_hub.executor.engine import SyncExecutor, fail_sync
    from connector_hub.models.sync_log import SyncLog, SyncStatus

    db = SessionLocal()
    try:
        return SyncExecutor(db).execute(sync_log_id)
    except SoftTimeLimitExceeded:
        db.rollback()
        log = db.query(SyncLog).filter(SyncLog.id == sync_log_id).first()
        if log is not None and log.status == SyncStatus.running:
            fail_sync(db, log, "Sync exceeded the worker time limit")
        return {"status": SyncStatus.failed.value, "error": "time limit exceeded"}
    finally:
        db.close()


@celery_app.task(name="reap_stale_syncs")
def reap_stale_syncs() -> dict:
    """Fail orphaned `running` syncs and re-queue `pending` ones."""
    from connector_hub.db.session import SessionLocal
    from connector_hub.services.sync_service import SyncService

    db = SessionLocal()
    try:
        return SyncService(db).reap_stale()
    finally:
        db.close()
