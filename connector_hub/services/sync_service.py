"""Sync orchestration: trigger, per-connector lock, history and the stale-run reaper."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from connector_hub.connectors.registry import AdapterRegistry, registry as default_registry
from connector_hub.core.config import settings
from connector_hub.core.exceptions import (
    FieldError, ResourceNotFoundError, SyncInProgressError, ValidationError,
)
from connector_hub.db.base import utcnow
from connector_hub.executor.engine import fail_sync
from connector_hub.models.connector import ConnectorStatus, TenantConnector
from connector_hub.models.entities import ENTITY_MODELS
from connector_hub.models.sync_log import SyncDirection, SyncLog, SyncStatus, SyncType

logger = logging.getLogger("connector_hub.sync")

Dispatcher = Callable[[int], Optional[str]]

SYNCABLE_STATUSES = (ConnectorStatus.active, ConnectorStatus.error)


def celery_dispatch(sync_log_id: int) -> Optional[str]:
    """Hand a run to the worker pool; returns the Celery task id."""
    from connector_hub.tasks.celery_app import run_connector_sync

    return run_connector_sync.delay(sync_log_id).id


class SyncService:
    """Starts sync runs and serves their history.

    `dispatch` is injectable: the API uses Celery, tests run the executor
    inline or record the hand-off.
    """

    def __init__(
        self,
        db: Session,
        registry: Optional[AdapterRegistry] = None,
        dispatch: Optional[Dispatcher] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self.dispatch = dispatch or celery_dispatch

    def _connector(self, tenant_id: int, connector_id: int) -> TenantConnector:
        connector = self.db.query(TenantConnector).filter(
            TenantConnector.id == connector_id,
            TenantConnector.tenant_id == tenant_id,
        ).first()
        if not connector:
            raise ResourceNotFoundError(f"Connector {connector_id} not found")
        return connector

    def start_sync(
        self,
        tenant_id: int,
        connector_id: int,
        direction: str = SyncDirection.inbound.value,
        entity_types: Optional[List[str]] = None,
        sync_type: str = SyncType.manual.value,
        triggered_by: Optional[int] = None,
    ) -> SyncLog:
        """Create a `pending` run, take the connector's lock and dispatch it.

        Raises:
            ValidationError: connector not syncable or bad direction/entity types.
            UnsupportedProvider: no adapter for the connector's type.
            SyncInProgressError: another run holds the connector.
        """
        connector = self._connector(tenant_id, connector_id)

        errors: List[FieldError] = []
        if connector.status not in SYNCABLE_STATUSES:
            errors.append(FieldError(
                "status", f"connector is {connector.status.value}; run a successful connection test first",
            ))
        if direction not in SyncDirection.__members__:
            errors.append(FieldError("direction", f"unknown direction '{direction}'"))
        unknown = [e for e in entity_types or [] if e not in ENTITY_MODELS]
        if unknown:
            errors.append(FieldError("entity_types", f"unknown entity types: {', '.join(unknown)}"))
        if errors:
            raise ValidationError("Cannot start sync", errors)

        self.registry.lookup(connector.type_name)

        log = SyncLog(
            tenant_connector_id=connector.id,
            sync_type=SyncType(sync_type),
            direction=SyncDirection(direction),
            status=SyncStatus.pending,
            entity_types_json=json.dumps(entity_types) if entity_types else None,
            triggered_by=triggered_by,
            started_at=utcnow(),
        )
        self.db.add(log)
        self.db.flush()

        claimed = self.db.query(TenantConnector).filter(
            TenantConnector.id == connector.id,
            TenantConnector.active_sync_log_id.is_(None),
        ).update({"active_sync_log_id": log.id}, synchronize_session=False)
        if not claimed:
            self.db.rollback()
            logger.info("Sync request for connector %s rejected: run already in progress", connector_id)
            raise SyncInProgressError(f"A sync is already in progress for connector {connector_id}")
        self.db.commit()
        logger.info(
            "Sync %s queued: connector=%s direction=%s type=%s", log.id, connector.id, direction, sync_type,
        )

        self._dispatch(log)
        return log

    def _dispatch(self, log: SyncLog) -> None:
        try:
            task_id = self.dispatch(log.id)
        except Exception as e:
            logger.exception("Could not dispatch sync %s", log.id)
            self.db.rollback()
            log.transition(SyncStatus.running)
            fail_sync(self.db, log, f"Could not queue sync: {e}")
            raise
        if task_id:
            log.task_id = str(task_id)
            self.db.commit()
        self.db.refresh(log)

    # ---- History ----

    def list_logs(self, tenant_id: int, connector_id: int, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        connector = self._connector(tenant_id, connector_id)
        query = self.db.query(SyncLog).filter(SyncLog.tenant_connector_id == connector.id)
        total = query.count()
        logs = (
            query.order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {"logs": logs, "total": total, "page": page, "limit": limit}

    def get_log(self, tenant_id: int, connector_id: int, sync_log_id: int) -> SyncLog:
        connector = self._connector(tenant_id, connector_id)
        log = self.db.query(SyncLog).filter(
            SyncLog.id == sync_log_id,
            SyncLog.tenant_connector_id == connector.id,
        ).first()
        if not log:
            raise ResourceNotFoundError(f"Sync log {sync_log_id} not found")
        return log

    # ---- Reaper ----

    def reap_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Fail runs stuck in `running` and re-dispatch `pending` runs nobody picked up.

        A pending run older than the maximum duration is failed instead of
        being re-queued forever.
        """
        now = now or utcnow()
        max_age = timedelta(minutes=settings.SYNC_MAX_DURATION_MINUTES)
        pickup_grace = timedelta(seconds=settings.SYNC_REAPER_INTERVAL_SECONDS)
        result = {"failed": 0, "redispatched": 0}

        stuck = self.db.query(SyncLog).filter(
            SyncLog.status == SyncStatus.running,
            SyncLog.running_at < now - max_age,
        ).all()
        for log in stuck:
            fail_sync(self.db, log, f"Sync exceeded the maximum duration of {settings.SYNC_MAX_DURATION_MINUTES} minutes")
            logger.warning("Reaped stuck sync %s (connector %s)", log.id, log.tenant_connector_id)
            result["failed"] += 1

        waiting = self.db.query(SyncLog).filter(
            SyncLog.status == SyncStatus.pending,
            SyncLog.started_at < now - pickup_grace,
        ).all()
        for log in waiting:
            if log.started_at < now - max_age:
                log.transition(SyncStatus.running)
                fail_sync(self.db, log, "Sync was never picked up by a worker")
                result["failed"] += 1
                continue
            task_id = self.dispatch(log.id)
            if task_id:
                log.task_id = str(task_id)
            self.db.commit()
            logger.info("Re-dispatched pending sync %s", log.id)
            result["redispatched"] += 1
        return result
