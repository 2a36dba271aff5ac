"""Sync executor: runs one SyncLog from `pending` to a terminal status."""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from connector_hub.connectors.base import CanonicalRecord, ProviderAdapter
from connector_hub.connectors.registry import AdapterRegistry, registry as default_registry
from connector_hub.core.exceptions import ConnectorHubError, ResourceNotFoundError
from connector_hub.core.vault import CredentialVault
from connector_hub.db.base import utcnow
from connector_hub.models.connector import ConnectorStatus, TenantConnector
from connector_hub.models.entities import ENTITY_MODELS
from connector_hub.models.sync_log import SyncDirection, SyncLog, SyncStatus
from connector_hub.services import entity_store, field_mapping
from connector_hub.services.cache_service import cache_service
from connector_hub.services.connector_service import ConnectorService

logger = logging.getLogger("connector_hub.sync")

MAX_SUMMARY_ERRORS = 20


@dataclass
class SyncCounters:
    """Running totals for one sync; serialized into sync_summary_json."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    warnings: int = 0
    entities: Dict[str, Dict[str, Dict[str, int]]] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def _bucket(self, direction: str, entity_type: str) -> Dict[str, int]:
        per_direction = self.entities.setdefault(direction, {})
        return per_direction.setdefault(entity_type, {"processed": 0, "successful": 0, "failed": 0})

    def success(self, direction: str, entity_type: str) -> None:
        bucket = self._bucket(direction, entity_type)
        bucket["processed"] += 1
        bucket["successful"] += 1
        self.processed += 1
        self.successful += 1

    def failure(self, direction: str, entity_type: str, reference: Any, message: str) -> None:
        bucket = self._bucket(direction, entity_type)
        bucket["processed"] += 1
        bucket["failed"] += 1
        self.processed += 1
        self.failed += 1
        if len(self.errors) < MAX_SUMMARY_ERRORS:
            self.errors.append({
                "direction": direction,
                "entity_type": entity_type,
                "reference": str(reference),
                "error": message,
            })

    def summary(self, **extra) -> Dict[str, Any]:
        return dict(
            inbound=self.entities.get("inbound", {}),
            outbound=self.entities.get("outbound", {}),
            errors=self.errors,
            warning_count=self.warnings,
            **extra,
        )

    def apply_to(self, log: SyncLog) -> None:
        log.records_processed = self.processed
        log.records_successful = self.successful
        log.records_failed = self.failed


def _format_errors(record: CanonicalRecord) -> str:
    return "; ".join(f"{e.field}: {e.message}" for e in record.errors)


def ingest_records(
    db: Session,
    connector: TenantConnector,
    records: List[CanonicalRecord],
    counters: SyncCounters,
) -> None:
    """Upsert canonical records one savepoint at a time.

    A record with mapping errors or a failing write is counted and skipped;
    it never aborts the batch.
    """
    source = connector.type_name
    now = utcnow()
    for record in records:
        counters.warnings += len(record.warnings)
        if not record.ok:
            counters.failure("inbound", record.entity_type, record.external_id or "?", _format_errors(record))
            continue
        try:
            with db.begin_nested():
                entity_store.upsert(db, connector.tenant_id, source, record, now=now)
        except SQLAlchemyError as e:
            logger.warning(
                "Upsert of %s %s for connector %s failed: %s",
                record.entity_type, record.external_id, connector.id, e.__class__.__name__,
            )
            counters.failure("inbound", record.entity_type, record.external_id, str(e.orig if hasattr(e, "orig") else e))
            continue
        counters.success("inbound", record.entity_type)
    db.commit()


def release_lock(db: Session, connector_id: int, sync_log_id: int) -> None:
    """Clear the connector's run lock if, and only if, this run holds it."""
    db.query(TenantConnector).filter(
        TenantConnector.id == connector_id,
        TenantConnector.active_sync_log_id == sync_log_id,
    ).update({"active_sync_log_id": None}, synchronize_session=False)


def fail_sync(db: Session, log: SyncLog, message: str, mark_connector: bool = True) -> None:
    """Move a run to `failed`, flag the connector and release its lock.

    Webhook record ingestion passes mark_connector=False: a bad payload says
    nothing about the connector's health.
    """
    log.transition(SyncStatus.failed)
    log.error_message = message
    connector = log.connector
    if mark_connector and connector is not None:
        connector.status = ConnectorStatus.error
        connector.last_error = message
        connector.consecutive_failures = (connector.consecutive_failures or 0) + 1
    release_lock(db, log.tenant_connector_id, log.id)
    db.commit()

    cache_service.sync_event(log.id, log.status.value, error=message)
    if mark_connector and connector is not None:
        cache_service.notify_tenant(
            connector.tenant_id, "error", f"Sync failed: {connector.name}", message,
            connector_id=connector.id, sync_log_id=log.id,
        )


class SyncExecutor:
    """Executes a sync run: pull and upsert, push and mark, or both.

    Adapter, credential and transport failures are caught here and end the
    run as `failed`; per-record problems only bump `records_failed`.
    """

    def __init__(
        self,
        db: Session,
        registry: Optional[AdapterRegistry] = None,
        vault: Optional[CredentialVault] = None,
    ):
        self.db = db
        self.registry = registry or default_registry
        self.connectors = ConnectorService(db, registry=self.registry, vault=vault)
        self.log: Optional[SyncLog] = None

    def execute(self, sync_log_id: int) -> Dict[str, Any]:
        """Execute a sync run by SyncLog id."""
        # only the delivery whose UPDATE matches `pending` owns the run
        claimed = self.db.query(SyncLog).filter(
            SyncLog.id == sync_log_id,
            SyncLog.status == SyncStatus.pending,
        ).update({"status": SyncStatus.running, "running_at": utcnow()}, synchronize_session=False)
        self.db.commit()

        self.log = self.db.query(SyncLog).filter(SyncLog.id == sync_log_id).first()
        if not self.log:
            raise ResourceNotFoundError(f"Sync log {sync_log_id} not found")
        self.db.refresh(self.log)
        if not claimed:
            logger.info("Sync log %s is already %s, skipping", sync_log_id, self.log.status.value)
            return {"status": self.log.status.value, "skipped": True}

        connector = self.log.connector
        cache_service.sync_event(self.log.id, SyncStatus.running.value)
        logger.info(
            "Sync %s started: connector=%s type=%s direction=%s",
            self.log.id, connector.id, connector.type_name, self.log.direction.value,
        )

        started = time.perf_counter()
        counters = SyncCounters()
        try:
            config = self.connectors.runtime_config(connector)
            adapter = self.registry.lookup(connector.type_name)
            rules = field_mapping.merge_rules(
                adapter.default_mappings(),
                [field_mapping.MappingRule.from_model(m) for m in connector.field_mappings],
            )
            entity_types = self.log.entity_types or list(ENTITY_MODELS)

            if self.log.direction in (SyncDirection.inbound, SyncDirection.bidirectional):
                self._inbound(adapter, connector, config, rules, entity_types, counters)
            if self.log.direction in (SyncDirection.outbound, SyncDirection.bidirectional):
                self._outbound(adapter, connector, config, rules, entity_types, counters)

        except ConnectorHubError as e:
            logger.error("Sync %s failed: %s", sync_log_id, e.message)
            return self._fail(counters, started, e.message)
        except Exception as e:
            logger.exception("Sync %s failed unexpectedly", sync_log_id)
            return self._fail(counters, started, f"{e.__class__.__name__}: {e}")

        duration_ms = int((time.perf_counter() - started) * 1000)
        finished_at = utcnow()
        if self.log.started_at and self.log.started_at > finished_at:
            finished_at = self.log.started_at
        finished = self.db.query(SyncLog).filter(
            SyncLog.id == self.log.id,
            SyncLog.status == SyncStatus.running,
        ).update({
            "status": SyncStatus.completed,
            "completed_at": finished_at,
            "records_processed": counters.processed,
            "records_successful": counters.successful,
            "records_failed": counters.failed,
            "sync_summary_json": json.dumps(counters.summary(duration_ms=duration_ms), default=str),
        }, synchronize_session=False)
        if not finished:
            # failed or cancelled while in flight; that outcome stands
            self.db.rollback()
            logger.warning(
                "Sync %s finished after it was already %s, result discarded",
                self.log.id, self.log.status.value,
            )
            return {"status": self.log.status.value, "skipped": True}
        self.db.refresh(self.log)

        connector.status = ConnectorStatus.active
        connector.last_sync = finished_at
        connector.last_error = None
        connector.consecutive_failures = 0
        release_lock(self.db, connector.id, self.log.id)
        self.db.commit()

        cache_service.sync_event(
            self.log.id, SyncStatus.completed.value,
            records_processed=counters.processed, records_failed=counters.failed,
        )
        if counters.failed:
            cache_service.notify_tenant(
                connector.tenant_id, "warning", f"Sync finished with errors: {connector.name}",
                f"{counters.failed} of {counters.processed} records failed",
                connector_id=connector.id, sync_log_id=self.log.id,
            )
        logger.info(
            "Sync %s completed: processed=%d failed=%d in %dms",
            self.log.id, counters.processed, counters.failed, duration_ms,
        )
        return {
            "status": SyncStatus.completed.value,
            "records_processed": counters.processed,
            "records_failed": counters.failed,
            "duration_ms": duration_ms,
        }

    def _fail(self, counters: SyncCounters, started: float, message: str) -> Dict[str, Any]:
        self.db.rollback()
        if self.log.is_terminal:
            logger.warning("Sync %s is already %s, dropping failure: %s", self.log.id, self.log.status.value, message)
            return {"status": self.log.status.value, "skipped": True}
        counters.apply_to(self.log)
        self.log.sync_summary_json = json.dumps(
            counters.summary(duration_ms=int((time.perf_counter() - started) * 1000)), default=str,
        )
        fail_sync(self.db, self.log, message)
        return {"status": SyncStatus.failed.value, "error": message}

    def _inbound(
        self,
        adapter: ProviderAdapter,
        connector: TenantConnector,
        config: Dict[str, Any],
        rules: List[field_mapping.MappingRule],
        entity_types: List[str],
        counters: SyncCounters,
    ) -> None:
        wanted = [e for e in entity_types if e in adapter.pull_entities]
        if not wanted:
            return
        batch = adapter.pull(config, wanted, rules)
        logger.info("Sync %s pulled %d records over %d pages", self.log.id, len(batch.records), batch.pages)
        ingest_records(self.db, connector, batch.records, counters)

    def _outbound(
        self,
        adapter: ProviderAdapter,
        connector: TenantConnector,
        config: Dict[str, Any],
        rules: List[field_mapping.MappingRule],
        entity_types: List[str],
        counters: SyncCounters,
    ) -> None:
        source = connector.type_name
        for entity_type in entity_types:
            if entity_type not in adapter.push_entities:
                continue
            rows = entity_store.pending_outbound(self.db, connector.tenant_id, source, entity_type)
            if not rows:
                continue
            by_id = {row.id: row for row in rows}
            results = adapter.push(
                config, [entity_store.to_local_record(entity_type, row) for row in rows], rules,
            )
            now = utcnow()
            for result in results:
                if result.ok:
                    entity_store.mark_pushed(
                        by_id[result.local_id], source, result.external_id, now=now, remote=result.remote,
                    )
                    counters.success("outbound", entity_type)
                else:
                    counters.failure("outbound", entity_type, result.local_id, result.error or "push failed")
            self.db.commit()
