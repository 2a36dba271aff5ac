"""Sync log model: one row per synchronization attempt."""

import enum
import json

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum, func
from sqlalchemy.orm import relationship

from connector_hub.db.base import Base, utcnow
from connector_hub.core.exceptions import InvalidStateTransition


class SyncType(str, enum.Enum):
    manual = "manual"
    scheduled = "scheduled"
    webhook = "webhook"
    realtime = "realtime"


class SyncDirection(str, enum.Enum):
    inbound = "inbound"
    outbound = "outbound"
    bidirectional = "bidirectional"


class SyncStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = {SyncStatus.completed, SyncStatus.failed, SyncStatus.cancelled}

# completed/failed are only reachable through running
ALLOWED_TRANSITIONS = {
    SyncStatus.pending: {SyncStatus.running, SyncStatus.cancelled},
    SyncStatus.running: {SyncStatus.completed, SyncStatus.failed, SyncStatus.cancelled},
}


class SyncLog(Base):
    """Lifecycle, counters and outcome of one sync run.

    Append-only: once a row reaches a terminal status it is never updated.
    """
    __tablename__ = "connector_sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_connector_id = Column(
        Integer, ForeignKey("tenant_connectors.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    sync_type = Column(Enum(SyncType), nullable=False)
    direction = Column(Enum(SyncDirection), nullable=False)
    status = Column(Enum(SyncStatus), default=SyncStatus.pending, nullable=False, index=True)
    entity_types_json = Column(Text, nullable=True)
    triggered_by = Column(Integer, nullable=True)
    task_id = Column(String(255), nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    running_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    records_processed = Column(Integer, default=0, nullable=False)
    records_successful = Column(Integer, default=0, nullable=False)
    records_failed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    sync_summary_json = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    connector = relationship("TenantConnector", back_populates="sync_logs")

    @property
    def entity_types(self) -> list:
        return json.loads(self.entity_types_json) if self.entity_types_json else []

    @property
    def sync_summary(self) -> dict:
        return json.loads(self.sync_summary_json) if self.sync_summary_json else {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: SyncStatus) -> None:
        """Move to `new_status`, enforcing the run state machine."""
        allowed = ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Sync log {self.id}: cannot move from {self.status.value} to {new_status.value}"
            )
        now = utcnow()
        if new_status == SyncStatus.running:
            self.running_at = now
        elif new_status in TERMINAL_STATUSES:
            # completed_at never precedes started_at
            self.completed_at = max(now, self.started_at) if self.started_at else now
        self.status = new_status
