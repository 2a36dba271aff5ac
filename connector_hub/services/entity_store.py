"""Local entity persistence for connector syncs.

Inbound records are written with a single atomic upsert keyed by
(tenant_id, external_source, external_id), so a webhook and a scheduled pull
delivering the same record race safely. Outbound selection and bookkeeping
live here too.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from connector_hub.connectors.base import CanonicalRecord, LocalRecord
from connector_hub.core.exceptions import ConfigurationError
from connector_hub.db.base import utcnow
from connector_hub.models.entities import ENTITY_MODELS

logger = logging.getLogger("connector_hub.entities")

# columns a mapping may never write
PROTECTED_COLUMNS = {
    "id", "tenant_id", "external_id", "external_source", "external_data_json",
    "last_sync", "created_at", "updated_at",
}


def model_for(entity_type: str):
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise ConfigurationError(f"Unknown entity type '{entity_type}'")


def _writable_columns(model) -> List[str]:
    return [c.name for c in model.__table__.columns if c.name not in PROTECTED_COLUMNS]


def _row_values(model, tenant_id: int, source: str, record: CanonicalRecord, now: datetime) -> Dict[str, Any]:
    columns = set(_writable_columns(model))
    values = {k: v for k, v in record.data.items() if k in columns}
    unmapped = {k: v for k, v in record.data.items() if k not in columns}

    external_data = dict(record.extra)
    if unmapped:
        external_data["_unmapped"] = unmapped

    values.update(
        tenant_id=tenant_id,
        external_source=source,
        external_id=record.external_id,
        external_data_json=json.dumps(external_data, default=str),
        last_sync=now,
        updated_at=now,
    )
    return values


def upsert(db: Session, tenant_id: int, source: str, record: CanonicalRecord, now: Optional[datetime] = None) -> None:
    """Insert or update one canonical record for the tenant.

    The caller owns the transaction; run inside a savepoint to isolate
    per-record failures.
    """
    now = now or utcnow()
    model = model_for(record.entity_type)
    values = _row_values(model, tenant_id, source, record, now)
    insert_values = dict(values, created_at=now)
    update_keys = [k for k in values if k not in ("tenant_id", "external_source", "external_id")]

    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(model.__table__).values(**insert_values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "external_source", "external_id"],
            set_={k: stmt.excluded[k] for k in update_keys},
        )
        db.execute(stmt)
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(model.__table__).values(**insert_values)
        stmt = stmt.on_duplicate_key_update(**{k: stmt.inserted[k] for k in update_keys})
        db.execute(stmt)
    else:
        # no native upsert: fall back to read-then-write under the unique constraint
        existing = db.query(model).filter(
            model.tenant_id == tenant_id,
            model.external_source == source,
            model.external_id == record.external_id,
        ).first()
        if existing is None:
            db.add(model(**insert_values))
        else:
            for key in update_keys:
                setattr(existing, key, values[key])
        db.flush()


def find_by_external(db: Session, tenant_id: int, source: str, entity_type: str, external_id: str):
    model = model_for(entity_type)
    return db.query(model).filter(
        model.tenant_id == tenant_id,
        model.external_source == source,
        model.external_id == external_id,
    ).first()


def pending_outbound(db: Session, tenant_id: int, source: str, entity_type: str) -> list:
    """Local rows that changed since they were last synced, or were never synced.

    Rows owned by a different provider are left alone.
    """
    model = model_for(entity_type)
    return (
        db.query(model)
        .filter(
            model.tenant_id == tenant_id,
            or_(model.last_sync.is_(None), model.updated_at > model.last_sync),
            or_(model.external_source.is_(None), model.external_source == source),
        )
        .order_by(model.id)
        .all()
    )


def to_local_record(entity_type: str, row) -> LocalRecord:
    model = model_for(entity_type)
    extra = {}
    if row.external_data_json:
        try:
            extra = json.loads(row.external_data_json)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed external_data_json on %s %s", entity_type, row.id)
    return LocalRecord(
        entity_type=entity_type,
        local_id=row.id,
        data={name: getattr(row, name) for name in _writable_columns(model)},
        external_id=row.external_id,
        extra=extra if isinstance(extra, dict) else {},
    )


def mark_pushed(
    row,
    source: str,
    external_id: Optional[str],
    now: Optional[datetime] = None,
    remote: Optional[Dict[str, Any]] = None,
) -> None:
    """Record a successful push; updated_at and last_sync share one timestamp.

    Fields the provider echoed back are merged over the stored external
    payload, so version tokens such as QuickBooks' SyncToken stay current.
    """
    now = now or utcnow()
    if remote:
        stored = {}
        if row.external_data_json:
            try:
                stored = json.loads(row.external_data_json)
            except json.JSONDecodeError:
                logger.warning("Replacing malformed external_data_json on row %s", row.id)
        if not isinstance(stored, dict):
            stored = {}
        stored.update(remote)
        row.external_data_json = json.dumps(stored, default=str)
    if external_id:
        row.external_id = external_id
    row.external_source = source
    row.last_sync = now
    row.updated_at = now
