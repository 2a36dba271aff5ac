"""Audit service: append-only audit trail for connector mutations."""

import json
from typing import Optional, Any

from sqlalchemy.orm import Session
from fastapi import Request

from connector_hub.models.audit_log import AuditLog

SECRET_MARKERS = ("secret", "key", "token", "password")
PUBLIC_KEYS = frozenset({"publishable_key", "results_key"})
MASK = "********"


def is_secret_key(key: str) -> bool:
    key = key.lower()
    return key not in PUBLIC_KEYS and any(m in key for m in SECRET_MARKERS)


def mask_secrets(value: Any) -> Any:
    """Replace values of secret-looking keys, recursively."""
    if isinstance(value, dict):
        return {
            k: (MASK if is_secret_key(k) and v not in (None, "") else mask_secrets(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [mask_secrets(v) for v in value]
    return value


class AuditService:
    """Records immutable audit log entries for connector events."""

    @staticmethod
    def log(
        db: Session,
        tenant_id: Optional[int],
        actor_id: Optional[int],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        """Write a single audit log record.

        Args:
            action: e.g. "connector.created", "connector.sync_requested", "webhook.updated"
            resource_type: connector, mapping, webhook

        Values are masked before they are stored. Commits immediately so the
        entry survives a later rollback of the caller's work.
        """
        entry = AuditLog(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id else None,
            old_value_json=json.dumps(mask_secrets(old_value), default=str) if old_value else None,
            new_value_json=json.dumps(mask_secrets(new_value), default=str) if new_value else None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.add(entry)
        db.commit()
        return entry

    @staticmethod
    def log_from_request(
        db: Session,
        request: Request,
        tenant_id: Optional[int],
        actor_id: Optional[int],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
    ) -> AuditLog:
        """Write audit log extracting IP and user-agent from the request."""
        ip = request.client.host if request.client else None
        ua = request.headers.get("user-agent", "")[:500]
        return AuditService.log(
            db=db,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_value=old_value,
            new_value=new_value,
            ip_address=ip,
            user_agent=ua,
        )


audit_service = AuditService()
