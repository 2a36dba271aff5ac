"""Connectors API router."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from connector_hub.connectors.registry import AdapterRegistry, get_registry
from connector_hub.core.exceptions import ResourceNotFoundError
from connector_hub.core.security import Principal, require_admin, require_viewer
from connector_hub.db.session import get_db
from connector_hub.models.connector import TenantConnector
from connector_hub.models.field_mapping import FieldMapping
from connector_hub.models.sync_log import SyncLog
from connector_hub.schemas.schemas import (
    ConnectorCreate, ConnectorListResponse, ConnectorOut, ConnectorTestResponse, ConnectorTypeOut,
    ConnectorUpdate, FieldMappingIn, FieldMappingOut, FieldMappingsResponse, MessageResponse,
    OAuthTokensIn, SyncLogListResponse, SyncLogOut, SyncRequest, SyncStartedResponse,
    WebhookConfigIn, WebhookConfigOut,
)
from connector_hub.services import field_mapping
from connector_hub.services.audit_service import audit_service
from connector_hub.services.connector_service import ConnectorService
from connector_hub.services.sync_service import Dispatcher, SyncService, celery_dispatch

router = APIRouter(prefix="/connectors", tags=["connectors"])


def get_sync_dispatch() -> Dispatcher:
    """How accepted syncs reach a worker; overridden in tests."""
    return celery_dispatch


def get_connector_service(
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
) -> ConnectorService:
    return ConnectorService(db, registry=registry)


def get_sync_service(
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
    dispatch: Dispatcher = Depends(get_sync_dispatch),
) -> SyncService:
    return SyncService(db, registry=registry, dispatch=dispatch)


def _connector_out(service: ConnectorService, connector: TenantConnector) -> ConnectorOut:
    connector_type = connector.connector_type
    return ConnectorOut(
        id=connector.id,
        tenant_id=connector.tenant_id,
        connector_type_id=connector.connector_type_id,
        connector_type=connector_type.name,
        category=connector_type.category.value,
        name=connector.name,
        description=connector.description,
        config=service.masked_config(connector),
        has_oauth_tokens=bool(connector.oauth_tokens_encrypted),
        status=connector.status.value,
        last_sync=connector.last_sync,
        last_error=connector.last_error,
        consecutive_failures=connector.consecutive_failures or 0,
        sync_in_progress=connector.active_sync_log_id is not None,
        sync_settings=connector.sync_settings,
        created_at=connector.created_at,
        updated_at=connector.updated_at,
    )


def _log_out(log: SyncLog) -> SyncLogOut:
    return SyncLogOut(
        id=log.id,
        tenant_connector_id=log.tenant_connector_id,
        sync_type=log.sync_type.value,
        direction=log.direction.value,
        status=log.status.value,
        entity_types=log.entity_types,
        triggered_by=log.triggered_by,
        started_at=log.started_at,
        completed_at=log.completed_at,
        records_processed=log.records_processed or 0,
        records_successful=log.records_successful or 0,
        records_failed=log.records_failed or 0,
        error_message=log.error_message,
        sync_summary=log.sync_summary,
    )


def _mapping_out(mapping: FieldMapping) -> FieldMappingOut:
    return FieldMappingOut(
        id=mapping.id,
        entity_type=mapping.entity_type,
        local_field=mapping.local_field,
        remote_field=mapping.remote_field,
        mapping_type=mapping.mapping_type.value,
        transform=mapping.transform,
        is_required=mapping.is_required,
        default_value=mapping.default_value,
    )


def _rule_out(rule: field_mapping.MappingRule) -> FieldMappingOut:
    return FieldMappingOut(
        entity_type=rule.entity_type,
        local_field=rule.local_field,
        remote_field=rule.remote_field,
        mapping_type=rule.mapping_type,
        transform=rule.transform,
        is_required=rule.is_required,
        default_value=rule.default_value,
    )


# ---- Catalog ----

@router.get("/types", response_model=List[ConnectorTypeOut])
async def list_connector_types(
    category: Optional[str] = None,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_viewer),
):
    """List the active connector catalog."""
    return [
        ConnectorTypeOut(
            id=t.id,
            name=t.name,
            display_name=t.display_name,
            description=t.description,
            category=t.category.value,
            icon_url=t.icon_url,
            config_schema=t.config_schema,
            webhook_events=t.webhook_events,
            supports_oauth=t.supports_oauth,
            supports_api_key=t.supports_api_key,
            supports_webhook=t.supports_webhook,
            version=t.version,
            is_implemented=service.registry.is_registered(t.name),
        )
        for t in service.list_types(category)
    ]


@router.get("/transforms")
async def list_transforms(principal: Principal = Depends(require_viewer)):
    """List the transforms and calculations field mappings may reference."""
    return field_mapping.catalog()


# ---- Connectors ----

@router.get("", response_model=ConnectorListResponse)
async def list_connectors(
    category: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_viewer),
):
    """List the caller's tenant connectors."""
    result = service.list_connectors(principal.tenant_id, category, status_filter, page, limit)
    return ConnectorListResponse(
        connectors=[_connector_out(service, c) for c in result["connectors"]],
        total=result["total"],
        page=result["page"],
    )


@router.post("", response_model=ConnectorOut, status_code=status.HTTP_201_CREATED)
async def create_connector(
    body: ConnectorCreate,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Create a connector; config is validated, then stored encrypted."""
    connector = service.create(
        tenant_id=principal.tenant_id,
        user_id=principal.user_id,
        connector_type_id=body.connector_type_id,
        name=body.name,
        config=body.config,
        description=body.description,
        sync_settings=body.sync_settings,
    )
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "connector.created", "connector", connector.id,
        new_value={"name": connector.name, "type": connector.type_name, "config": body.config},
    )
    return _connector_out(service, connector)


@router.get("/{connector_id}", response_model=ConnectorOut)
async def get_connector(
    connector_id: int,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_viewer),
):
    return _connector_out(service, service.get(principal.tenant_id, connector_id))


@router.put("/{connector_id}", response_model=ConnectorOut)
async def update_connector(
    connector_id: int,
    body: ConnectorUpdate,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Update name, description, settings, config or park the connector as inactive."""
    changes = body.model_dump(exclude_unset=True)
    if "status" in changes and changes["status"] is not None:
        changes["status"] = changes["status"].value
    connector = service.update(principal.tenant_id, connector_id, principal.user_id, **changes)
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "connector.updated", "connector", connector.id, new_value=changes,
    )
    return _connector_out(service, connector)


@router.delete("/{connector_id}", response_model=MessageResponse)
async def delete_connector(
    connector_id: int,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Hard delete a connector with its mappings, sync history and webhook endpoint."""
    connector = service.get(principal.tenant_id, connector_id)
    old = {"name": connector.name, "type": connector.type_name}
    service.delete(principal.tenant_id, connector_id)
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "connector.deleted", "connector", connector_id, old_value=old,
    )
    return MessageResponse(message="Connector deleted")


@router.put("/{connector_id}/oauth-tokens", response_model=ConnectorOut)
async def set_oauth_tokens(
    connector_id: int,
    body: OAuthTokensIn,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Store OAuth tokens obtained out of band (encrypted at rest)."""
    connector = service.set_oauth_tokens(
        principal.tenant_id, connector_id, principal.user_id, body.model_dump(mode="json", exclude_none=True),
    )
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "connector.oauth_tokens_updated", "connector", connector.id,
    )
    return _connector_out(service, connector)


@router.post("/{connector_id}/test", response_model=ConnectorTestResponse)
async def test_connector(
    connector_id: int,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Probe the provider; the connector becomes `active` or `error`."""
    result = service.test_connection(principal.tenant_id, connector_id)
    connector = service.get(principal.tenant_id, connector_id)
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "connector.tested", "connector", connector_id, new_value={"ok": result.ok},
    )
    return ConnectorTestResponse(ok=result.ok, message=result.message, status=connector.status.value)


# ---- Sync ----

@router.post("/{connector_id}/sync", response_model=SyncStartedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    connector_id: int,
    request: Request,
    body: Optional[SyncRequest] = None,
    sync: SyncService = Depends(get_sync_service),
    principal: Principal = Depends(require_admin),
):
    """Queue a manual sync; returns immediately with the sync log id."""
    body = body or SyncRequest()
    log = sync.start_sync(
        principal.tenant_id,
        connector_id,
        direction=body.direction,
        entity_types=body.entity_types,
        triggered_by=principal.user_id,
    )
    audit_service.log_from_request(
        sync.db, request, principal.tenant_id, principal.user_id,
        "connector.sync_requested", "connector", connector_id,
        new_value={"sync_log_id": log.id, "direction": body.direction, "entity_types": body.entity_types},
    )
    return SyncStartedResponse(sync_log_id=log.id, status=log.status.value)


@router.get("/{connector_id}/logs", response_model=SyncLogListResponse)
async def list_sync_logs(
    connector_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sync: SyncService = Depends(get_sync_service),
    principal: Principal = Depends(require_viewer),
):
    result = sync.list_logs(principal.tenant_id, connector_id, page, limit)
    return SyncLogListResponse(
        logs=[_log_out(log) for log in result["logs"]],
        total=result["total"],
        page=result["page"],
        limit=result["limit"],
    )


@router.get("/{connector_id}/logs/{log_id}", response_model=SyncLogOut)
async def get_sync_log(
    connector_id: int,
    log_id: int,
    sync: SyncService = Depends(get_sync_service),
    principal: Principal = Depends(require_viewer),
):
    return _log_out(sync.get_log(principal.tenant_id, connector_id, log_id))


# ---- Field mappings ----

@router.get("/{connector_id}/mappings", response_model=FieldMappingsResponse)
async def list_mappings(
    connector_id: int,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_viewer),
):
    """Tenant mappings plus the adapter's built-in defaults they override."""
    connector = service.get(principal.tenant_id, connector_id)
    return FieldMappingsResponse(
        mappings=[_mapping_out(m) for m in service.list_mappings(principal.tenant_id, connector_id)],
        defaults=[_rule_out(r) for r in service.default_mappings(connector)],
    )


@router.put("/{connector_id}/mappings", response_model=FieldMappingsResponse)
async def save_mappings(
    connector_id: int,
    body: List[FieldMappingIn],
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Create or replace mappings by (entity_type, local_field)."""
    items = [m.model_dump(mode="json") for m in body]
    mappings = service.save_mappings(principal.tenant_id, connector_id, items)
    connector = service.get(principal.tenant_id, connector_id)
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "mappings.updated", "mapping", connector_id, new_value=items,
    )
    return FieldMappingsResponse(
        mappings=[_mapping_out(m) for m in mappings],
        defaults=[_rule_out(r) for r in service.default_mappings(connector)],
    )


@router.delete("/{connector_id}/mappings/{mapping_id}", response_model=MessageResponse)
async def delete_mapping(
    connector_id: int,
    mapping_id: int,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    service.delete_mapping(principal.tenant_id, connector_id, mapping_id)
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "mappings.deleted", "mapping", mapping_id,
    )
    return MessageResponse(message="Mapping deleted")


# ---- Webhook endpoint ----

def _webhook_out(endpoint, secret: Optional[str] = None) -> WebhookConfigOut:
    return WebhookConfigOut(
        id=endpoint.id,
        endpoint_url=endpoint.endpoint_url,
        events=endpoint.events,
        is_active=endpoint.is_active,
        has_secret=bool(endpoint.secret_key_encrypted),
        secret=secret,
        last_received=endpoint.last_received,
        total_received=endpoint.total_received or 0,
    )


@router.get("/{connector_id}/webhook", response_model=WebhookConfigOut)
async def get_webhook(
    connector_id: int,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    endpoint = service.get_webhook(principal.tenant_id, connector_id)
    if endpoint is None:
        raise ResourceNotFoundError(f"Connector {connector_id} has no webhook endpoint")
    return _webhook_out(endpoint)


@router.put("/{connector_id}/webhook", response_model=WebhookConfigOut)
async def configure_webhook(
    connector_id: int,
    body: WebhookConfigIn,
    request: Request,
    service: ConnectorService = Depends(get_connector_service),
    principal: Principal = Depends(require_admin),
):
    """Create or update the inbound endpoint. A new secret is shown once."""
    endpoint, secret = service.configure_webhook(
        principal.tenant_id,
        connector_id,
        events=body.events,
        is_active=body.is_active,
        secret=body.secret,
        regenerate_secret=body.regenerate_secret,
    )
    audit_service.log_from_request(
        service.db, request, principal.tenant_id, principal.user_id,
        "webhook.updated", "webhook", endpoint.id,
        new_value={"events": endpoint.events, "is_active": endpoint.is_active, "secret_rotated": bool(secret)},
    )
    return _webhook_out(endpoint, secret)
