"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# ---- Catalog ----
class ConnectorTypeOut(BaseModel):
    id: int
    name: str
    display_name: str
    description: Optional[str] = None
    category: str
    icon_url: Optional[str] = None
    config_schema: Dict[str, Any] = {}
    webhook_events: List[str] = []
    supports_oauth: bool = False
    supports_api_key: bool = True
    supports_webhook: bool = False
    version: str = "1.0.0"
    is_implemented: bool = True

    class Config:
        from_attributes = True


# ---- Tenant connectors ----
class ConnectorStatusIn(str, Enum):
    pending = "pending"
    inactive = "inactive"


class ConnectorCreate(BaseModel):
    connector_type_id: int
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    config: Dict[str, Any] = {}
    sync_settings: Optional[Dict[str, Any]] = None

class ConnectorUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    sync_settings: Optional[Dict[str, Any]] = None
    status: Optional[ConnectorStatusIn] = None

class ConnectorOut(BaseModel):
    id: int
    tenant_id: int
    connector_type_id: int
    connector_type: str
    category: Optional[str] = None
    name: str
    description: Optional[str] = None
    config: Dict[str, Any] = {}  # secrets masked
    has_oauth_tokens: bool = False
    status: str
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    sync_in_progress: bool = False
    sync_settings: Dict[str, Any] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ConnectorListResponse(BaseModel):
    connectors: List[ConnectorOut]
    total: int
    page: int

class OAuthTokensIn(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    realm_id: Optional[str] = None
    scope: Optional[str] = None


class ConnectorTestResponse(BaseModel):
    ok: bool
    message: str
    status: str


# ---- Sync ----
class SyncRequest(BaseModel):
    direction: str = "inbound"
    entity_types: Optional[List[str]] = None

class SyncStartedResponse(BaseModel):
    sync_log_id: int
    status: str

class SyncLogOut(BaseModel):
    id: int
    tenant_connector_id: int
    sync_type: str
    direction: str
    status: str
    entity_types: List[str] = []
    triggered_by: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_successful: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    sync_summary: Dict[str, Any] = {}

    class Config:
        from_attributes = True

class SyncLogListResponse(BaseModel):
    logs: List[SyncLogOut]
    total: int
    page: int
    limit: int


# ---- Field mappings ----
class MappingTypeIn(str, Enum):
    direct = "direct"
    transform = "transform"
    calculated = "calculated"


class FieldMappingIn(BaseModel):
    entity_type: str
    local_field: str = Field(..., min_length=1, max_length=100)
    remote_field: str = Field(..., min_length=1, max_length=100)
    mapping_type: MappingTypeIn = MappingTypeIn.direct
    transform: Optional[Dict[str, Any]] = None
    is_required: bool = False
    default_value: Optional[Any] = None

class FieldMappingOut(BaseModel):
    id: Optional[int] = None
    entity_type: str
    local_field: str
    remote_field: str
    mapping_type: str
    transform: Dict[str, Any] = {}
    is_required: bool = False
    default_value: Optional[Any] = None

class FieldMappingsResponse(BaseModel):
    mappings: List[FieldMappingOut]
    defaults: List[FieldMappingOut]


# ---- Webhook endpoint ----
class WebhookConfigIn(BaseModel):
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    secret: Optional[str] = Field(None, min_length=8)
    regenerate_secret: bool = False

class WebhookConfigOut(BaseModel):
    id: int
    endpoint_url: str
    events: List[str] = []
    is_active: bool
    has_secret: bool
    secret: Optional[str] = None  # only on creation/rotation
    last_received: Optional[datetime] = None
    total_received: int = 0

class WebhookReceiptOut(BaseModel):
    status: str
    event_type: str
    sync_log_id: Optional[int] = None
    message: Optional[str] = None


# ---- Common ----
class MessageResponse(BaseModel):
    message: str
    detail: Optional[str] = None
