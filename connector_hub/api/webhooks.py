"""Webhooks API router: inbound provider callbacks."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from connector_hub.api.connectors import get_sync_dispatch
from connector_hub.connectors.registry import AdapterRegistry, get_registry
from connector_hub.db.session import get_db
from connector_hub.schemas.schemas import WebhookReceiptOut
from connector_hub.services.sync_service import Dispatcher
from connector_hub.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/connector/{connector_id}", response_model=WebhookReceiptOut)
async def receive_connector_webhook(
    connector_id: int,
    request: Request,
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_registry),
    dispatch: Dispatcher = Depends(get_sync_dispatch),
):
    """Incoming provider webhook. Authenticated by HMAC signature, not by token.

    The signature is computed over the exact request bytes, so the body is
    read raw and never re-serialized before verification.
    """
    raw_body = await request.body()
    receipt = WebhookService(db, registry=registry, dispatch=dispatch).receive(
        connector_id, dict(request.headers), raw_body,
    )
    return WebhookReceiptOut(
        status=receipt.status,
        event_type=receipt.event_type,
        sync_log_id=receipt.sync_log_id,
        message=receipt.message,
    )
