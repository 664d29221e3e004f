from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from callstream.config import get_settings
from callstream.core.security import api_key_from
from callstream.db.session import get_db
from callstream.observability.metrics import WEBHOOKS_RECEIVED
from callstream.schemas.common import fail, meta_now, ok
from callstream.schemas.events import WebhookAck
from callstream.services.directory import provider_org_id, resolve_tenant_for_org, tenant_for_credential
from callstream.services.event_store import enqueue
from callstream.services.normalize import coerce_id, coerce_text, first_present

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = structlog.get_logger(__name__)


def derive_event_type(payload: Dict[str, Any], header_value: Optional[str] = None) -> Optional[str]:
    return coerce_text(first_present(payload.get("event_type"), payload.get("type"), header_value), max_chars=128)


def derive_provider_event_id(payload: Dict[str, Any], event_type: str) -> str:
    """Provider's own event id, else a content hash so identical redeliveries still collide."""
    explicit = coerce_id(first_present(payload.get("event_id"), payload.get("uuid"), payload.get("id")))
    if explicit:
        return explicit[:255]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{event_type}\n{canonical}".encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


@router.post("/provider")
def receive_webhook(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    """
    Accept one provider webhook (already signature-checked upstream) and queue it.

    The tenant comes from the provider organization in the payload, then from
    the caller's API key. Unresolved events are still queued and resolved by
    the processor once a provider connection exists.
    """
    settings = get_settings()
    event_type = derive_event_type(payload, request.headers.get(settings.EVENT_TYPE_HEADER))
    if not event_type:
        WEBHOOKS_RECEIVED.labels(outcome="rejected").inc()
        return fail("MISSING_EVENT_TYPE", "Webhook payload carries no event type.", status_code=400)

    tenant_id = resolve_tenant_for_org(db, provider_org_id(payload))
    if tenant_id is None:
        tenant_id = tenant_for_credential(db, api_key_from(request))
    if tenant_id is None:
        logger.warning("webhook.tenant_unresolved", event_type=event_type)
    request.state.tenant_id = tenant_id

    provider_event_id = derive_provider_event_id(payload, event_type)
    inserted = enqueue(
        db,
        tenant_id=tenant_id,
        event_type=event_type,
        provider_event_id=provider_event_id,
        payload=payload,
    )
    WEBHOOKS_RECEIVED.labels(outcome="inserted" if inserted else "duplicate").inc()

    ack = WebhookAck(
        inserted=inserted,
        provider_event_id=provider_event_id,
        event_type=event_type,
        tenant_resolved=tenant_id is not None,
    )
    return ok(data=ack.model_dump(), meta=meta_now(tenant_id=tenant_id))
