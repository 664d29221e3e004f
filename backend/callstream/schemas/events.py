from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel


class WebhookAck(BaseModel):
    received: bool = True
    inserted: bool
    provider_event_id: str
    event_type: str
    tenant_resolved: bool


class ProcessingStats(BaseModel):
    unprocessed: int
    processed: int
    event_types: Dict[str, int]
    oldest_unprocessed: Optional[str] = None
    subscribers: int = 0
