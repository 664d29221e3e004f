from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from callstream.core.security import get_current_tenant
from callstream.db.session import get_db
from callstream.schemas.common import ok, meta_now
from callstream.schemas.events import ProcessingStats
from callstream.services.event_store import processing_stats

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("/stats")
def event_stats(
    request: Request,
    tenant_id: str = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    stats = processing_stats(db, tenant_id)
    broadcaster = getattr(request.app.state, "broadcaster", None)
    subscribers = broadcaster.connection_count(tenant_id) if broadcaster is not None else 0
    return ok(
        data=ProcessingStats(**stats, subscribers=subscribers).model_dump(),
        meta=meta_now(tenant_id=tenant_id),
    )
