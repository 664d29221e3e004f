from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from callstream.db.upsert import dialect_insert
from callstream.models import RawEvent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClaimedEvent:
    """Snapshot of a claimed row; safe to use after the claiming session closes."""

    id: int
    tenant_id: Optional[str]
    event_type: str
    provider_event_id: str
    payload: Any
    received_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def enqueue(
    db: Session,
    *,
    tenant_id: Optional[str],
    event_type: str,
    provider_event_id: str,
    payload: Any,
) -> bool:
    """
    Append one webhook delivery to the queue and commit.

    Returns False (and writes nothing) when ``provider_event_id`` is already
    stored, so provider redeliveries are absorbed silently.
    """
    insert = dialect_insert(db)
    stmt = (
        insert(RawEvent)
        .values(
            tenant_id=tenant_id,
            event_type=event_type,
            provider_event_id=provider_event_id,
            payload=payload,
            received_at=_utc_now(),
        )
        .on_conflict_do_nothing(index_elements=["provider_event_id"])
        .returning(RawEvent.id)
    )
    inserted_id = db.execute(stmt).scalar_one_or_none()
    db.commit()

    if inserted_id is None:
        logger.info(
            "event_store.duplicate",
            provider_event_id=provider_event_id,
            event_type=event_type,
            tenant_id=tenant_id,
        )
        return False
    logger.info(
        "event_store.enqueued",
        event_id=inserted_id,
        event_type=event_type,
        tenant_id=tenant_id,
    )
    return True


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------

def claim_statement(limit: int, worker_id: str, lease_seconds: int, now: datetime):
    """
    The leasing UPDATE. Candidates are picked with ``FOR UPDATE SKIP LOCKED``
    inside its subquery, so concurrent claimers never block each other and
    never get the same row. A row whose lease has run out is claimable again.
    """
    candidates = (
        select(RawEvent.id)
        .where(
            RawEvent.processed_at.is_(None),
            or_(RawEvent.claimed_until.is_(None), RawEvent.claimed_until < now),
        )
        .order_by(RawEvent.received_at, RawEvent.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    return (
        update(RawEvent)
        .where(RawEvent.id.in_(candidates))
        .values(claimed_by=worker_id, claimed_until=now + timedelta(seconds=lease_seconds))
        .returning(
            RawEvent.id,
            RawEvent.tenant_id,
            RawEvent.event_type,
            RawEvent.provider_event_id,
            RawEvent.payload,
            RawEvent.received_at,
        )
        .execution_options(synchronize_session=False)
    )


def claim_batch(
    db: Session,
    limit: int,
    *,
    worker_id: str,
    lease_seconds: int = 60,
) -> List[ClaimedEvent]:
    """Atomically lease up to ``limit`` unprocessed rows, oldest first, and commit."""
    if limit <= 0:
        return []

    rows = db.execute(claim_statement(limit, worker_id, lease_seconds, _utc_now())).all()
    db.commit()

    claimed = [
        ClaimedEvent(
            id=row.id,
            tenant_id=row.tenant_id,
            event_type=row.event_type,
            provider_event_id=row.provider_event_id,
            payload=row.payload,
            received_at=row.received_at,
        )
        for row in rows
    ]
    # RETURNING order is not guaranteed
    claimed.sort(key=lambda e: (e.received_at, e.id))
    if claimed:
        logger.debug("event_store.claimed", worker_id=worker_id, count=len(claimed))
    return claimed


def mark_processed(db: Session, event_id: int) -> bool:
    """
    Stamp ``processed_at`` inside the caller's transaction.

    Only an unset timestamp is written, so repeated calls are no-ops and the
    timestamp never moves. Returns True when this call set it.
    """
    result = db.execute(
        update(RawEvent)
        .where(RawEvent.id == event_id, RawEvent.processed_at.is_(None))
        .values(processed_at=_utc_now(), claimed_by=None, claimed_until=None)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def release_claim(db: Session, event_id: int) -> None:
    """Drop the lease on an unprocessed row so the next cycle retries it."""
    db.execute(
        update(RawEvent)
        .where(RawEvent.id == event_id, RawEvent.processed_at.is_(None))
        .values(claimed_by=None, claimed_until=None)
        .execution_options(synchronize_session=False)
    )


def assign_tenant(db: Session, event_id: int, tenant_id: str) -> None:
    db.execute(
        update(RawEvent)
        .where(RawEvent.id == event_id, RawEvent.tenant_id.is_(None))
        .values(tenant_id=tenant_id)
        .execution_options(synchronize_session=False)
    )


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def processing_stats(db: Session, tenant_id: str) -> Dict[str, Any]:
    """Queue health for one tenant."""
    unprocessed, processed, oldest = db.execute(
        select(
            func.count(RawEvent.id).filter(RawEvent.processed_at.is_(None)),
            func.count(RawEvent.id).filter(RawEvent.processed_at.is_not(None)),
            func.min(RawEvent.received_at).filter(RawEvent.processed_at.is_(None)),
        ).where(RawEvent.tenant_id == tenant_id)
    ).one()

    by_type = db.execute(
        select(RawEvent.event_type, func.count(RawEvent.id))
        .where(RawEvent.tenant_id == tenant_id)
        .group_by(RawEvent.event_type)
        .order_by(RawEvent.event_type)
    ).all()

    return {
        "unprocessed": int(unprocessed or 0),
        "processed": int(processed or 0),
        "event_types": {event_type: int(count) for event_type, count in by_type},
        "oldest_unprocessed": oldest.isoformat() if hasattr(oldest, "isoformat") else oldest,
    }


def count_backlog(db: Session) -> int:
    """Unprocessed rows across all tenants, including rows with no tenant yet."""
    return int(
        db.execute(select(func.count(RawEvent.id)).where(RawEvent.processed_at.is_(None))).scalar_one()
    )
