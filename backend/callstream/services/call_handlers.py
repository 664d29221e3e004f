from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update

from callstream.db.upsert import dialect_insert
from callstream.models import Call
from callstream.services.call_state import (
    CallStatus,
    allowed_predecessors,
    is_valid_transition,
    transition_error,
)
from callstream.services.normalize import (
    as_utc,
    coerce_id,
    coerce_int,
    coerce_text,
    coerce_timestamp,
    dig,
    first_present,
    normalize_direction,
    sanitize_payload,
    seconds_between,
)
from callstream.services.registry import HandlerContext, HandlerRegistry

logger = structlog.get_logger(__name__)

CALL_RING = "call.ring"
CALL_STARTED = "call.started"
CALL_ENDED = "call.ended"
CALL_MISSED = "call.missed"
CALL_REJECTED = "call.rejected"
CALL_RECORDING_COMPLETED = "call.recording.completed"

# statuses that close the call and stamp ended_at
_CLOSING = (CallStatus.ENDED, CallStatus.MISSED, CallStatus.REJECTED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

@dataclass
class CallDetails:
    provider_call_id: Optional[str] = None
    direction: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    provider_user_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    recording_url: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


def call_section(payload: Any) -> Mapping:
    """The object holding call fields: ``call``, ``data.call``, or the payload itself."""
    for candidate in (dig(payload, "call"), dig(payload, "data", "call"), payload):
        if isinstance(candidate, Mapping):
            return candidate
    return {}


def _phone(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        value = first_present(value.get("number"), value.get("phone"), value.get("phone_number"))
    return coerce_text(value, max_chars=64)


def extract_call_details(payload: Any) -> CallDetails:
    call = call_section(payload)
    top = payload if isinstance(payload, Mapping) else {}

    return CallDetails(
        provider_call_id=coerce_id(first_present(call.get("id"), call.get("call_id"), top.get("call_id"))),
        direction=normalize_direction(first_present(call.get("direction"), top.get("direction"))),
        from_number=_phone(first_present(call.get("from"), call.get("from_number"), call.get("caller"))),
        to_number=_phone(first_present(call.get("to"), call.get("to_number"), call.get("callee"))),
        provider_user_id=coerce_id(
            first_present(call.get("user_id"), dig(call, "owner", "id"), dig(call, "user", "id"), top.get("user_id"))
        ),
        duration_seconds=coerce_int(first_present(call.get("duration"), call.get("duration_seconds"))),
        recording_url=coerce_text(
            first_present(call.get("recording_url"), dig(call, "recording", "url")), max_chars=2048
        ),
        started_at=coerce_timestamp(
            first_present(call.get("started_at"), call.get("start_time"), call.get("created_at"))
        ),
        ended_at=coerce_timestamp(first_present(call.get("ended_at"), call.get("end_time"))),
    )


# ---------------------------------------------------------------------------
# Lifecycle upsert
# ---------------------------------------------------------------------------

def _find_call(ctx: HandlerContext, provider_call_id: str) -> Optional[Call]:
    return ctx.db.execute(
        select(Call).where(
            Call.tenant_id == ctx.tenant_id,
            Call.provider_call_id == provider_call_id,
        )
    ).scalar_one_or_none()


def apply_call_status(ctx: HandlerContext, payload: Dict[str, Any], next_status: CallStatus) -> Optional[int]:
    """
    Move the call named in ``payload`` to ``next_status`` with one guarded upsert.

    Sparse payloads never erase known fields (COALESCE on every column), and
    the ON CONFLICT branch only fires when the stored status may legally move
    to ``next_status``, so concurrent writers cannot regress a call. Returns
    the call row id, or None when nothing was written.
    """
    details = extract_call_details(payload)
    if details.provider_call_id is None:
        logger.warning(
            "call_event.missing_call_id",
            tenant_id=ctx.tenant_id,
            event_type=ctx.event_type,
            event_id=ctx.event_id,
        )
        return None

    existing = _find_call(ctx, details.provider_call_id)
    current = existing.status if existing is not None else None
    if not is_valid_transition(current, next_status):
        logger.warning(
            "call_event.illegal_transition",
            tenant_id=ctx.tenant_id,
            provider_call_id=details.provider_call_id,
            event_type=ctx.event_type,
            current_status=current,
            attempted_status=next_status.value,
            reason=transition_error(current, next_status.value),
        )
        return None

    now = _utc_now()
    known_started = as_utc(existing.started_at) if existing is not None and existing.started_at else None
    known_ended = as_utc(existing.ended_at) if existing is not None and existing.ended_at else None

    started_at = details.started_at
    if started_at is None and next_status is CallStatus.ACTIVE and known_started is None:
        started_at = now

    ended_at = None
    duration = None
    if next_status in _CLOSING:
        ended_at = known_ended or details.ended_at or now
    if next_status is CallStatus.ENDED:
        duration = details.duration_seconds
        if duration is None:
            duration = seconds_between(started_at or known_started, ended_at)

    insert = dialect_insert(ctx.db)
    stmt = insert(Call).values(
        tenant_id=ctx.tenant_id,
        provider_call_id=details.provider_call_id,
        direction=details.direction,
        from_number=details.from_number,
        to_number=details.to_number,
        assigned_user_id=details.provider_user_id,
        status=next_status.value,
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=duration,
        recording_url=details.recording_url,
        sanitized_payload=sanitize_payload(payload, ctx.sanitize_limits),
        created_at=now,
        updated_at=now,
    )
    calls = Call.__table__.c
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "provider_call_id"],
        set_={
            "status": excluded.status,
            "direction": func.coalesce(excluded.direction, calls.direction),
            "from_number": func.coalesce(excluded.from_number, calls.from_number),
            "to_number": func.coalesce(excluded.to_number, calls.to_number),
            "assigned_user_id": func.coalesce(excluded.assigned_user_id, calls.assigned_user_id),
            "started_at": func.coalesce(excluded.started_at, calls.started_at),
            # first recorded end wins
            "ended_at": func.coalesce(calls.ended_at, excluded.ended_at),
            "duration_seconds": func.coalesce(excluded.duration_seconds, calls.duration_seconds),
            "recording_url": func.coalesce(excluded.recording_url, calls.recording_url),
            "sanitized_payload": excluded.sanitized_payload,
            "updated_at": excluded.updated_at,
        },
        where=calls.status.in_(sorted(allowed_predecessors(next_status))),
    ).returning(
        Call.id,
        Call.status,
        Call.direction,
        Call.from_number,
        Call.to_number,
        Call.assigned_user_id,
        Call.duration_seconds,
    )
    row = ctx.db.execute(stmt).first()
    if row is None:
        # another writer moved the call between our read and the upsert
        logger.info(
            "call_event.transition_lost_race",
            tenant_id=ctx.tenant_id,
            provider_call_id=details.provider_call_id,
            attempted_status=next_status.value,
        )
        return None

    logger.info(
        "call_event.applied",
        tenant_id=ctx.tenant_id,
        provider_call_id=details.provider_call_id,
        previous_status=current,
        status=row.status,
    )
    event = {
        "type": "call_event",
        "event": ctx.event_type,
        "call_id": details.provider_call_id,
        "status": row.status,
        "direction": row.direction,
        "from_number": row.from_number,
        "to_number": row.to_number,
        "user_id": row.assigned_user_id,
        "timestamp": now.isoformat(),
    }
    if row.status == CallStatus.ENDED.value:
        event["duration_seconds"] = row.duration_seconds
    ctx.notify(event, provider_user_id=row.assigned_user_id)
    return row.id


def handle_call_ring(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    apply_call_status(ctx, payload, CallStatus.RINGING)


def handle_call_started(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    apply_call_status(ctx, payload, CallStatus.ACTIVE)


def handle_call_ended(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    apply_call_status(ctx, payload, CallStatus.ENDED)


def handle_call_missed(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    apply_call_status(ctx, payload, CallStatus.MISSED)


def handle_call_rejected(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    apply_call_status(ctx, payload, CallStatus.REJECTED)


# ---------------------------------------------------------------------------
# Recordings
# ---------------------------------------------------------------------------

def handle_recording_completed(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    """Attach a recording URL to a known call; status is left alone."""
    recording: Mapping = {}
    for candidate in (dig(payload, "recording"), dig(payload, "data", "recording"), payload):
        if isinstance(candidate, Mapping):
            recording = candidate
            break
    call = call_section(payload)

    provider_call_id = coerce_id(
        first_present(recording.get("call_id"), dig(payload, "call", "id"), call.get("call_id"))
    )
    url = coerce_text(
        first_present(
            recording.get("url"),
            recording.get("recording_url"),
            recording.get("download_url"),
            dig(payload, "call", "recording_url"),
        ),
        max_chars=2048,
    )
    if provider_call_id is None or url is None:
        logger.warning(
            "recording.missing_fields",
            tenant_id=ctx.tenant_id,
            event_id=ctx.event_id,
            has_call_id=provider_call_id is not None,
            has_url=url is not None,
        )
        return

    now = _utc_now()
    row = ctx.db.execute(
        update(Call)
        .where(Call.tenant_id == ctx.tenant_id, Call.provider_call_id == provider_call_id)
        .values(recording_url=url, updated_at=now)
        .returning(Call.id, Call.status, Call.assigned_user_id)
        .execution_options(synchronize_session=False)
    ).first()
    if row is None:
        logger.warning(
            "recording.unknown_call",
            tenant_id=ctx.tenant_id,
            provider_call_id=provider_call_id,
        )
        return

    logger.info("recording.attached", tenant_id=ctx.tenant_id, provider_call_id=provider_call_id)
    ctx.notify(
        {
            "type": "call_event",
            "event": ctx.event_type,
            "call_id": provider_call_id,
            "status": row.status,
            "recording_url": url,
            "user_id": row.assigned_user_id,
            "timestamp": now.isoformat(),
        },
        provider_user_id=row.assigned_user_id,
    )


def register_call_handlers(registry: HandlerRegistry) -> None:
    registry.register(CALL_RING, handle_call_ring)
    registry.register(CALL_STARTED, handle_call_started)
    registry.register(CALL_ENDED, handle_call_ended)
    registry.register(CALL_MISSED, handle_call_missed)
    registry.register(CALL_REJECTED, handle_call_rejected)
    registry.register(CALL_RECORDING_COMPLETED, handle_recording_completed)
