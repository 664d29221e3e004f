from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update

from callstream.db.upsert import dialect_insert
from callstream.models import Call, Voicemail
from callstream.services.call_handlers import call_section
from callstream.services.call_state import CallStatus, allowed_predecessors
from callstream.services.normalize import (
    coerce_id,
    coerce_int,
    coerce_text,
    dig,
    first_present,
)
from callstream.services.registry import AUDIENCE_USER, HandlerContext, HandlerRegistry

logger = structlog.get_logger(__name__)

VOICEMAIL_RECEIVED = "voicemail.received"
CALL_VOICEMAIL = "call.voicemail"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _voicemail_section(payload: Any) -> Mapping:
    for candidate in (dig(payload, "voicemail"), dig(payload, "data", "voicemail"), call_section(payload)):
        if isinstance(candidate, Mapping):
            return candidate
    return {}


def extract_voicemail_fields(payload: Any) -> Dict[str, Any]:
    vm = _voicemail_section(payload)
    call = call_section(payload)
    return {
        "provider_call_id": coerce_id(first_present(vm.get("call_id"), call.get("id"), call.get("call_id"))),
        "assigned_user_id": coerce_id(
            first_present(
                vm.get("user_id"),
                dig(vm, "owner", "id"),
                dig(vm, "target", "id"),
                call.get("user_id"),
                dig(call, "owner", "id"),
            )
        ),
        "from_number": coerce_text(first_present(vm.get("from"), vm.get("from_number"), call.get("from")), 64),
        "to_number": coerce_text(first_present(vm.get("to"), vm.get("to_number"), call.get("to")), 64),
        "recording_url": coerce_text(
            first_present(
                vm.get("recording_url"),
                vm.get("voicemail_link"),
                dig(vm, "recording", "url"),
                call.get("voicemail_link"),
                call.get("recording_url"),
            ),
            max_chars=2048,
        ),
        "transcript": coerce_text(
            first_present(vm.get("transcript"), vm.get("transcription"), call.get("transcription_text")),
            max_chars=10000,
        ),
        "duration_seconds": coerce_int(first_present(vm.get("duration"), vm.get("duration_seconds"))),
    }


def _upsert_by_call_id(ctx: HandlerContext, fields: Dict[str, Any], now: datetime) -> int:
    insert = dialect_insert(ctx.db)
    stmt = insert(Voicemail).values(tenant_id=ctx.tenant_id, created_at=now, updated_at=now, **fields)
    voicemails = Voicemail.__table__.c
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["tenant_id", "provider_call_id"],
        set_={
            "recording_url": func.coalesce(excluded.recording_url, voicemails.recording_url),
            "transcript": func.coalesce(excluded.transcript, voicemails.transcript),
            "duration_seconds": func.coalesce(excluded.duration_seconds, voicemails.duration_seconds),
            # numbers from the first delivery win
            "from_number": func.coalesce(voicemails.from_number, excluded.from_number),
            "to_number": func.coalesce(voicemails.to_number, excluded.to_number),
            "updated_at": excluded.updated_at,
        },
    ).returning(Voicemail.id)
    return ctx.db.execute(stmt).scalar_one()


def _find_recent_duplicate(ctx: HandlerContext, fields: Dict[str, Any], now: datetime) -> Optional[Voicemail]:
    """Call-less voicemails from the same caller to the same user within the window are one voicemail."""
    cutoff = now - timedelta(seconds=ctx.voicemail_window_seconds)
    query = select(Voicemail).where(
        Voicemail.tenant_id == ctx.tenant_id,
        Voicemail.assigned_user_id == fields["assigned_user_id"],
        Voicemail.created_at >= cutoff,
    )
    for column in ("from_number", "to_number"):
        value = fields[column]
        attr = getattr(Voicemail, column)
        query = query.where(attr.is_(None) if value is None else attr == value)
    return ctx.db.execute(query.order_by(Voicemail.created_at.desc()).limit(1)).scalar_one_or_none()


def _mark_call_voicemail(ctx: HandlerContext, provider_call_id: str, now: datetime) -> bool:
    result = ctx.db.execute(
        update(Call)
        .where(
            Call.tenant_id == ctx.tenant_id,
            Call.provider_call_id == provider_call_id,
            Call.status.in_(sorted(allowed_predecessors(CallStatus.VOICEMAIL))),
        )
        .values(status=CallStatus.VOICEMAIL.value, ended_at=func.coalesce(Call.ended_at, now), updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def handle_voicemail(ctx: HandlerContext, payload: Dict[str, Any]) -> None:
    """
    Store a voicemail once.

    With a provider call id the row is upserted on (tenant, call id) and the
    call itself moves to ``voicemail`` when the status graph allows it.
    Without one, a delivery matching an existing voicemail's user and numbers
    inside the dedupe window only fills in late fields.
    """
    fields = extract_voicemail_fields(payload)
    if fields["assigned_user_id"] is None:
        logger.error("voicemail.missing_user", tenant_id=ctx.tenant_id, event_id=ctx.event_id)
        return
    if fields["recording_url"] is None:
        logger.error("voicemail.missing_recording", tenant_id=ctx.tenant_id, event_id=ctx.event_id)
        return

    now = _utc_now()
    call_updated = False
    if fields["provider_call_id"] is not None:
        voicemail_id = _upsert_by_call_id(ctx, fields, now)
        call_updated = _mark_call_voicemail(ctx, fields["provider_call_id"], now)
    else:
        duplicate = _find_recent_duplicate(ctx, fields, now)
        if duplicate is not None:
            if fields["transcript"] and not duplicate.transcript:
                duplicate.transcript = fields["transcript"]
            if fields["duration_seconds"] is not None and duplicate.duration_seconds is None:
                duplicate.duration_seconds = fields["duration_seconds"]
            duplicate.updated_at = now
            ctx.db.flush()
            logger.info(
                "voicemail.duplicate_suppressed",
                tenant_id=ctx.tenant_id,
                voicemail_id=duplicate.id,
                window_seconds=ctx.voicemail_window_seconds,
            )
            return
        record = Voicemail(tenant_id=ctx.tenant_id, created_at=now, updated_at=now, **fields)
        ctx.db.add(record)
        ctx.db.flush()
        voicemail_id = record.id

    logger.info(
        "voicemail.stored",
        tenant_id=ctx.tenant_id,
        voicemail_id=voicemail_id,
        provider_call_id=fields["provider_call_id"],
        call_updated=call_updated,
    )
    ctx.notify(
        {
            "type": "voicemail",
            "event": ctx.event_type,
            "voicemail_id": voicemail_id,
            "call_id": fields["provider_call_id"],
            "from_number": fields["from_number"],
            "to_number": fields["to_number"],
            "duration_seconds": fields["duration_seconds"],
            "recording_url": fields["recording_url"],
            "user_id": fields["assigned_user_id"],
            "timestamp": now.isoformat(),
        },
        provider_user_id=fields["assigned_user_id"],
        audience=AUDIENCE_USER,
    )


def register_voicemail_handlers(registry: HandlerRegistry) -> None:
    registry.register(VOICEMAIL_RECEIVED, handle_voicemail)
    registry.register(CALL_VOICEMAIL, handle_voicemail)
