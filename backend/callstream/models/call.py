from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint, func

from callstream.db.base import Base
from callstream.db.types import JSON_PAYLOAD


class Call(Base):
    """Current state of one provider call, keyed by (tenant_id, provider_call_id)."""

    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False)
    provider_call_id = Column(String(128), nullable=False)
    direction = Column(String(16), nullable=True)
    from_number = Column(String(64), nullable=True)
    to_number = Column(String(64), nullable=True)
    # provider user id of the agent handling the call
    assigned_user_id = Column(String(128), nullable=True)
    status = Column(String(16), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    recording_url = Column(Text, nullable=True)
    sanitized_payload = Column(JSON_PAYLOAD, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_call_id", name="uq_calls_tenant_provider_call"),
        Index("ix_calls_tenant_status", "tenant_id", "status"),
        Index("ix_calls_tenant_user", "tenant_id", "assigned_user_id"),
    )
