from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint, func

from callstream.db.base import Base


class Voicemail(Base):
    __tablename__ = "voicemails"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False)
    provider_call_id = Column(String(128), nullable=True)
    assigned_user_id = Column(String(128), nullable=False)
    from_number = Column(String(64), nullable=True)
    to_number = Column(String(64), nullable=True)
    recording_url = Column(Text, nullable=False)
    transcript = Column(Text, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        # NULL call ids never collide, so call-less voicemails rely on the dedupe window
        UniqueConstraint("tenant_id", "provider_call_id", name="uq_voicemails_tenant_provider_call"),
        Index("ix_voicemails_dedupe", "tenant_id", "assigned_user_id", "from_number", "created_at"),
    )
