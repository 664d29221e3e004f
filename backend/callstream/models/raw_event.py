from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.sql import func

from callstream.db.base import Base
from callstream.db.types import EncryptedJSON


class RawEvent(Base):
    """
    RawEvent = one webhook delivery exactly as the provider sent it.
    Rows are never deleted; ``processed_at`` is set once and never cleared.
    """

    __tablename__ = "raw_events"

    id = Column(Integer, primary_key=True, index=True)
    # NULL until the owning tenant can be resolved
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    event_type = Column(String(128), nullable=False)
    provider_event_id = Column(String(255), nullable=False, unique=True)
    payload = Column(EncryptedJSON, nullable=False)
    received_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # claim lease
    claimed_by = Column(String(64), nullable=True)
    claimed_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_raw_events_pending", "processed_at", "received_at"),
        Index("ix_raw_events_tenant_type", "tenant_id", "event_type"),
    )
