from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func

from callstream.db.base import Base


class UserMapping(Base):
    """Maps a provider user id to the tenant's own end-user id."""

    __tablename__ = "user_mappings"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    provider_user_id = Column(String(128), nullable=False)
    end_user_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_user_id", name="uq_user_mappings_tenant_provider_user"),
    )
