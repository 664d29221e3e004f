from __future__ import annotations

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship

from callstream.db.base import Base


def _new_tenant_id() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    """An isolated customer account; every stored entity carries its id."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_new_tenant_id)
    name = Column(String(255), nullable=False)
    # sha256 of the opaque API key; the key itself is never stored
    api_key_hash = Column(String(64), nullable=True, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    provider_connections = relationship("ProviderConnection", back_populates="tenant")


class ProviderConnection(Base):
    """Links a telephony-provider organization to the tenant that owns it."""

    __tablename__ = "provider_connections"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(
        String(36),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_org_id = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    tenant = relationship("Tenant", back_populates="provider_connections")
