from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from callstream.models import ProviderConnection, Tenant, UserMapping
from callstream.security.crypto import hash_credential
from callstream.services.normalize import coerce_id, dig, first_present

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Session]


class TenantResolver(Protocol):
    def resolve_tenant(self, credential: Optional[str]) -> Optional[str]: ...


class UserDirectory(Protocol):
    def lookup_end_user(self, tenant_id: str, provider_user_id: str) -> Optional[str]: ...


# ---------------------------------------------------------------------------
# Session-level lookups
# ---------------------------------------------------------------------------

def tenant_for_credential(db: Session, credential: Optional[str]) -> Optional[str]:
    """Active tenant owning the API key, or None."""
    if not credential or not credential.strip():
        return None
    return db.execute(
        select(Tenant.id).where(
            Tenant.api_key_hash == hash_credential(credential),
            Tenant.is_active.is_(True),
        )
    ).scalar_one_or_none()


def provider_org_id(payload: Any) -> Optional[str]:
    """Organization id embedded in a provider payload, if any."""
    return coerce_id(
        first_present(
            dig(payload, "organization_id"),
            dig(payload, "org_id"),
            dig(payload, "company", "id"),
            dig(payload, "data", "organization_id"),
        )
    )


def resolve_tenant_for_org(db: Session, org_id: Optional[str]) -> Optional[str]:
    if not org_id:
        return None
    return db.execute(
        select(ProviderConnection.tenant_id)
        .join(Tenant, Tenant.id == ProviderConnection.tenant_id)
        .where(ProviderConnection.provider_org_id == org_id, Tenant.is_active.is_(True))
    ).scalar_one_or_none()


def end_user_for(db: Session, tenant_id: str, provider_user_id: str) -> Optional[str]:
    return db.execute(
        select(UserMapping.end_user_id).where(
            UserMapping.tenant_id == tenant_id,
            UserMapping.provider_user_id == provider_user_id,
        )
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Collaborators handed to long-lived components
# ---------------------------------------------------------------------------

class SqlTenantResolver:
    """Resolves hashed tenant API keys; each call uses a short-lived session."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def resolve_tenant(self, credential: Optional[str]) -> Optional[str]:
        with self._session_factory() as db:
            return tenant_for_credential(db, credential)


class SqlUserDirectory:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def lookup_end_user(self, tenant_id: str, provider_user_id: str) -> Optional[str]:
        with self._session_factory() as db:
            return end_user_for(db, tenant_id, provider_user_id)
