# callstream/core/security.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from callstream.config import get_settings
from callstream.db.session import get_db
from callstream.services.directory import tenant_for_credential


def api_key_from(request: Request) -> Optional[str]:
    """Tenant API key from the configured header, or ``Authorization: Bearer``."""
    header = get_settings().TENANT_API_KEY_HEADER
    key = request.headers.get(header)
    if key:
        return key.strip()
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def get_current_tenant(request: Request, db: Session = Depends(get_db)) -> str:
    """FastAPI dependency that maps the caller's API key to an active tenant id."""
    tenant_id = tenant_for_credential(db, api_key_from(request))
    if tenant_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")
    request.state.tenant_id = tenant_id
    return tenant_id
