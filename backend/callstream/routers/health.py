from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from callstream.db.session import get_db
from callstream.schemas.common import fail, ok, meta_now

router = APIRouter(prefix="/api/health", tags=["health"])

@router.get("")
def healthcheck():
    return ok(
        data={"status": "ok"},
        meta=meta_now()
    )

@router.get("/db")
def database_health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001 - reported as a failed probe
        return fail("DB_UNAVAILABLE", str(exc), status_code=503)
    return ok(data={"status": "ok"}, meta=meta_now())
