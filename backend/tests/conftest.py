
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure backend/ is importable as the top-level "callstream" package even when pytest runs from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure the application runs in test/sqlite mode *before* importing any callstream modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# A single in-memory SQLite engine (StaticPool) shared by the app and the tests
import callstream.db.session as callstream_db_session  # noqa: E402

from callstream.db.base import Base  # noqa: E402
from callstream.main import app  # noqa: E402
from callstream.models import ProviderConnection, Tenant, UserMapping  # noqa: E402
from callstream.security.crypto import hash_credential  # noqa: E402
from callstream.services.registry import build_default_registry  # noqa: E402

from _helpers import (  # noqa: E402
    OTHER_API_KEY,
    OTHER_TENANT_ID,
    PROVIDER_ORG_ID,
    TENANT_API_KEY,
    TENANT_ID,
    RecordingBroadcaster,
)

ENGINE = callstream_db_session.get_engine()
SessionTesting = callstream_db_session.get_sessionmaker()


@pytest.fixture(scope="function")
def reset_db():
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)
    yield
    Base.metadata.drop_all(bind=ENGINE)
    Base.metadata.create_all(bind=ENGINE)

@pytest.fixture(scope="function")
def db(reset_db):
    session = SessionTesting()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

@pytest.fixture(scope="function")
def session_factory(reset_db):
    return SessionTesting

@pytest.fixture(scope="function")
def tenants(db):
    db.add_all(
        [
            Tenant(id=TENANT_ID, name="Tenant One", api_key_hash=hash_credential(TENANT_API_KEY)),
            Tenant(id=OTHER_TENANT_ID, name="Tenant Two", api_key_hash=hash_credential(OTHER_API_KEY)),
            ProviderConnection(tenant_id=TENANT_ID, provider_org_id=PROVIDER_ORG_ID),
        ]
    )
    db.commit()
    return {"tenant": TENANT_ID, "other": OTHER_TENANT_ID}

@pytest.fixture(scope="function")
def user_mapping(db, tenants):
    db.add(UserMapping(tenant_id=TENANT_ID, provider_user_id="agent-7", end_user_id="crm-user-7"))
    db.commit()
    return {"provider_user_id": "agent-7", "end_user_id": "crm-user-7"}

@pytest.fixture(scope="function")
def registry():
    return build_default_registry()

@pytest.fixture(scope="function")
def recorder():
    return RecordingBroadcaster()

@pytest.fixture(scope="function")
def processor(session_factory, registry, recorder):
    from callstream.services.processor import EventProcessor

    return EventProcessor(session_factory, registry, recorder, batch_size=50, worker_id="test-worker")

@pytest.fixture(scope="function")
def client(db):
    with TestClient(app) as c:
        yield c
