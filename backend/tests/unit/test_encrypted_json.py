from __future__ import annotations

from sqlalchemy import Column, Integer, create_engine, text
from sqlalchemy.orm import declarative_base, Session
from sqlalchemy.pool import StaticPool

from callstream.db.types import EncryptedJSON
from callstream.security import crypto

Base = declarative_base()


class SealedEvent(Base):
    __tablename__ = "sealed_events"
    id = Column(Integer, primary_key=True)
    payload = Column(EncryptedJSON, nullable=True)


def _engine():
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )


def test_encrypted_json_roundtrip():
    engine = _engine()
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        rec = SealedEvent(payload={"event_type": "call.ring", "call": {"id": 7}})
        session.add(rec)
        session.commit()
        session.refresh(rec)

        fetched = session.get(SealedEvent, rec.id)
        assert fetched.payload == {"event_type": "call.ring", "call": {"id": 7}}

        raw = session.execute(text("SELECT payload FROM sealed_events")).scalar_one()
        assert "ciphertext" in raw
        assert "call.ring" not in raw


def test_encrypted_json_legacy_value():
    engine = _engine()
    Base.metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO sealed_events (id, payload) VALUES (:id, :payload)"),
            {"id": 1, "payload": '{"plain": true}'},
        )

    with Session(engine) as session:
        rec = session.get(SealedEvent, 1)
        assert rec.payload == {"plain": True}


def test_encrypted_json_bind_none():
    typ = EncryptedJSON()
    assert typ.process_bind_param(None, None) is None
    assert typ.process_result_value(None, None) is None


def test_encrypted_json_process_invalid_ciphertext_returns_original():
    typ = EncryptedJSON()
    invalid = {"ciphertext": "not-valid"}
    assert typ.process_result_value(invalid, None) == invalid


def test_encrypted_json_process_valid_ciphertext():
    typ = EncryptedJSON()
    payload = {"secret": 123}
    token = crypto.seal_payload(payload)
    assert typ.process_result_value({"ciphertext": token}, None) == payload
