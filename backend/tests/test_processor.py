from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from callstream import config
from callstream.security import crypto
from callstream.services.call_handlers import apply_call_status
from callstream.services.call_state import CallStatus
from callstream.services.event_store import enqueue
from callstream.services.processor import EventProcessor

from _helpers import PROVIDER_ORG_ID, TENANT_ID, fetch_calls, fetch_event


def _enqueue(db, provider_event_id, event_type, payload, tenant_id=TENANT_ID):
    assert enqueue(
        db,
        tenant_id=tenant_id,
        event_type=event_type,
        provider_event_id=provider_event_id,
        payload=payload,
    )


def test_ring_then_ended_end_to_end(db, tenants, processor, recorder):
    _enqueue(
        db,
        "e1",
        "call.ring",
        {"call": {"id": 42, "direction": "incoming", "from": "+15550001111", "to": "+15550002222"}},
    )
    stats = processor.run_cycle()
    assert stats.processed == 1

    (call,) = fetch_calls(db)
    assert call.provider_call_id == "42"
    assert call.direction == "inbound"
    assert call.status == "ringing"

    _enqueue(db, "e2", "call.ended", {"call": {"id": 42, "duration": 37}})
    processor.run_cycle()

    (call,) = fetch_calls(db)
    assert call.status == "ended"
    assert call.duration_seconds == 37
    assert fetch_event(db, "e1").processed_at is not None
    assert fetch_event(db, "e2").processed_at is not None

    assert [n.event["status"] for n in recorder.published] == ["ringing", "ended"]
    assert all(n.tenant_id == TENANT_ID for n in recorder.published)


def test_illegal_regression_is_still_marked_processed(db, tenants, processor, recorder):
    _enqueue(db, "e1", "call.ended", {"call": {"id": 1, "duration": 10}})
    _enqueue(db, "e2", "call.ring", {"call": {"id": 1}})

    stats = processor.run_cycle()
    assert stats.processed == 2

    (call,) = fetch_calls(db)
    assert call.status == "ended"
    assert fetch_event(db, "e2").processed_at is not None
    assert len(recorder.published) == 1


def test_unknown_event_type_is_marked_processed(db, tenants, processor, recorder):
    _enqueue(db, "e-unknown", "contact.updated", {"contact": {"id": 1}})

    stats = processor.run_cycle()
    assert stats.unhandled == 1
    assert stats.processed == 0
    assert fetch_event(db, "e-unknown").processed_at is not None
    assert recorder.published == []


def test_handler_failure_rolls_back_and_leaves_event_for_retry(db, tenants, processor, registry, recorder):
    attempts = []

    def flaky(ctx, payload):
        attempts.append(payload)
        apply_call_status(ctx, payload, CallStatus.RINGING)
        if len(attempts) == 1:
            raise ValueError("boom")

    registry.register("call.flaky", flaky)
    _enqueue(db, "e-flaky", "call.flaky", {"call": {"id": 77}})

    first = processor.run_cycle()
    assert first.failed == 1
    assert len(attempts) == 1
    row = fetch_event(db, "e-flaky")
    assert row.processed_at is None
    assert row.claimed_by is None
    # handler writes and queued notifications were discarded with the transaction
    assert fetch_calls(db) == []
    assert recorder.published == []

    second = processor.run_cycle()
    assert second.processed == 1
    assert fetch_event(db, "e-flaky").processed_at is not None
    assert len(fetch_calls(db)) == 1


def test_one_failure_does_not_block_the_batch(db, tenants, processor, registry):
    def broken(ctx, payload):
        raise RuntimeError("nope")

    registry.register("call.broken", broken)
    _enqueue(db, "e1", "call.broken", {})
    _enqueue(db, "e2", "call.ring", {"call": {"id": 5}})

    stats = processor.run_cycle()
    assert stats.failed == 1
    assert stats.processed == 1
    assert stats.claimed == 2
    assert fetch_event(db, "e2").processed_at is not None


def test_unrepresentable_duration_does_not_poison_the_event(db, tenants, processor):
    _enqueue(db, "e-ring", "call.ring", {"call": {"id": 5}})
    _enqueue(db, "e-end", "call.ended", {"call": {"id": 5, "duration": "1e999"}})
    _enqueue(db, "e-list", "call.ended", {"call": {"id": 6, "duration": [1, 2]}})

    stats = processor.run_cycle()
    assert stats.failed == 0
    assert stats.processed == 3
    assert fetch_event(db, "e-end").processed_at is not None
    assert fetch_event(db, "e-list").processed_at is not None

    calls = {call.provider_call_id: call for call in fetch_calls(db)}
    assert calls["5"].status == "ended"
    assert calls["6"].status == "ended"
    assert calls["6"].duration_seconds is None


@pytest.fixture
def switch_key(monkeypatch):
    def use(key):
        monkeypatch.setenv("APP_ENCRYPTION_KEY", key)
        config.get_settings.cache_clear()
        crypto.reset_crypto_state()

    yield use
    monkeypatch.undo()
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()


def test_payload_sealed_with_another_key_stays_queued(db, tenants, processor, recorder, switch_key):
    switch_key("key-at-ingest")
    _enqueue(db, "e-sealed", "call.ring", {"call": {"id": 9}})

    switch_key("rotated-key")
    stats = processor.run_cycle()
    assert stats.failed == 1
    assert stats.processed == 0
    row = fetch_event(db, "e-sealed")
    assert row.processed_at is None
    assert row.claimed_by is None
    assert fetch_calls(db) == []
    assert recorder.published == []

    switch_key("key-at-ingest")
    assert processor.run_cycle().processed == 1
    assert fetch_event(db, "e-sealed").processed_at is not None
    assert len(fetch_calls(db)) == 1


def test_storage_fault_aborts_the_cycle(db, tenants, processor, registry):
    def unreachable(ctx, payload):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    registry.register("call.unreachable", unreachable)
    _enqueue(db, "e1", "call.unreachable", {})
    _enqueue(db, "e2", "call.ring", {"call": {"id": 6}})

    stats = processor.run_cycle()
    assert stats.aborted is True
    assert stats.processed == 0
    for provider_event_id in ("e1", "e2"):
        row = fetch_event(db, provider_event_id)
        assert row.processed_at is None
        assert row.claimed_by is None


def test_event_without_tenant_is_resolved_from_provider_org(db, tenants, processor):
    _enqueue(
        db,
        "e-org",
        "call.ring",
        {"organization_id": PROVIDER_ORG_ID, "call": {"id": 8}},
        tenant_id=None,
    )

    stats = processor.run_cycle()
    assert stats.processed == 1
    assert fetch_event(db, "e-org").tenant_id == TENANT_ID
    assert len(fetch_calls(db, TENANT_ID)) == 1


def test_event_for_unknown_org_is_deferred(db, tenants, processor):
    _enqueue(db, "e-lost", "call.ring", {"organization_id": "org-unknown", "call": {"id": 8}}, tenant_id=None)

    stats = processor.run_cycle()
    assert stats.deferred == 1
    row = fetch_event(db, "e-lost")
    assert row.processed_at is None
    assert row.tenant_id is None
    assert row.claimed_by is None


def test_batches_drain_the_queue(db, tenants, session_factory, registry, recorder):
    small = EventProcessor(session_factory, registry, recorder, batch_size=2, worker_id="small")
    for i in range(5):
        _enqueue(db, f"e{i}", "call.ring", {"call": {"id": i}})

    stats = small.run_cycle()
    assert stats.batches == 3
    assert stats.processed == 5
    assert small.refresh_backlog() == 0


def test_max_events_caps_a_cycle(db, tenants, processor):
    for i in range(5):
        _enqueue(db, f"e{i}", "call.ring", {"call": {"id": i}})

    stats = processor.run_cycle(max_events=2)
    assert stats.claimed == 2
    assert processor.refresh_backlog() == 3


def test_stopped_processor_claims_nothing(db, tenants, processor):
    _enqueue(db, "e1", "call.ring", {"call": {"id": 1}})
    processor.stop()

    stats = processor.run_cycle()
    assert processor.stopped is True
    assert stats.claimed == 0
    assert fetch_event(db, "e1").claimed_by is None
    assert processor.wait_idle(timeout=1) is True


def test_publish_failure_does_not_undo_processing(db, tenants, session_factory, registry):
    class ExplodingBroadcaster:
        def publish(self, notification):
            raise RuntimeError("socket gone")

    proc = EventProcessor(session_factory, registry, ExplodingBroadcaster(), worker_id="w")
    _enqueue(db, "e1", "call.ring", {"call": {"id": 1}})

    stats = proc.run_cycle()
    assert stats.processed == 1
    assert fetch_event(db, "e1").processed_at is not None
