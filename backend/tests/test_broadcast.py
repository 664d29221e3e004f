from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

from callstream.services.broadcast import BroadcastManager
from callstream.services.registry import AUDIENCE_USER, Notification

from _helpers import OTHER_TENANT_ID, TENANT_ID, RecordingTransport


class StaticDirectory:
    def __init__(self, mapping=None, error=None):
        self.mapping = mapping or {}
        self.error = error

    def lookup_end_user(self, tenant_id, provider_user_id):
        if self.error is not None:
            raise self.error
        return self.mapping.get((tenant_id, provider_user_id))


def test_subscribe_and_unsubscribe_track_counts():
    manager = BroadcastManager()
    a = manager.subscribe(TENANT_ID, RecordingTransport())
    manager.subscribe(TENANT_ID, RecordingTransport())
    manager.subscribe(OTHER_TENANT_ID, RecordingTransport())

    assert manager.connection_count(TENANT_ID) == 2
    assert manager.connection_count() == 3

    assert manager.unsubscribe(TENANT_ID, a) is True
    assert manager.unsubscribe(TENANT_ID, a) is False
    assert manager.connection_count(TENANT_ID) == 1


def test_broadcast_reaches_only_the_tenant():
    async def scenario():
        manager = BroadcastManager()
        mine = [RecordingTransport(), RecordingTransport()]
        theirs = RecordingTransport()
        for t in mine:
            manager.subscribe(TENANT_ID, t)
        manager.subscribe(OTHER_TENANT_ID, theirs)

        scheduled = manager.broadcast_to_tenant(TENANT_ID, {"type": "call_event", "status": "ringing"})
        await manager.drain()
        return scheduled, mine, theirs

    scheduled, mine, theirs = asyncio.run(scenario())
    assert scheduled == 2
    for t in mine:
        assert t.frames == [{"type": "call_event", "status": "ringing"}]
    assert theirs.sent == []


def test_broadcast_to_unknown_tenant_is_a_no_op():
    async def scenario():
        manager = BroadcastManager()
        return manager.broadcast_to_tenant("nobody", {"type": "x"})

    assert asyncio.run(scenario()) == 0


def test_failed_send_drops_only_that_connection():
    async def scenario():
        manager = BroadcastManager()
        healthy = RecordingTransport()
        broken = RecordingTransport(fail_with=ConnectionResetError("gone"))
        manager.subscribe(TENANT_ID, healthy)
        manager.subscribe(TENANT_ID, broken)

        manager.broadcast_to_tenant(TENANT_ID, {"n": 1})
        await manager.drain()
        manager.broadcast_to_tenant(TENANT_ID, {"n": 2})
        await manager.drain()
        return manager, healthy, broken

    manager, healthy, broken = asyncio.run(scenario())
    assert healthy.frames == [{"n": 1}, {"n": 2}]
    assert broken.closed_with == 1001
    assert manager.connection_count(TENANT_ID) == 1


def test_slow_connection_times_out_and_is_dropped():
    async def scenario():
        manager = BroadcastManager(send_timeout=0.05)
        slow = RecordingTransport(delay=1.0)
        fast = RecordingTransport()
        manager.subscribe(TENANT_ID, slow)
        manager.subscribe(TENANT_ID, fast)

        manager.broadcast_to_tenant(TENANT_ID, {"n": 1})
        await manager.drain()
        return manager, slow, fast

    manager, slow, fast = asyncio.run(scenario())
    assert fast.frames == [{"n": 1}]
    assert slow.sent == []
    assert manager.connection_count(TENANT_ID) == 1


def test_broadcast_to_user_targets_that_users_connections():
    async def scenario():
        manager = BroadcastManager()
        alice = RecordingTransport()
        bob = RecordingTransport()
        manager.subscribe(TENANT_ID, alice, end_user_id="alice")
        manager.subscribe(TENANT_ID, bob, end_user_id="bob")

        manager.broadcast_to_user(TENANT_ID, "alice", {"type": "voicemail"})
        await manager.drain()
        return alice, bob

    alice, bob = asyncio.run(scenario())
    assert alice.frames == [{"type": "voicemail"}]
    assert bob.sent == []


def test_publish_annotates_tenant_events_with_target_user():
    async def scenario():
        directory = StaticDirectory({(TENANT_ID, "agent-7"): "crm-user-7"})
        manager = BroadcastManager(directory)
        viewer = RecordingTransport()
        manager.subscribe(TENANT_ID, viewer)

        manager.publish(Notification(tenant_id=TENANT_ID, event={"type": "call_event"}, provider_user_id="agent-7"))
        await manager.drain()
        return viewer

    viewer = asyncio.run(scenario())
    assert viewer.frames == [{"type": "call_event", "target_user_id": "crm-user-7"}]


def test_publish_user_audience_reaches_only_the_mapped_user():
    async def scenario():
        directory = StaticDirectory({(TENANT_ID, "agent-7"): "crm-user-7"})
        manager = BroadcastManager(directory)
        owner = RecordingTransport()
        colleague = RecordingTransport()
        manager.subscribe(TENANT_ID, owner, end_user_id="crm-user-7")
        manager.subscribe(TENANT_ID, colleague, end_user_id="crm-user-8")

        manager.publish(
            Notification(
                tenant_id=TENANT_ID,
                event={"type": "voicemail"},
                provider_user_id="agent-7",
                audience=AUDIENCE_USER,
            )
        )
        await manager.drain()
        return owner, colleague

    owner, colleague = asyncio.run(scenario())
    assert owner.frames == [{"type": "voicemail"}]
    assert colleague.sent == []


def test_publish_without_mapping_falls_back_to_tenant():
    async def scenario():
        manager = BroadcastManager(StaticDirectory(error=RuntimeError("directory down")))
        a = RecordingTransport()
        b = RecordingTransport()
        manager.subscribe(TENANT_ID, a, end_user_id="crm-user-7")
        manager.subscribe(TENANT_ID, b)

        manager.publish(
            Notification(
                tenant_id=TENANT_ID,
                event={"type": "voicemail"},
                provider_user_id="agent-7",
                audience=AUDIENCE_USER,
            )
        )
        await manager.drain()
        return a, b

    a, b = asyncio.run(scenario())
    assert a.frames == [{"type": "voicemail"}]
    assert b.frames == [{"type": "voicemail"}]


def test_heartbeat_sweep_drops_silent_connections():
    async def scenario():
        manager = BroadcastManager()
        chatty = RecordingTransport()
        silent = RecordingTransport()
        chatty_sub = manager.subscribe(TENANT_ID, chatty)
        manager.subscribe(TENANT_ID, silent)

        first = await manager.sweep()
        manager.mark_alive(chatty_sub)
        second = await manager.sweep()
        return manager, chatty, silent, first, second

    manager, chatty, silent, first, second = asyncio.run(scenario())
    assert first == 0
    assert second == 1
    assert silent.closed_with == 1001
    assert manager.connection_count(TENANT_ID) == 1
    assert [f["type"] for f in chatty.frames] == ["ping", "ping"]
    assert [f["type"] for f in silent.frames] == ["ping"]


def test_broadcast_from_worker_thread_lands_on_bound_loop():
    async def scenario():
        manager = BroadcastManager(loop=asyncio.get_running_loop())
        viewer = RecordingTransport()
        manager.subscribe(TENANT_ID, viewer)

        loop = asyncio.get_running_loop()
        scheduled = await loop.run_in_executor(
            None, manager.broadcast_to_tenant, TENANT_ID, {"type": "call_event"}
        )
        for _ in range(100):
            if viewer.sent:
                break
            await asyncio.sleep(0.01)
        return scheduled, viewer

    scheduled, viewer = asyncio.run(scenario())
    assert scheduled == 1
    assert viewer.frames == [{"type": "call_event"}]


def test_broadcast_without_event_loop_is_dropped():
    manager = BroadcastManager()
    transport = RecordingTransport()
    manager.subscribe(TENANT_ID, transport)

    assert manager.broadcast_to_tenant(TENANT_ID, {"type": "x"}) == 0
    assert transport.sent == []


def test_close_all_closes_every_connection():
    async def scenario():
        manager = BroadcastManager()
        transports = [RecordingTransport() for _ in range(3)]
        manager.subscribe(TENANT_ID, transports[0])
        manager.subscribe(TENANT_ID, transports[1])
        manager.subscribe(OTHER_TENANT_ID, transports[2])
        await manager.close_all()
        return manager, transports

    manager, transports = asyncio.run(scenario())
    assert manager.connection_count() == 0
    assert all(t.closed_with == 1001 for t in transports)


def test_messages_are_json_with_non_native_values():
    async def scenario():
        manager = BroadcastManager()
        viewer = RecordingTransport()
        manager.subscribe(TENANT_ID, viewer)
        manager.broadcast_to_tenant(TENANT_ID, {"at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
        await manager.drain()
        return viewer

    viewer = asyncio.run(scenario())
    assert json.loads(viewer.sent[0])["at"].startswith("2024-01-01")
