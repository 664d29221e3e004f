from __future__ import annotations

import asyncio
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, Iterable, List, Optional, Protocol, Set

import structlog

from callstream.observability.metrics import BROADCAST_DELIVERIES, SUBSCRIBERS
from callstream.services.directory import UserDirectory
from callstream.services.registry import AUDIENCE_USER, Notification

logger = structlog.get_logger(__name__)


class SubscriberTransport(Protocol):
    """What the fan-out needs from a live connection (a Starlette WebSocket fits)."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class Subscriber:
    transport: SubscriberTransport
    tenant_id: str
    end_user_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    # cleared by every heartbeat sweep, set again by any client frame
    is_alive: bool = True


class BroadcastManager:
    """
    Tenant-scoped registry of live connections with fire-and-forget fan-out.

    ``broadcast_*`` and ``publish`` may be called from any thread: sends are
    scheduled as tasks on the bound event loop and never awaited by the
    caller. A connection whose send fails or times out is dropped without
    affecting its siblings.
    """

    def __init__(
        self,
        user_directory: Optional[UserDirectory] = None,
        *,
        send_timeout: float = 5.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._user_directory = user_directory
        self._send_timeout = send_timeout
        self._loop = loop
        self._lock = threading.Lock()
        self._tenants: Dict[str, Set[Subscriber]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def subscribe(
        self,
        tenant_id: str,
        transport: SubscriberTransport,
        end_user_id: Optional[str] = None,
    ) -> Subscriber:
        subscriber = Subscriber(transport=transport, tenant_id=tenant_id, end_user_id=end_user_id)
        with self._lock:
            self._tenants.setdefault(tenant_id, set()).add(subscriber)
        SUBSCRIBERS.inc()
        logger.info(
            "broadcast.subscribed",
            tenant_id=tenant_id,
            connection_id=subscriber.id,
            end_user_id=end_user_id,
        )
        return subscriber

    def unsubscribe(self, tenant_id: str, subscriber: Subscriber) -> bool:
        with self._lock:
            members = self._tenants.get(tenant_id)
            if not members or subscriber not in members:
                return False
            members.discard(subscriber)
            if not members:
                del self._tenants[tenant_id]
        SUBSCRIBERS.dec()
        logger.info("broadcast.unsubscribed", tenant_id=tenant_id, connection_id=subscriber.id)
        return True

    def mark_alive(self, subscriber: Subscriber) -> None:
        subscriber.is_alive = True

    def connection_count(self, tenant_id: Optional[str] = None) -> int:
        with self._lock:
            if tenant_id is not None:
                return len(self._tenants.get(tenant_id, ()))
            return sum(len(members) for members in self._tenants.values())

    def _snapshot(self, tenant_id: Optional[str] = None) -> List[Subscriber]:
        with self._lock:
            if tenant_id is not None:
                return list(self._tenants.get(tenant_id, ()))
            return [s for members in self._tenants.values() for s in members]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def broadcast_to_tenant(self, tenant_id: str, event: Dict[str, Any]) -> int:
        """Schedule ``event`` to every connection of the tenant; returns the number scheduled."""
        return self._fan_out(self._snapshot(tenant_id), event)

    def broadcast_to_user(self, tenant_id: str, end_user_id: str, event: Dict[str, Any]) -> int:
        targets = [s for s in self._snapshot(tenant_id) if s.end_user_id == end_user_id]
        return self._fan_out(targets, event)

    def publish(self, notification: Notification) -> int:
        """
        Deliver a handler notification.

        The provider user is mapped to the tenant's end user when possible.
        Tenant-audience events then carry ``target_user_id``; user-audience
        events go only to that user's connections. With no mapping both fall
        back to a plain tenant broadcast.
        """
        end_user_id = self._resolve_end_user(notification.tenant_id, notification.provider_user_id)
        if end_user_id is None:
            return self.broadcast_to_tenant(notification.tenant_id, notification.event)
        if notification.audience == AUDIENCE_USER:
            return self.broadcast_to_user(notification.tenant_id, end_user_id, notification.event)
        event = dict(notification.event)
        event["target_user_id"] = end_user_id
        return self.broadcast_to_tenant(notification.tenant_id, event)

    def _resolve_end_user(self, tenant_id: str, provider_user_id: Optional[str]) -> Optional[str]:
        if self._user_directory is None or not provider_user_id:
            return None
        try:
            return self._user_directory.lookup_end_user(tenant_id, provider_user_id)
        except Exception as exc:  # noqa: BLE001 - fall back to tenant-wide delivery
            logger.warning(
                "broadcast.user_lookup_failed",
                tenant_id=tenant_id,
                provider_user_id=provider_user_id,
                error=str(exc),
            )
            return None

    def _fan_out(self, targets: Iterable[Subscriber], event: Dict[str, Any]) -> int:
        targets = list(targets)
        if not targets:
            return 0
        message = json.dumps(event, default=str)
        scheduled = 0
        for subscriber in targets:
            if self._schedule(self._deliver(subscriber, message)):
                scheduled += 1
        return scheduled

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> bool:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None and (self._loop is None or running is self._loop):
            task = running.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return True
        if self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
            return True

        coro.close()
        BROADCAST_DELIVERIES.labels(outcome="dropped").inc()
        logger.warning("broadcast.no_event_loop")
        return False

    async def _deliver(self, subscriber: Subscriber, message: str) -> None:
        try:
            await asyncio.wait_for(subscriber.transport.send_text(message), timeout=self._send_timeout)
        except Exception as exc:  # noqa: BLE001 - one bad connection must not affect the rest
            BROADCAST_DELIVERIES.labels(outcome="failed").inc()
            logger.warning(
                "broadcast.send_failed",
                tenant_id=subscriber.tenant_id,
                connection_id=subscriber.id,
                exc_type=type(exc).__name__,
                error=str(exc),
            )
            if self.unsubscribe(subscriber.tenant_id, subscriber):
                await self._close(subscriber)
            return
        BROADCAST_DELIVERIES.labels(outcome="sent").inc()

    async def _close(self, subscriber: Subscriber) -> None:
        try:
            await asyncio.wait_for(subscriber.transport.close(code=1001), timeout=self._send_timeout)
        except Exception as exc:  # noqa: BLE001 - the peer may already be gone
            logger.debug("broadcast.close_failed", connection_id=subscriber.id, error=str(exc))

    async def drain(self) -> None:
        """Wait for sends scheduled on the current loop (used by tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """
        One heartbeat pass: drop connections silent since the previous pass,
        then mark the rest not-alive and ping them. Returns how many were dropped.
        """
        stale: List[Subscriber] = []
        pings = []
        ping = json.dumps({"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()})
        for subscriber in self._snapshot():
            if not subscriber.is_alive:
                stale.append(subscriber)
                continue
            subscriber.is_alive = False
            pings.append(self._deliver(subscriber, ping))

        for subscriber in stale:
            if self.unsubscribe(subscriber.tenant_id, subscriber):
                logger.info("broadcast.heartbeat_timeout", tenant_id=subscriber.tenant_id, connection_id=subscriber.id)
                await self._close(subscriber)

        if pings:
            await asyncio.gather(*pings)
        return len(stale)

    async def close_all(self) -> None:
        for subscriber in self._snapshot():
            if self.unsubscribe(subscriber.tenant_id, subscriber):
                await self._close(subscriber)
