from __future__ import annotations

import socket
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from callstream.db.types import is_sealed
from callstream.observability.metrics import CYCLE_DURATION, EVENT_BACKLOG, EVENTS_PROCESSED
from callstream.services.directory import provider_org_id, resolve_tenant_for_org
from callstream.services.event_store import (
    ClaimedEvent,
    assign_tenant,
    claim_batch,
    count_backlog,
    mark_processed,
    release_claim,
)
from callstream.services.normalize import DEFAULT_LIMITS, SanitizeLimits
from callstream.services.registry import HandlerContext, HandlerRegistry, Notification

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Session]

# connectivity faults: stop the batch instead of burning through it
STORAGE_FAULTS = (OperationalError, InterfaceError)


class EventOutcome(str, Enum):
    PROCESSED = "processed"
    UNHANDLED = "unhandled"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class CycleStats:
    batches: int = 0
    claimed: int = 0
    processed: int = 0
    unhandled: int = 0
    deferred: int = 0
    failed: int = 0
    aborted: bool = False


class StorageUnavailable(RuntimeError):
    """Raised inside a cycle when the database stops answering."""


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class EventProcessor:
    """
    Drains the event queue in claimed batches and dispatches each event.

    Every event runs in its own session: handler writes and the processed
    marker commit together, or roll back together. Notifications queued by a
    handler are published only after that commit.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        registry: HandlerRegistry,
        broadcaster=None,
        *,
        batch_size: int = 50,
        lease_seconds: int = 60,
        max_events_per_cycle: Optional[int] = None,
        sanitize_limits: SanitizeLimits = DEFAULT_LIMITS,
        voicemail_window_seconds: int = 60,
        worker_id: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._broadcaster = broadcaster
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.max_events_per_cycle = max_events_per_cycle
        self.sanitize_limits = sanitize_limits
        self.voicemail_window_seconds = voicemail_window_seconds
        self.worker_id = worker_id or _default_worker_id()
        self._stop = threading.Event()
        self._cycle_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, session_factory: SessionFactory, registry: HandlerRegistry, broadcaster=None):
        return cls(
            session_factory,
            registry,
            broadcaster,
            batch_size=settings.PROCESSOR_BATCH_SIZE,
            lease_seconds=settings.EVENT_CLAIM_LEASE_SECONDS,
            max_events_per_cycle=settings.PROCESSOR_MAX_EVENTS_PER_CYCLE,
            sanitize_limits=SanitizeLimits.from_settings(settings),
            voicemail_window_seconds=settings.VOICEMAIL_DEDUPE_WINDOW_SECONDS,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Ask the running cycle to finish its current batch and return."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cycle is running; False if ``timeout`` ran out first."""
        acquired = self._cycle_lock.acquire(timeout=-1 if timeout is None else timeout)
        if acquired:
            self._cycle_lock.release()
        return acquired

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, max_events: Optional[int] = None) -> CycleStats:
        """
        Claim and process batches until the queue is drained, the event cap is
        hit, or ``stop()`` is called. Never raises for storage faults: the
        cycle is aborted and the next tick tries again.

        Failed and deferred events keep their lease until the cycle ends so
        the same cycle does not claim them again; they are released on exit
        and retried by the next cycle.
        """
        stats = CycleStats()
        if self.stopped:
            return stats
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("processor.cycle.skipped_overlap", worker_id=self.worker_id)
            return stats

        cap = max_events if max_events is not None else self.max_events_per_cycle
        held: List[ClaimedEvent] = []
        start = time.perf_counter()
        try:
            while not self.stopped:
                limit = self.batch_size if cap is None else min(self.batch_size, cap - stats.claimed)
                if limit <= 0:
                    break
                try:
                    batch = self._claim(limit)
                except STORAGE_FAULTS as exc:
                    stats.aborted = True
                    logger.error("processor.claim_failed", worker_id=self.worker_id, error=str(exc))
                    break
                if not batch:
                    break

                stats.batches += 1
                stats.claimed += len(batch)
                try:
                    self._process_batch(batch, stats, held)
                except StorageUnavailable as exc:
                    stats.aborted = True
                    logger.error("processor.batch_aborted", worker_id=self.worker_id, error=str(exc))
                    break
                if len(batch) < limit:
                    break
        finally:
            if held:
                self._release_remaining(held)
            CYCLE_DURATION.observe(time.perf_counter() - start)
            self._cycle_lock.release()

        if stats.claimed or stats.aborted:
            logger.info("processor.cycle.completed", worker_id=self.worker_id, **vars(stats))
        return stats

    def _claim(self, limit: int) -> List[ClaimedEvent]:
        with self._session_factory() as db:
            return claim_batch(db, limit, worker_id=self.worker_id, lease_seconds=self.lease_seconds)

    def _process_batch(self, batch: List[ClaimedEvent], stats: CycleStats, held: List[ClaimedEvent]) -> None:
        for index, event in enumerate(batch):
            try:
                outcome = self.process_event(event)
            except StorageUnavailable:
                held.extend(batch[index:])
                raise
            EVENTS_PROCESSED.labels(event_type=event.event_type, outcome=outcome.value).inc()
            if outcome is EventOutcome.PROCESSED:
                stats.processed += 1
            elif outcome is EventOutcome.UNHANDLED:
                stats.unhandled += 1
            elif outcome is EventOutcome.DEFERRED:
                stats.deferred += 1
                held.append(event)
            else:
                stats.failed += 1
                held.append(event)

    def _release_remaining(self, events: List[ClaimedEvent]) -> None:
        try:
            with self._session_factory() as db:
                for event in events:
                    release_claim(db, event.id)
                db.commit()
        except STORAGE_FAULTS as exc:
            # leases expire on their own
            logger.warning("processor.release_failed", count=len(events), error=str(exc))

    # ------------------------------------------------------------------
    # Single event
    # ------------------------------------------------------------------

    def process_event(self, event: ClaimedEvent) -> EventOutcome:
        """Process one claimed event. The claim is left in place unless the event was processed."""
        log = logger.bind(event_id=event.id, event_type=event.event_type, worker_id=self.worker_id)
        notifications: List[Notification] = []

        with self._session_factory() as db:
            try:
                outcome = self._apply(db, event, notifications, log)
                db.commit()
            except STORAGE_FAULTS as exc:
                db.rollback()
                raise StorageUnavailable(str(exc)) from exc
            except Exception:
                db.rollback()
                log.exception("processor.handler_failed", tenant_id=event.tenant_id)
                return EventOutcome.FAILED

        for notification in notifications:
            self._publish(notification, log)
        return outcome

    def _apply(self, db: Session, event: ClaimedEvent, notifications: List[Notification], log) -> EventOutcome:
        if is_sealed(event.payload):
            # keep the row queued until the right key is configured
            log.error("processor.payload_unreadable", tenant_id=event.tenant_id)
            return EventOutcome.FAILED

        tenant_id = event.tenant_id
        if tenant_id is None:
            tenant_id = resolve_tenant_for_org(db, provider_org_id(event.payload))
            if tenant_id is None:
                log.warning("processor.tenant_unresolved", provider_event_id=event.provider_event_id)
                return EventOutcome.DEFERRED
            assign_tenant(db, event.id, tenant_id)

        handler = self._registry.dispatch(event.event_type)
        if handler is None:
            log.info("processor.unhandled_event_type", tenant_id=tenant_id)
            mark_processed(db, event.id)
            return EventOutcome.UNHANDLED

        ctx = HandlerContext(
            db=db,
            tenant_id=tenant_id,
            event_type=event.event_type,
            event_id=event.id,
            sanitize_limits=self.sanitize_limits,
            voicemail_window_seconds=self.voicemail_window_seconds,
            notifications=notifications,
        )
        payload = event.payload if isinstance(event.payload, dict) else {}
        handler(ctx, payload)
        mark_processed(db, event.id)
        return EventOutcome.PROCESSED

    def _publish(self, notification: Notification, log) -> None:
        if self._broadcaster is None:
            return
        try:
            self._broadcaster.publish(notification)
        except Exception as exc:  # noqa: BLE001 - the event is already committed
            log.warning("processor.publish_failed", tenant_id=notification.tenant_id, error=str(exc))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def refresh_backlog(self) -> int:
        with self._session_factory() as db:
            backlog = count_backlog(db)
        EVENT_BACKLOG.set(backlog)
        return backlog
