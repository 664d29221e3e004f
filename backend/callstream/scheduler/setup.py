from __future__ import annotations

from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pytz import timezone
from starlette.concurrency import run_in_threadpool
import structlog

from callstream.config import Settings, get_settings
from callstream.scheduler.jobs import heartbeat_sweep, process_events
from callstream.services.broadcast import BroadcastManager
from callstream.services.processor import EventProcessor

logger = structlog.get_logger(__name__)

PROCESS_EVENTS_JOB = "process-events"
HEARTBEAT_JOB = "subscriber-heartbeat"

# seconds to wait for an in-flight cycle on shutdown
SHUTDOWN_GRACE_SECONDS = 30.0


def build_scheduler(settings: Settings | None = None) -> AsyncIOScheduler:
    settings = settings or get_settings()
    # In-memory job store: jobs are bound to live objects built at startup.
    return AsyncIOScheduler(timezone=timezone(settings.SCHEDULER_TZ))


def configure_jobs(
    scheduler: AsyncIOScheduler,
    processor: EventProcessor,
    broadcaster: BroadcastManager,
    settings: Settings | None = None,
) -> None:
    """
    Register the recurring jobs.

    - process-events: claim and dispatch queued webhook events
    - subscriber-heartbeat: liveness sweep over open subscriber connections
    """
    settings = settings or get_settings()
    tz = timezone(settings.SCHEDULER_TZ)
    scheduler.add_job(
        process_events,
        "interval",
        id=PROCESS_EVENTS_JOB,
        args=[processor],
        seconds=settings.PROCESSOR_INTERVAL_SECONDS,
        next_run_time=datetime.now(tz),
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        heartbeat_sweep,
        "interval",
        id=HEARTBEAT_JOB,
        args=[broadcaster],
        seconds=settings.HEARTBEAT_INTERVAL_SECONDS,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )


async def init_scheduler(app) -> None:
    """
    FastAPI startup hook: build and start the scheduler when SCHEDULER_ENABLED
    is true. Expects ``app.state.processor`` and ``app.state.broadcaster``.
    """
    settings = get_settings()
    if not settings.SCHEDULER_ENABLED:
        logger.info("scheduler.disabled")
        return
    scheduler = build_scheduler(settings)
    configure_jobs(scheduler, app.state.processor, app.state.broadcaster, settings)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler.started", jobs=[job.id for job in scheduler.get_jobs()])


async def shutdown_scheduler(app) -> None:
    """
    FastAPI shutdown hook: stop new cycles, let an in-flight batch finish,
    then stop the scheduler.
    """
    processor = getattr(app.state, "processor", None)
    if processor is not None:
        processor.stop()
        finished = await run_in_threadpool(processor.wait_idle, SHUTDOWN_GRACE_SECONDS)
        if not finished:
            logger.warning("scheduler.shutdown_cycle_still_running", grace_seconds=SHUTDOWN_GRACE_SECONDS)

    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler.stopped")
