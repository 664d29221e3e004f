from __future__ import annotations

import structlog

from callstream.observability.instrument import log_job
from callstream.services.broadcast import BroadcastManager
from callstream.services.processor import CycleStats, EventProcessor

logger = structlog.get_logger(__name__)


@log_job("process-events")
def process_events(processor: EventProcessor) -> CycleStats:
    """
    Interval job: drain the event queue once, then refresh the backlog gauge.

    Runs in the scheduler's thread executor; broadcasts it triggers are handed
    back to the web event loop by the fan-out.
    """
    stats = processor.run_cycle()
    if not stats.aborted:
        processor.refresh_backlog()
    return stats


@log_job("subscriber-heartbeat")
async def heartbeat_sweep(broadcaster: BroadcastManager) -> int:
    """Interval job: drop silent subscribers and ping the rest."""
    removed = await broadcaster.sweep()
    if removed:
        logger.info("heartbeat.removed", count=removed, remaining=broadcaster.connection_count())
    return removed
