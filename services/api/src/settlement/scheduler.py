"""APScheduler setup for the periodic settlement sweep."""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from conf import SweeperConf
from settlement.sweeper import ExpirySweeper
from utils import log

logger = log.get_logger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def make_sweep_job(sweeper: ExpirySweeper):
    async def settlement_sweep_job():
        logger.info("Settlement sweep starting...")
        try:
            report = await sweeper.run()
            if report.errors:
                logger.warning(f"Settlement sweep finished with {len(report.errors)} errors")
        except Exception as e:
            logger.error(f"Settlement sweep failed: {e}", exc_info=True)

    return settlement_sweep_job


def init_scheduler(sweeper: ExpirySweeper, conf: SweeperConf) -> Optional[AsyncIOScheduler]:
    """Start the sweep on an interval; a run still in progress is never overlapped."""
    global _scheduler
    if not conf.enabled:
        logger.info("Settlement sweeper disabled (SWEEPER_ENABLED=false)")
        return None

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        make_sweep_job(sweeper),
        trigger=IntervalTrigger(minutes=conf.interval_minutes),
        id="settlement_sweep",
        name="Auction and payment settlement sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    _scheduler.start()
    logger.info(f"APScheduler started with settlement sweep every {conf.interval_minutes} minutes")
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        logger.info("APScheduler shut down")
        _scheduler = None
