"""Cause expiry sweep and its daily scheduler.

``expire_causes`` is the whole job: one bulk update moving every active cause
whose ``end_date`` has passed to ``completed``. ``CauseExpiryScheduler`` only
decides when it runs.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from microdonate.core.config import settings
from microdonate.core.security import utcnow
from microdonate.services import audit

logger = logging.getLogger(__name__)

JOB_ID = "cause_expiry_sweep"


@dataclass(frozen=True)
class SweepResult:
    matched_count: int
    modified_count: int


async def expire_causes(repo, now: Optional[datetime] = None) -> SweepResult:
    """Complete every active cause whose end date is before ``now``.

    Completed and archived causes are left alone, so running the sweep twice
    in a row modifies nothing the second time. Store errors propagate.
    """
    now = now or utcnow()
    matched, modified = await repo.complete_expired_causes(now)
    result = SweepResult(matched_count=matched, modified_count=modified)
    if result.modified_count:
        logger.info("Cause expiry sweep completed %d cause(s)", result.modified_count)
        await audit.causes_expired(repo, result.matched_count, result.modified_count)
    else:
        logger.debug("Cause expiry sweep found nothing to complete")
    return result


class CauseExpiryScheduler:
    def __init__(self, repo, hour: Optional[int] = None, minute: Optional[int] = None):
        self.repo = repo
        self.hour = settings.expiry_cron_hour if hour is None else hour
        self.minute = settings.expiry_cron_minute if minute is None else minute
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self):
        if self.running:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._scheduled_run,
            CronTrigger(hour=self.hour, minute=self.minute, timezone="UTC"),
            id=JOB_ID,
            name="Complete expired causes",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("Cause expiry job scheduled daily at %02d:%02d UTC", self.hour, self.minute)

    def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Cause expiry scheduler stopped")

    def next_run_time(self) -> Optional[datetime]:
        if not self.running:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    async def run_now(self, now: Optional[datetime] = None) -> SweepResult:
        return await expire_causes(self.repo, now)

    async def _scheduled_run(self):
        try:
            await expire_causes(self.repo)
        except Exception:
            logger.exception("Scheduled cause expiry sweep failed")
            # re-raise so APScheduler records the job error too
            raise
