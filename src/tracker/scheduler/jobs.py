"""
APScheduler jobs for the two sync cadences.

Two interval jobs, one per metric class:

    location_sync   every config.location_interval   → SyncKind.LOCATION pass
    biometric_sync  every config.biometric_interval  → SyncKind.BIOMETRIC pass

`max_instances=1` makes APScheduler skip a fire while the previous run of
the same job is still going; the engine drops same-class overlaps from
other sources (manual, background) on top of that.

reschedule() only replaces a job whose interval actually changed, so calling
it twice with the same configuration leaves next-fire times untouched. It
never waits for or cancels a running pass.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracker.models.config import SyncConfiguration
from tracker.models.record import MetricClass, SyncKind

logger = logging.getLogger(__name__)

JOB_IDS: Dict[MetricClass, str] = {
    MetricClass.LOCATION: "location_sync",
    MetricClass.BIOMETRIC: "biometric_sync",
}

_KINDS: Dict[MetricClass, SyncKind] = {
    MetricClass.LOCATION: SyncKind.LOCATION,
    MetricClass.BIOMETRIC: SyncKind.BIOMETRIC,
}

PassRunner = Callable[[SyncKind], Awaitable[object]]


def build_scheduler() -> AsyncIOScheduler:
    """
    Create the APScheduler instance shared by the interval jobs and the
    local background-grant host.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    return AsyncIOScheduler(timezone=timezone.utc)


class IntervalScheduler:
    """Owns the location and biometric triggers."""

    def __init__(self, scheduler: AsyncIOScheduler, run_pass: PassRunner):
        """
        Args:
            scheduler: APScheduler instance (started or not).
            run_pass: Coroutine function executing one pass of a given kind,
                      normally SyncEngine.run_pass.
        """
        self.scheduler = scheduler
        self._run_pass = run_pass
        self._intervals: Dict[MetricClass, timedelta] = {}

    def reschedule(self, config: SyncConfiguration) -> None:
        """Re-arm both triggers from config. Idempotent."""
        wanted = {
            MetricClass.LOCATION: config.location_interval,
            MetricClass.BIOMETRIC: config.biometric_interval,
        }
        for metric_class, interval in wanted.items():
            job_id = JOB_IDS[metric_class]
            if (
                self._intervals.get(metric_class) == interval
                and self.scheduler.get_job(job_id) is not None
            ):
                continue

            # Pending jobs are not replaced by replace_existing; drop explicitly
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)
            self.scheduler.add_job(
                self._fire,
                trigger=IntervalTrigger(seconds=interval.total_seconds(), timezone=timezone.utc),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=int(max(interval.total_seconds() // 2, 1)),
                kwargs={"kind": _KINDS[metric_class]},
            )
            self._intervals[metric_class] = interval
            logger.info("%s sync scheduled every %s", metric_class.value, interval)

    def cancel(self) -> None:
        """Remove both triggers."""
        for metric_class, job_id in JOB_IDS.items():
            if self.scheduler.get_job(job_id) is not None:
                self.scheduler.remove_job(job_id)
            self._intervals.pop(metric_class, None)

    def next_fire_times(self) -> Dict[MetricClass, Optional[datetime]]:
        """Next fire per class. Works before the scheduler has started too."""
        now = datetime.now(timezone.utc)
        result: Dict[MetricClass, Optional[datetime]] = {}
        for metric_class, job_id in JOB_IDS.items():
            job = self.scheduler.get_job(job_id)
            if job is None:
                result[metric_class] = None
                continue
            # Pending jobs (scheduler not started) have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            result[metric_class] = next_run or job.trigger.get_next_fire_time(None, now)
        return result

    async def _fire(self, kind: SyncKind) -> None:
        """Job body. Catches everything so the scheduler stays alive."""
        try:
            outcome = await self._run_pass(kind)
            logger.debug("%s timer pass finished: %s", kind.value, outcome)
        except Exception as exc:
            logger.error("%s timer pass failed: %s", kind.value, exc)
