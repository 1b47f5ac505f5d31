from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from typing import Any, Optional
from sqlmodel import Session
import asyncio
import logging

from formtester.core.config import get_settings
from formtester.core.database import engine

settings = get_settings()
logger = logging.getLogger(__name__)

# Timer rules live next to the records they belong to
jobstores = {
    'default': SQLAlchemyJobStore(url=settings.DATABASE_URL)
}

scheduler = AsyncIOScheduler(jobstores=jobstores, timezone=settings.TIMEZONE)

SWEEP_JOB_ID = "sweep_due_schedules"


async def run_scheduled_test(
    scheduleId: str,
    url: str,
    formConfig: dict[str, Any],
    userData: Optional[dict[str, Any]] = None,
    name: Optional[str] = None,
    **kwargs: Any,
) -> Optional[str]:
    """Job body fired by a schedule's timer rule.

    Runs the form test headlessly, then folds the outcome into the
    schedule's stats. Takes the rule payload as keyword arguments.

    Returns:
        The id of the run, or None when the schedule's bookkeeping failed.
    """
    from formtester.core.exceptions import FormTesterError
    from formtester.services.runner import FormTestRunner
    from formtester.services.schedule import ScheduleService
    from formtester.services.screenshots import get_screenshot_store
    from formtester.services.timer_rules import get_timer_adapter

    logger.info(f"Scheduler: Starting scheduled test for schedule {scheduleId}")
    with Session(engine) as session:
        runner = FormTestRunner(session, get_screenshot_store(settings), settings)
        test_run = await runner.run(
            url,
            formConfig,
            userData,
            name=name,
            description=f"Scheduled test: {name or url}",
            schedule_id=scheduleId,
        )
        # Recording the completion commits and expires test_run
        run_id, status = test_run.id, test_run.status
        try:
            ScheduleService(session, get_timer_adapter(settings), settings).record_run_completion(
                scheduleId, run_id, status, run_start=test_run.start_time
            )
        except FormTesterError as e:
            logger.error(f"Scheduler: Could not record run {run_id} on schedule {scheduleId}: {e}")
            return None

    logger.info(f"Scheduler: Schedule {scheduleId} run {run_id} finished with status {status}")
    return run_id


async def sweep_due_schedules() -> int:
    """Fallback sweep dispatching every active schedule whose next run has passed.

    Dispatches run concurrently, each with its own session. A failing
    dispatch is logged and does not affect the others.

    Returns:
        Number of schedules dispatched.
    """
    from formtester.services.schedule import ScheduleService
    from formtester.services.timer_rules import get_timer_adapter

    with Session(engine) as session:
        due = ScheduleService(session, get_timer_adapter(settings), settings).due_schedules()
        payloads = [ScheduleService.run_payload(schedule) for schedule in due]

    if not payloads:
        return 0
    logger.info(f"Scheduler: Sweep found {len(payloads)} due schedule(s)")

    results = await asyncio.gather(
        *(run_scheduled_test(**payload) for payload in payloads),
        return_exceptions=True,
    )
    for payload, result in zip(payloads, results):
        if isinstance(result, BaseException):
            logger.error(f"Scheduler: Sweep dispatch failed for schedule {payload['scheduleId']}: {result}")
    return len(payloads)


class SchedulerService:
    """Owns the in-process APScheduler instance.

    With the ``apscheduler`` timer backend every schedule's rule is a job
    here, persisted in the SQL job store so it survives restarts. The
    optional sweep job runs every ``SWEEP_INTERVAL_MINUTES``.
    """
    @staticmethod
    def start():
        if not scheduler.running:
            scheduler.start()
            if settings.SWEEP_INTERVAL_MINUTES > 0:
                scheduler.add_job(
                    sweep_due_schedules,
                    IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
                    id=SWEEP_JOB_ID,
                    replace_existing=True
                )
                logger.info(f"Scheduler started with a {settings.SWEEP_INTERVAL_MINUTES} minute sweep.")
            else:
                logger.info("Scheduler started.")

    @staticmethod
    def shutdown():
        if scheduler.running:
            scheduler.shutdown()

    @staticmethod
    def list_jobs() -> list[dict[str, Any]]:
        """Summaries of the timer rules currently held by the scheduler."""
        jobs = []
        for job in scheduler.get_jobs():
            if job.id == SWEEP_JOB_ID:
                continue
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "name": job.name,
                "nextRunTime": next_run.isoformat() if next_run else None,
                "enabled": next_run is not None,
            })
        return jobs
