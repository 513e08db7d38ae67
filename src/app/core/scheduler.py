"""
Background Job Scheduler

Thin layer over APScheduler's ``AsyncIOScheduler``. Modules register their
jobs at startup through ``register_job``; the application lifespan starts and
stops the scheduler. Jobs are expected to be idempotent, a failed run is
logged and the next scheduled run proceeds as usual.

Registered jobs can also be run, paused and resumed by id, which the debug
router uses for maintenance.
"""

import logging
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any, NamedTuple

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Coroutine[Any, Any, Any]]


class RegisteredJob(NamedTuple):
    func: JobFunc
    trigger: BaseTrigger


TIMEZONE = "UTC"

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 15 * 60,
}

_scheduler: AsyncIOScheduler | None = None

# Survives scheduler restarts; jobs registered before start are added on start
_job_registry: dict[str, RegisteredJob] = {}


def _on_job_event(event: JobExecutionEvent) -> None:
    if event.exception is None:
        logger.info(f"Scheduled run of {event.job_id} finished")
        return
    logger.error(
        f"Scheduled run of {event.job_id} raised: {event.exception}",
        exc_info=event.exception,
    )


def _schedule(scheduler: AsyncIOScheduler, job_id: str, job: RegisteredJob) -> None:
    scheduler.add_job(job.func, trigger=job.trigger, id=job_id, replace_existing=True)
    logger.info(f"Scheduled job: {job_id}")


def _scheduled(job_id: str):
    """The APScheduler job for ``job_id``, or None when not running or unknown."""
    if _scheduler is None:
        return None
    return _scheduler.get_job(job_id)


def register_job(job_id: str, func: JobFunc, trigger: BaseTrigger) -> None:
    """
    Register ``func`` under ``job_id``. Re-registering an id replaces it.

    Args:
        job_id: Unique identifier, also used by the debug endpoints
        func: Zero-argument coroutine function
        trigger: Any APScheduler trigger, usually a CronTrigger
    """
    job = RegisteredJob(func, trigger)
    _job_registry[job_id] = job
    if _scheduler is not None:
        _schedule(_scheduler, job_id, job)


def unregister_all_jobs() -> None:
    _job_registry.clear()


async def start_scheduler() -> AsyncIOScheduler:
    """Start the scheduler with every registered job. Idempotent."""
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return _scheduler

    scheduler = AsyncIOScheduler(timezone=TIMEZONE, job_defaults=JOB_DEFAULTS)
    scheduler.add_listener(_on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
    for job_id, job in _job_registry.items():
        _schedule(scheduler, job_id, job)
    scheduler.start()

    _scheduler = scheduler
    logger.info(f"Scheduler started with {len(_job_registry)} job(s)")
    return scheduler


async def stop_scheduler() -> None:
    """Shut the scheduler down, letting running jobs finish."""
    global _scheduler

    scheduler, _scheduler = _scheduler, None
    if scheduler is None or not scheduler.running:
        return
    scheduler.shutdown(wait=True)
    logger.info("Scheduler stopped")


async def trigger_job_manually(job_id: str) -> dict[str, Any]:
    """
    Run a registered job now, outside its schedule.

    Returns:
        ``job_id``, ``status`` ("success" or "error"), ``executed_at`` and
        either ``result`` or ``error``

    Raises:
        ValueError: If job_id is not registered
    """
    job = _job_registry.get(job_id)
    if job is None:
        raise ValueError(f"Unknown job '{job_id}'. Registered: {sorted(_job_registry)}")

    outcome: dict[str, Any] = {"job_id": job_id, "executed_at": datetime.now(UTC).isoformat()}
    logger.info(f"Running job {job_id} on demand")
    try:
        outcome["result"] = await job.func()
    except Exception as e:
        logger.error(f"On-demand run of {job_id} failed: {e}", exc_info=True)
        outcome.update(status="error", error=str(e))
    else:
        outcome["status"] = "success"
    return outcome


def list_registered_jobs() -> list[dict[str, Any]]:
    """Every registered job with its next run time; unscheduled jobs count as paused."""
    jobs = []
    for job_id in _job_registry:
        scheduled = _scheduled(job_id)
        next_run = scheduled.next_run_time if scheduled is not None else None
        jobs.append(
            {
                "job_id": job_id,
                "registered": True,
                "next_run_time": next_run.isoformat() if next_run else None,
                "is_paused": next_run is None,
            }
        )
    return jobs


def pause_job(job_id: str) -> bool:
    if _scheduled(job_id) is None:
        logger.warning(f"Cannot pause {job_id}: not scheduled")
        return False
    _scheduler.pause_job(job_id)
    logger.info(f"Paused job {job_id}")
    return True


def resume_job(job_id: str) -> bool:
    if _scheduled(job_id) is None:
        logger.warning(f"Cannot resume {job_id}: not scheduled")
        return False
    _scheduler.resume_job(job_id)
    logger.info(f"Resumed job {job_id}")
    return True
