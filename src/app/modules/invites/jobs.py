"""
Invites Background Jobs

Scheduled expiry of stale invites.

Lazy expiry at validation time is what keeps expired tokens from being
accepted; this job only tidies up pending invites nobody ever opened, so that
listings and history show them as expired.

Design Principles:
- The job is idempotent (a second run finds nothing to do)
- Work is bounded: at most ``max_batches`` batches of ``batch_size`` per run
- Errors are logged and counted, never raised into the scheduler

Schedule:
- Daily at ``reconciler_hour_utc``
- Can also be triggered manually via the debug endpoints
"""

import logging
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from app.core.scheduler import register_job
from app.modules.invites.audit import AuditAction, AuditEvent, AuditTrail
from app.modules.invites.repository import InviteStore
from app.modules.invites.service import SYSTEM_ACTOR, Clock, utc_now

logger = logging.getLogger(__name__)

JOB_ID_EXPIRE_STALE = "invites_expire_stale"

DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_BATCHES = 20


class ExpiryReconciler:
    """
    Transitions pending invites past their expiry to expired.

    Args:
        store: Invite persistence
        audit: Audit sink (one event per batch)
        batch_size: Invites fetched and expired per batch
        max_batches: Upper bound on batches per run
        clock: Returns the current timezone-aware time
    """

    def __init__(
        self,
        store: InviteStore,
        audit: AuditTrail,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches: int = DEFAULT_MAX_BATCHES,
        clock: Clock = utc_now,
    ):
        if batch_size < 1 or max_batches < 1:
            raise ValueError("batch_size and max_batches must be positive")
        self.store = store
        self.audit = audit
        self.batch_size = batch_size
        self.max_batches = max_batches
        self._clock = clock

    async def sweep_expired(self) -> dict[str, Any]:
        """
        Expire every pending invite whose expiry has passed, up to the batch bound.

        Returns:
            Dict with job execution summary including:
            - executed_at: When the job ran
            - batches: Number of batches processed
            - total_expired: Invites transitioned to expired
            - total_errors: Number of failed store calls
        """
        executed_at = self._clock()

        logger.info(f"Starting invite expiry sweep. Cutoff: {executed_at.isoformat()}")

        results: dict[str, Any] = {
            "executed_at": executed_at.isoformat(),
            "batches": 0,
            "total_expired": 0,
            "total_errors": 0,
        }

        for _ in range(self.max_batches):
            try:
                invite_ids = await self.store.find_expired_pending(executed_at, self.batch_size)
                if not invite_ids:
                    break
                expired = await self.store.bulk_expire(invite_ids, executed_at)
            except Exception as e:
                # The next batch would hit the same failure
                logger.error(f"Error during invite expiry sweep: {e}", exc_info=True)
                results["total_errors"] += 1
                break

            results["batches"] += 1
            results["total_expired"] += expired

            if expired:
                await self.audit.record(
                    AuditEvent(
                        action=AuditAction.INVITE_EXPIRED,
                        actor_id=SYSTEM_ACTOR,
                        actor_role=SYSTEM_ACTOR,
                        resource_id=None,
                        detail={
                            "reason": "sweep",
                            "count": expired,
                            "invite_ids": [str(invite_id) for invite_id in invite_ids],
                        },
                        timestamp=executed_at,
                    )
                )

            if len(invite_ids) < self.batch_size:
                break
        else:
            logger.warning(
                f"Invite expiry sweep stopped after {self.max_batches} batches; "
                "remaining invites will be handled on the next run"
            )

        logger.info(
            f"Invite expiry sweep completed. "
            f"Expired: {results['total_expired']}, Errors: {results['total_errors']}"
        )

        return results


def register_invite_jobs(reconciler: ExpiryReconciler, hour_utc: int = 0) -> None:
    """
    Register the invite background jobs with the scheduler.

    Call during application startup, before or after the scheduler starts.
    """
    register_job(
        job_id=JOB_ID_EXPIRE_STALE,
        func=reconciler.sweep_expired,
        trigger=CronTrigger(hour=hour_utc, minute=0, timezone="UTC"),
    )
    logger.info(f"Registered job: {JOB_ID_EXPIRE_STALE} (daily at {hour_utc:02d}:00 UTC)")
