from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from pushqueue.domain.models import JOB_STATUS_FAILED, JOB_STATUS_SENT
from pushqueue.domain.outcomes import (
    AllDelivered,
    ClaimedJob,
    NoTargets,
    Outcome,
    PartialFailure,
    TransportError,
)
from pushqueue.persistence.repos.jobs import mark_job_failed, mark_job_sent, requeue_or_fail_job

logger = logging.getLogger(__name__)

NO_TARGETS_ERROR = "no delivery targets"
DEGRADED_ERROR = "push delivery unavailable"


async def finalize_job(
    session: AsyncSession,
    job: ClaimedJob,
    outcome: Outcome,
    *,
    max_retries: int,
) -> str | None:
    """Write the outcome of one delivery attempt back to the job store.

    Returns the status written, or ``None`` if the job had already left
    ``processing`` or was claimed again after a lease sweep (finalizing twice
    is a no-op).
    """
    if isinstance(outcome, AllDelivered):
        if not await mark_job_sent(
            session,
            job_id=job.id,
            notification_id=job.notification_id,
            claimed_at=job.processing_at,
        ):
            return None
        logger.info("notification_job_sent job_id=%s notification_id=%s", job.id, job.notification_id)
        return JOB_STATUS_SENT

    if isinstance(outcome, NoTargets):
        # Retrying cannot help until the user registers a token, so fail immediately.
        if not await mark_job_failed(
            session, job_id=job.id, claimed_at=job.processing_at, error=NO_TARGETS_ERROR
        ):
            return None
        logger.warning("notification_job_no_targets job_id=%s user_id=%s", job.id, job.user_id)
        return JOB_STATUS_FAILED

    if isinstance(outcome, (PartialFailure, TransportError)):
        status = await requeue_or_fail_job(
            session,
            job_id=job.id,
            claimed_at=job.processing_at,
            error=outcome.reason,
            max_retries=max_retries,
        )
        if status == JOB_STATUS_FAILED:
            logger.warning("notification_job_failed job_id=%s reason=%s", job.id, outcome.reason)
        elif status is not None:
            logger.info("notification_job_requeued job_id=%s retries=%s", job.id, job.retries + 1)
        return status

    raise TypeError(f"Unsupported delivery outcome: {outcome!r}")


async def finalize_degraded(session: AsyncSession, job: ClaimedJob) -> str | None:
    # Without a push provider the notification stays readable in-app but is never reported as sent.
    if not await mark_job_failed(session, job_id=job.id, claimed_at=job.processing_at, error=DEGRADED_ERROR):
        return None
    logger.info("notification_job_degraded job_id=%s", job.id)
    return JOB_STATUS_FAILED
