from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pushqueue.domain.models import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_SENT,
    JOB_STATUSES,
    DeliveryTarget,
    Notification,
    NotificationJob,
    User,
)
from pushqueue.domain.outcomes import ClaimedJob


MAX_RETRIES_PREFIX = "max retries exceeded: "


def _utc_now() -> datetime:
    # Keep claim and lease timestamps in UTC so workers on different hosts compare consistently.
    return datetime.now(timezone.utc)


async def enqueue_notification(
    session: AsyncSession,
    *,
    user_id: str,
    title: str,
    body: str,
    metadata: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> tuple[Notification, NotificationJob]:
    # Producer helper: write the notification and its pending job in one transaction.
    now = created_at or _utc_now()
    notification = Notification(
        id=str(uuid4()),
        user_id=user_id,
        title=title,
        body=body,
        metadata_json=metadata,
        received_at=now,
    )
    job = NotificationJob(
        id=str(uuid4()),
        notification_id=notification.id,
        status=JOB_STATUS_PENDING,
        retries=0,
        created_at=now,
    )
    session.add(notification)
    await session.flush()
    session.add(job)
    await session.commit()
    return notification, job


async def get_job(session: AsyncSession, job_id: str) -> NotificationJob | None:
    result = await session.execute(select(NotificationJob).where(NotificationJob.id == job_id))
    return result.scalar_one_or_none()


async def claim_next_job(session: AsyncSession) -> ClaimedJob | None:
    """Claim the oldest pending job for this worker.

    The candidate row is selected with ``FOR UPDATE SKIP LOCKED`` where the
    dialect supports it, so concurrent claimants never wait on each other. The
    status flip is a conditional update on ``status = 'pending'`` in the same
    transaction; on dialects without row locks (SQLite) that guard is what
    keeps a second claimant from taking the same job.
    """
    row = (
        await session.execute(
            select(
                NotificationJob.id,
                NotificationJob.notification_id,
                NotificationJob.retries,
                Notification.user_id,
                Notification.title,
                Notification.body,
                Notification.metadata_json.label("metadata_json"),
            )
            .join(Notification, NotificationJob.notification_id == Notification.id)
            .join(User, Notification.user_id == User.id)
            .where(NotificationJob.status == JOB_STATUS_PENDING)
            .order_by(NotificationJob.created_at.asc(), NotificationJob.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True, of=NotificationJob)
        )
    ).first()
    if row is None:
        await session.rollback()
        return None

    now = _utc_now()
    result = await session.execute(
        update(NotificationJob)
        .where(
            NotificationJob.id == row.id,
            NotificationJob.status == JOB_STATUS_PENDING,
        )
        .values(status=JOB_STATUS_PROCESSING, processing_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another worker flipped the row between select and update.
        await session.rollback()
        return None
    await session.commit()
    metadata = row.metadata_json if isinstance(row.metadata_json, dict) else {}
    return ClaimedJob(
        id=row.id,
        notification_id=row.notification_id,
        user_id=row.user_id,
        title=row.title,
        body=row.body,
        metadata=dict(metadata),
        retries=int(row.retries or 0),
        processing_at=now,
    )


async def list_delivery_tokens(session: AsyncSession, *, user_id: str) -> list[str]:
    rows = (
        await session.execute(
            select(DeliveryTarget.token)
            .where(DeliveryTarget.user_id == user_id)
            .order_by(DeliveryTarget.created_at.asc(), DeliveryTarget.id.asc())
        )
    ).scalars().all()
    return [str(token) for token in rows]


def _claim_guards(job_id: str, claimed_at: datetime) -> list[Any]:
    # processing_at identifies the claim; once the sweep requeues a job, a later claim writes a new one.
    return [
        NotificationJob.id == job_id,
        NotificationJob.status == JOB_STATUS_PROCESSING,
        NotificationJob.processing_at == claimed_at,
    ]


async def mark_job_sent(
    session: AsyncSession,
    *,
    job_id: str,
    notification_id: str,
    claimed_at: datetime,
) -> bool:
    # Flip the job and its notification together; a job that already left processing is left untouched.
    result = await session.execute(
        update(NotificationJob)
        .where(*_claim_guards(job_id, claimed_at))
        .values(status=JOB_STATUS_SENT, last_error=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.execute(
        update(Notification)
        .where(Notification.id == notification_id)
        .values(sent=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return True


async def mark_job_failed(session: AsyncSession, *, job_id: str, claimed_at: datetime, error: str) -> bool:
    result = await session.execute(
        update(NotificationJob)
        .where(*_claim_guards(job_id, claimed_at))
        .values(status=JOB_STATUS_FAILED, last_error=error)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.commit()
    return True


async def _retry_or_fail(
    session: AsyncSession,
    *,
    guards: list[Any],
    error: str,
    max_retries: int,
) -> str | None:
    retries = (
        await session.execute(select(NotificationJob.retries).where(*guards))
    ).scalar_one_or_none()
    if retries is None:
        await session.rollback()
        return None
    retries = int(retries)
    if retries >= max_retries:
        status = JOB_STATUS_FAILED
        values: dict[str, Any] = {"status": status, "last_error": f"{MAX_RETRIES_PREFIX}{error}"}
    else:
        status = JOB_STATUS_PENDING
        values = {"status": status, "retries": retries + 1, "last_error": error}
    # Guard on the retry count read above so a concurrent writer cannot double-count an attempt.
    result = await session.execute(
        update(NotificationJob)
        .where(*guards, NotificationJob.retries == retries)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    await session.commit()
    return status


async def requeue_or_fail_job(
    session: AsyncSession,
    *,
    job_id: str,
    claimed_at: datetime,
    error: str,
    max_retries: int,
) -> str | None:
    """Return a processing job to pending, or fail it once retries are exhausted.

    Returns the status written, or ``None`` when the job was no longer
    ``processing`` under the claim made at ``claimed_at``.
    """
    return await _retry_or_fail(
        session,
        guards=_claim_guards(job_id, claimed_at),
        error=error,
        max_retries=max_retries,
    )


async def list_stale_processing_job_ids(
    session: AsyncSession,
    *,
    older_than: datetime,
    limit: int = 50,
) -> list[str]:
    rows = (
        await session.execute(
            select(NotificationJob.id)
            .where(
                NotificationJob.status == JOB_STATUS_PROCESSING,
                NotificationJob.processing_at < older_than,
            )
            .order_by(NotificationJob.processing_at.asc())
            .limit(max(1, limit))
        )
    ).scalars().all()
    await session.rollback()
    return [str(row) for row in rows]


async def expire_processing_job(
    session: AsyncSession,
    *,
    job_id: str,
    older_than: datetime,
    error: str,
    max_retries: int,
) -> str | None:
    # Same transition as a failed attempt, but only while the lease is still expired.
    return await _retry_or_fail(
        session,
        guards=[
            NotificationJob.id == job_id,
            NotificationJob.status == JOB_STATUS_PROCESSING,
            NotificationJob.processing_at < older_than,
        ],
        error=error,
        max_retries=max_retries,
    )


async def job_status_counts(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(
            select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
        )
    ).all()
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts
