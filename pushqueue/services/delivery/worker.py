from __future__ import annotations

import asyncio
import logging
import signal
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pushqueue.core.config import Settings, get_settings
from pushqueue.domain.models import JOB_STATUS_FAILED, JOB_STATUS_PENDING
from pushqueue.domain.outcomes import outcome_name
from pushqueue.persistence.db import SessionLocal
from pushqueue.persistence.repos.jobs import (
    claim_next_job,
    expire_processing_job,
    list_delivery_tokens,
    list_stale_processing_job_ids,
)
from pushqueue.providers.push.base import PushProvider
from pushqueue.providers.push.factory import get_push_provider
from pushqueue.services.delivery.invoker import DeliveryInvoker
from pushqueue.services.delivery.policy import finalize_degraded, finalize_job


logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "processing lease expired"

# Connection refusals surface as OSError from the driver before SQLAlchemy wraps them.
StoreErrors = (SQLAlchemyError, OSError)

SessionFactory = Callable[[], AsyncSession]

_UNSET: Any = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    # Allow workers to start before migrations by treating missing-table errors as a temporary degraded state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def reconcile_stale_jobs(
    session_factory: SessionFactory,
    *,
    lease_s: int,
    max_retries: int,
    limit: int = 50,
    now: datetime | None = None,
) -> dict[str, int]:
    """Requeue (or fail) jobs whose worker never finalized them within the lease.

    Each job is transitioned in its own transaction, guarded on the lease
    still being expired, so a late finalize and the sweep cannot both apply.
    """
    cutoff = (now or _utc_now()) - timedelta(seconds=max(1, int(lease_s)))
    async with session_factory() as session:
        job_ids = await list_stale_processing_job_ids(session, older_than=cutoff, limit=limit)
    requeued = 0
    failed = 0
    for job_id in job_ids:
        async with session_factory() as session:
            status = await expire_processing_job(
                session,
                job_id=job_id,
                older_than=cutoff,
                error=LEASE_EXPIRED_ERROR,
                max_retries=max_retries,
            )
        if status == JOB_STATUS_PENDING:
            requeued += 1
        elif status == JOB_STATUS_FAILED:
            failed += 1
    if job_ids:
        logger.warning(
            "notification_jobs_reconciled stale=%s requeued=%s failed=%s", len(job_ids), requeued, failed
        )
    return {"stale": len(job_ids), "requeued": requeued, "failed": failed}


class NotificationWorker:
    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        provider: PushProvider | None = _UNSET,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        if provider is _UNSET:
            provider = get_push_provider()
        # An absent provider is degraded mode: jobs are never handed to a real sender.
        self._invoker = DeliveryInvoker(provider) if provider is not None else None
        self._stop_event = asyncio.Event()
        self._last_reconcile_at: float | None = None

    @property
    def degraded(self) -> bool:
        return self._invoker is None

    def stop(self) -> None:
        # Cooperative: wakes the loop from its sleep but lets an in-flight cycle finalize its job.
        if not self._stop_event.is_set():
            logger.info("notification_worker_stop_requested")
        self._stop_event.set()

    async def run_cycle(self) -> dict[str, Any]:
        """Claim at most one job, attempt delivery, and write the outcome back."""
        settings = self._settings
        if self.degraded and settings.notify_degraded_action == "hold":
            return {"status": "held"}

        try:
            async with self._session_factory() as session:
                job = await claim_next_job(session)
        except StoreErrors as exc:
            if _is_missing_table_error(exc):
                return {"status": "waiting_for_migrations"}
            logger.warning("job_store_unavailable error=%s", exc)
            return {"status": "store_unavailable"}
        if job is None:
            return {"status": "idle"}
        logger.info("notification_job_claimed job_id=%s retries=%s", job.id, job.retries)

        if self._invoker is None:
            try:
                async with self._session_factory() as session:
                    job_status = await finalize_degraded(session, job)
            except StoreErrors:
                logger.exception("notification_job_finalize_failed job_id=%s", job.id)
                return {"status": "finalize_failed", "job_id": job.id}
            return {"status": "degraded", "job_id": job.id, "job_status": job_status}

        try:
            async with self._session_factory() as session:
                targets = await list_delivery_tokens(session, user_id=job.user_id)
        except StoreErrors as exc:
            # The claim stands; the lease sweep returns the job to pending.
            logger.warning("job_store_unavailable job_id=%s error=%s", job.id, exc)
            return {"status": "store_unavailable", "job_id": job.id}

        outcome = await self._invoker.send(job, targets)
        try:
            async with self._session_factory() as session:
                job_status = await finalize_job(
                    session,
                    job,
                    outcome,
                    max_retries=max(0, int(settings.notify_max_retries)),
                )
        except StoreErrors:
            logger.exception("notification_job_finalize_failed job_id=%s", job.id)
            return {"status": "finalize_failed", "job_id": job.id, "outcome": outcome_name(outcome)}
        return {
            "status": "processed",
            "job_id": job.id,
            "outcome": outcome_name(outcome),
            "job_status": job_status,
        }

    async def reconcile(self, *, now: datetime | None = None) -> dict[str, int]:
        settings = self._settings
        return await reconcile_stale_jobs(
            self._session_factory,
            lease_s=settings.notify_processing_lease_s,
            max_retries=max(0, int(settings.notify_max_retries)),
            limit=max(1, int(settings.notify_reconcile_batch_size)),
            now=now,
        )

    async def _maybe_reconcile(self) -> None:
        interval = max(1.0, float(self._settings.notify_reconcile_interval_s))
        now = time.monotonic()
        if self._last_reconcile_at is not None and now - self._last_reconcile_at < interval:
            return
        self._last_reconcile_at = now
        try:
            await self.reconcile()
        except StoreErrors as exc:
            if not _is_missing_table_error(exc):
                logger.warning("notification_reconcile_skipped error=%s", exc)

    def _next_interval(self, summary: dict[str, Any]) -> float:
        settings = self._settings
        poll = max(0.0, float(settings.notify_worker_poll_interval_s))
        idle = max(poll, float(settings.notify_worker_idle_interval_s))
        if self.degraded or summary.get("status") in {"store_unavailable", "waiting_for_migrations", "error"}:
            return idle
        return poll

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        logger.info(
            "notification_worker_started mode=%s max_retries=%s",
            "degraded" if self.degraded else "push",
            self._settings.notify_max_retries,
        )
        while not self._stop_event.is_set():
            try:
                await self._maybe_reconcile()
                summary = await self.run_cycle()
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("notification delivery cycle failed")
                summary = {"status": "error"}
            if self._stop_event.is_set():
                break
            await self._sleep(self._next_interval(summary))
        logger.info("notification_worker_stopped")


async def run_notification_delivery_loop(worker: NotificationWorker | None = None) -> None:
    # Stop cleanly on SIGINT/SIGTERM so a claimed job is finalized before the process exits.
    worker = worker or NotificationWorker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    await worker.run()
