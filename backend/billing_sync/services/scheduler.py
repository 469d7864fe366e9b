"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the subscription reconciliation
job and the entitlement cache purge.

WHY: The provider does not guarantee webhook delivery. Periodically probing
every open provider-linked subscription is the retry path for notifications
that were missed or failed while being processed.

HOW: AsyncIOScheduler with an in-memory job store. Each run opens its own
database session and shares the application's entitlement cache and gateway,
so any change it applies invalidates the same cache the request path reads.

Example:
    # In main.py startup:
    await start_scheduler(app.state.entitlement_cache, app.state.payment_gateway)
"""

import logging
from typing import Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.core.config import build_entitlement_config, settings
from billing_sync.db.session import AsyncSessionLocal
from billing_sync.models.base import utcnow
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.payment_gateway import PaymentGateway
from billing_sync.services.subscription_sync_service import SubscriptionSyncService

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "subscription_reconcile"
CACHE_PURGE_JOB_ID = "entitlement_cache_purge"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None

# Outcome of the most recent scheduled run, reported by /health
_last_run: Optional[dict] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def run_reconciliation(
    cache: EntitlementCache,
    gateway: PaymentGateway,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    limit: Optional[int] = None,
) -> dict:
    """
    Reconcile open provider-linked subscriptions once.

    WHY: Exposed separately from the job so admins and tests can trigger
    a run outside the schedule.

    Returns:
        Counts per outcome (see SubscriptionSyncService.reconcile_all)
    """
    async with session_factory() as session:
        service = SubscriptionSyncService(session, gateway, cache, build_entitlement_config())
        return await service.reconcile_all(limit or settings.RECONCILE_BATCH_SIZE)


async def _reconcile_job(cache: EntitlementCache, gateway: PaymentGateway) -> None:
    global _last_run

    try:
        counts = await run_reconciliation(cache, gateway)
    except Exception as e:
        # The next interval retries; the scheduler itself must keep running.
        logger.exception("Subscription reconciliation job failed")
        _last_run = {"finished_at": utcnow().isoformat(), "error": type(e).__name__}
        return

    logger.info(f"Subscription reconciliation finished: {counts}")
    _last_run = {"finished_at": utcnow().isoformat(), "counts": counts}


async def _purge_cache_job(cache: EntitlementCache) -> None:
    # Coroutine so it runs on the event loop, not in the executor's thread pool
    cache.purge()


async def start_scheduler(cache: EntitlementCache, gateway: PaymentGateway) -> None:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the cache purge job and the reconciliation job (unless disabled)
    3. Starts the scheduler

    Note: Call this from FastAPI startup event.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine multiple missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    _scheduler.add_job(
        func=_purge_cache_job,
        args=[cache],
        trigger=IntervalTrigger(seconds=settings.ENTITLEMENT_CACHE_PURGE_INTERVAL_SECONDS),
        id=CACHE_PURGE_JOB_ID,
        name="Entitlement Cache Purge",
        replace_existing=True,
    )

    if settings.RECONCILE_ENABLED:
        _register_reconcile_job(cache, gateway)
    else:
        logger.info("Subscription reconciliation disabled")

    _scheduler.start()
    logger.info("Scheduler started")


def _register_reconcile_job(cache: EntitlementCache, gateway: PaymentGateway) -> None:
    if _scheduler is None:
        logger.error("Cannot register job: scheduler not initialized")
        return

    _scheduler.add_job(
        func=_reconcile_job,
        trigger=IntervalTrigger(seconds=settings.RECONCILE_INTERVAL_SECONDS),
        args=[cache, gateway],
        id=RECONCILE_JOB_ID,
        name="Subscription Reconciliation",
        replace_existing=True,
    )
    logger.info(
        f"Registered subscription reconciliation job "
        f"(interval: {settings.RECONCILE_INTERVAL_SECONDS}s)"
    )


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Call this from FastAPI shutdown event.
    """
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if _scheduler.running:
        logger.info("Shutting down scheduler...")
        _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Report whether the scheduler runs, its jobs, and the last reconciliation.
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "last_reconciliation": _last_run,
            "message": "Scheduler not initialized",
        }

    return {
        "running": _scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in _scheduler.get_jobs()
        ],
        "last_reconciliation": _last_run,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
