"""
Background reconciliation sweep.

WHAT: Configures APScheduler to periodically re-verify pending invoices that
already have a processor payment reference.

WHY: Settlement normally arrives by webhook or client confirmation. If the
webhook is lost and the payer closes the tab before confirming, the payment
is real but the invoice stays pending. The sweep runs the client-confirm
path for such invoices, so the processor stays the only source of truth
and settlement stays idempotent.

HOW: AsyncIOScheduler with an interval job. Each invoice is settled in its
own session; one failure never stops the batch.

Example:
    # In main.py startup:
    await start_scheduler(gateway, dispatcher)

    # In main.py shutdown:
    await shutdown_scheduler()
"""

import logging
from typing import Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.config import settings
from billing.core.exceptions import AppException, ProcessorConfigError, SettlementNotConfirmedError
from billing.dao.invoice import InvoiceDAO
from billing.models.base import utcnow
from billing.services.notifications import NotificationDispatcher
from billing.services.payment_gateway import PaymentGateway
from billing.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

RECONCILIATION_JOB_ID = "reconciliation_sweep"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


class ReconciliationSweep:
    """
    Settles pending invoices whose payment already succeeded.

    Attributes:
        gateway: Payment processor adapter
        notifier: Receipt dispatcher for invoices the sweep settles
        batch_size: Maximum invoices examined per run
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: Optional[NotificationDispatcher] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initialize the sweep.

        Args:
            gateway: Payment processor adapter
            notifier: Post-commit notification dispatcher
            session_factory: Session factory (defaults to the app's AsyncSessionLocal)
            batch_size: Invoices per run (defaults to settings)
        """
        if session_factory is None:
            from billing.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.batch_size = batch_size or settings.RECONCILIATION_SWEEP_BATCH_SIZE

    async def run(self) -> Dict[str, int]:
        """
        Main job function: re-verify pending invoices with a payment reference.

        Returns:
            Dict with counts per outcome
        """
        logger.info("Starting reconciliation sweep")
        start_time = utcnow()

        stats = {
            "checked": 0,
            "settled": 0,
            "already_settled": 0,
            "unconfirmed": 0,
            "rejected": 0,
            "errors": 0,
        }

        # Stamped before checking: whatever the outcome, the next run starts
        # with invoices this one did not reach.
        async with self._session_factory() as session:
            dao = InvoiceDAO(session)
            invoices = await dao.get_pending_with_reference(limit=self.batch_size)
            candidates = [(i.id, i.payment_reference, i.payer_id) for i in invoices]
            checked_at = utcnow()
            for invoice_id, _, _ in candidates:
                await dao.mark_reconciled(invoice_id, checked_at)
            await session.commit()

        for invoice_id, payment_reference, payer_id in candidates:
            stats["checked"] += 1
            try:
                async with self._session_factory() as session:
                    service = SettlementService(session, self.gateway, self.notifier)
                    result = await service.settle(payment_reference, invoice_id, payer_id)
                if result.created:
                    stats["settled"] += 1
                    logger.info(
                        f"Sweep settled invoice {invoice_id} with payment {payment_reference}",
                        extra={"invoice_id": invoice_id, "payment_id": payment_reference},
                    )
                else:
                    stats["already_settled"] += 1
            except SettlementNotConfirmedError:
                stats["unconfirmed"] += 1
            except ProcessorConfigError as e:
                logger.critical(f"Reconciliation sweep aborted: {e.message}")
                stats["errors"] += 1
                break
            except AppException as e:
                logger.error(
                    f"Sweep could not settle invoice {invoice_id}: {e.message}",
                    extra={"invoice_id": invoice_id, "payment_id": payment_reference, "code": e.code},
                )
                stats["rejected"] += 1
            except Exception:
                logger.exception(
                    f"Unexpected error reconciling invoice {invoice_id}",
                    extra={"invoice_id": invoice_id},
                )
                stats["errors"] += 1

        elapsed = (utcnow() - start_time).total_seconds()
        logger.info(
            f"Reconciliation sweep completed in {elapsed:.2f}s. "
            f"Checked: {stats['checked']}, Settled: {stats['settled']}, "
            f"Unconfirmed: {stats['unconfirmed']}, Errors: {stats['errors']}",
            extra=stats,
        )
        return stats


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler(
    gateway: PaymentGateway,
    notifier: Optional[NotificationDispatcher] = None,
    interval_seconds: Optional[int] = None,
) -> Optional[AsyncIOScheduler]:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the reconciliation sweep
    3. Starts the scheduler

    Note: Call this from FastAPI startup event.
    """
    global _scheduler

    if not settings.RECONCILIATION_SWEEP_ENABLED:
        logger.info("Reconciliation sweep disabled")
        return None

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return _scheduler

    interval = interval_seconds or settings.RECONCILIATION_SWEEP_INTERVAL_SECONDS

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine multiple missed runs into one
            "max_instances": 1,  # Only one instance of each job at a time
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    sweep = ReconciliationSweep(gateway, notifier)
    _scheduler.add_job(
        func=sweep.run,
        trigger=IntervalTrigger(seconds=interval),
        id=RECONCILIATION_JOB_ID,
        name="Reconciliation Sweep",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info(f"Scheduler started with reconciliation sweep every {interval} seconds")
    return _scheduler


async def shutdown_scheduler() -> None:
    """
    Shut down the background job scheduler.

    Note: Call this from FastAPI shutdown event.
    """
    global _scheduler

    if _scheduler is None:
        return

    if _scheduler.running:
        logger.info("Shutting down scheduler...")
        _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    WHY: Reported by the health endpoint.
    """
    if _scheduler is None:
        return {"running": False, "jobs": []}

    jobs = []
    for job in _scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)
        jobs.append(
            {
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            }
        )
    return {"running": _scheduler.running, "jobs": jobs}
