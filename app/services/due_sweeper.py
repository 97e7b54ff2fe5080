"""
Due-Payment Sweeper — periodic recurring charges.
==================================================

Runs during the FastAPI lifespan:
1. Every ``interval_s`` seconds (fixed, independent of plan intervals),
   find ``active`` subscriptions whose next_charge_due_at has elapsed.
2. Charge each one in recurring mode through the billing engine, with at
   most ``max_concurrency`` ledger calls in flight.

One subscription's failure never aborts the sweep. A subscription whose
charge is still in flight (a manual retry, or a previous sweep stuck on a
slow ledger call) is skipped and picked up again next period.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from app.config import settings
from app.models.subscription import ACTIVE, FAILED, SUCCESS
from app.services.billing_engine import IN_FLIGHT, BillingEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    due: int = 0
    charged: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0


class DueSweeper:
    """Cancellable periodic task driving recurring charges."""

    def __init__(
        self,
        engine: BillingEngine,
        interval_s: Optional[float] = None,
        max_concurrency: Optional[int] = None,
    ):
        self._engine = engine
        self.interval_s = interval_s if interval_s is not None else settings.sweep_interval_s
        self.max_concurrency = max_concurrency or settings.sweep_max_concurrency
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[float] = None) -> SweepReport:
        """One sweep over everything due at *now* (engine clock by default)."""
        now = self._engine.now() if now is None else now
        due = self._engine.store.find_due(int(now), statuses=(ACTIVE,))
        if not due:
            report = SweepReport()
            self.last_report = report
            return report

        logger.info("sweep_found_due", extra={"count": len(due), "now": int(now)})
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _charge(subscription_id: str):
            async with semaphore:
                return await self._engine.execute_charge(subscription_id, activating=False)

        results = await asyncio.gather(
            *(_charge(sub.id) for sub in due),
            return_exceptions=True,
        )

        charged = failed = skipped = errors = 0
        for sub, result in zip(due, results):
            if isinstance(result, BaseException):
                errors += 1
                logger.error(
                    "sweep_charge_error",
                    extra={"subscription_id": sub.id, "error": repr(result)},
                )
            elif result.outcome == SUCCESS:
                charged += 1
            elif result.outcome == FAILED:
                failed += 1
            else:
                skipped += 1
                if result.outcome == IN_FLIGHT:
                    logger.info("sweep_skipped_in_flight", extra={"subscription_id": sub.id})

        report = SweepReport(due=len(due), charged=charged, failed=failed, skipped=skipped, errors=errors)
        self.last_report = report
        logger.info(
            "sweep_completed",
            extra={"due": report.due, "charged": charged, "failed": failed, "skipped": skipped, "errors": errors},
        )
        return report

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="due-sweeper")
        logger.info("sweeper_started", extra={"interval_s": self.interval_s})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("sweeper_stopped")

    async def _loop(self) -> None:
        try:
            while True:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Due sweep iteration failed")
                await asyncio.sleep(self.interval_s)
        except asyncio.CancelledError:
            logger.info("Due sweeper loop cancelled")
            raise
