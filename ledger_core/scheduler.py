"""
Periodic reconciliation trigger.

Runs inside the API process as an asyncio task. Suitable for a single instance:
with several API replicas, run it in exactly one of them (or disable it with
RECONCILIATION_INTERVAL_SECONDS=0 and call POST /api/transactions/reconciliation
from an external scheduler).
"""
import asyncio
import logging
import time
from typing import Optional

from ledger_core.exceptions import LedgerError
from ledger_core.schemas import ReconciliationResult
from ledger_core.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    def __init__(self, service: ReconciliationService, interval_seconds: int):
        self.service = service
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("Scheduled reconciliation disabled")
            return
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="scheduled-reconciliation")
        logger.info(f"Scheduled reconciliation every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> Optional[ReconciliationResult]:
        """
        One scheduled run. Failures are logged and never raised so the loop keeps going.
        """
        logger.info("Starting scheduled reconciliation...")
        started = time.monotonic()
        try:
            result = await self.service.reconcile_all()
        except LedgerError as exc:
            duration_ms = (time.monotonic() - started) * 1000
            logger.error(f"Scheduled reconciliation failed after {duration_ms:.0f}ms: {exc.detail}")
            return None
        except Exception:
            duration_ms = (time.monotonic() - started) * 1000
            logger.exception(f"Scheduled reconciliation failed after {duration_ms:.0f}ms")
            return None

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Scheduled reconciliation completed successfully in {duration_ms:.0f}ms. "
            f"Accounts: {result.total_accounts_reconciled}, "
            f"Transaction groups: {result.total_transaction_groups_reconciled}, "
            f"Retries: {result.total_retries}"
        )
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
