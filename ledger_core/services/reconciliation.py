"""
System-wide reconciliation.

A run closes every open transaction group and advances each account's
closed_balance snapshot so that balance reads only have to scan postings
created since the last run.

    1. verify that every transaction group in the ledger balances
    2. stamp every open group with one run-wide reconciled_at
    3. fold the postings stamped in this run into each account's snapshot,
       using an optimistic compare-and-swap on Account.version

Only one run may be in flight per process. A second caller fails immediately
with ReconciliationInProgressError instead of queueing. Runs that do overlap
(separate processes) still fold each posting exactly once: a posting belongs to
the run whose UPDATE moved its reconciled_at off NULL, and the snapshot write is
a compare-and-swap on Account.version.

Known gap: when an account's snapshot update fails (for example after too many
version conflicts) its postings stay stamped although the snapshot did not
advance. Its computed balance then misses those postings until the snapshot is
repaired. The failure is logged at ERROR level with the number of postings
involved.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from ledger_core.core.config import settings
from ledger_core.exceptions import (
    IntegrityViolationError,
    ReconciliationInProgressError,
    TooManyRetriesError,
    UnbalancedTransactionError,
    VersionConflictError,
)
from ledger_core.models import Direction
from ledger_core.repositories import AccountRepository, PostingRepository
from ledger_core.schemas import AccountReconciliationSummary, ReconciliationResult
from ledger_core.services.balance import check_balance, fold_postings

logger = logging.getLogger(__name__)


class MarkedPosting(NamedTuple):
    direction: Direction
    amount: int


class ReconciliationLock:
    """
    Single permit shared by every ReconciliationService in the process.
    Acquisition never waits.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self):
        if not self._lock.acquire(blocking=False):
            raise ReconciliationInProgressError()
        try:
            yield
        finally:
            self._lock.release()


reconciliation_lock = ReconciliationLock()


class ReconciliationService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock: ReconciliationLock = reconciliation_lock,
        max_retries: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        backoff_max_ms: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.max_retries = settings.RECONCILIATION_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base_ms = settings.RECONCILIATION_BACKOFF_BASE_MS if backoff_base_ms is None else backoff_base_ms
        self.backoff_max_ms = settings.RECONCILIATION_BACKOFF_MAX_MS if backoff_max_ms is None else backoff_max_ms

    async def reconcile_all(self) -> ReconciliationResult:
        """
        Reconciles every unreconciled transaction group in the ledger.

        Raises ReconciliationInProgressError if another run holds the lock and
        IntegrityViolationError if any group does not balance; in both cases
        nothing is modified. Per-account snapshot failures do not abort the run.
        """
        with self.lock.hold():
            logger.info("Starting reconciliation run")
            await self._verify_integrity()
            reconciled_at, group_count, marked = await self._mark_open_groups()
            summaries = await self._update_closed_balances(marked)

        result = ReconciliationResult(
            reconciled_at=reconciled_at,
            total_accounts_reconciled=len(summaries),
            total_transaction_groups_reconciled=group_count,
            integrity_check_passed=True,
            total_retries=sum(summary.retries for summary in summaries),
            accounts=summaries,
        )
        logger.info(
            f"Reconciliation completed: {result.total_transaction_groups_reconciled} transaction groups, "
            f"{result.total_accounts_reconciled} accounts, {result.total_retries} retries"
        )
        return result

    def backoff_delay(self, retries: int) -> float:
        """Seconds to wait before retry number `retries` (1-based)."""
        delay_ms = min(self.backoff_base_ms * 2 ** (retries - 1), self.backoff_max_ms)
        return delay_ms / 1000

    async def _verify_integrity(self) -> None:
        async with self.session_factory() as session:
            postings = PostingRepository(session)
            for transaction_id in sorted(await postings.all_transaction_ids()):
                group = await postings.find_by_transaction_id(transaction_id)
                try:
                    check_balance(group, transaction_id)
                except UnbalancedTransactionError as exc:
                    logger.error(f"Integrity check failed, aborting reconciliation: {exc.detail}")
                    raise IntegrityViolationError(transaction_id, exc.debits, exc.credits) from exc

    async def _mark_open_groups(self) -> Tuple[datetime, int, Dict[str, List[MarkedPosting]]]:
        """
        Stamps every open group inside one database transaction.
        Returns the run timestamp, the number of groups this run stamped and the
        stamped postings by account.

        Only rows the UPDATE itself stamped are counted, so a group already closed
        by an overlapping run (another process, or another lock) is skipped.
        """
        marked: Dict[str, List[MarkedPosting]] = defaultdict(list)
        group_count = 0

        async with self.session_factory() as session:
            postings = PostingRepository(session)
            reconciled_at = datetime.now(timezone.utc)
            transaction_ids = await postings.unreconciled_transaction_ids()
            try:
                for transaction_id in sorted(transaction_ids):
                    rows = await postings.mark_group_reconciled(transaction_id, reconciled_at)
                    if not rows:
                        logger.debug(f"Transaction group {transaction_id} was already reconciled")
                        continue
                    group_count += 1
                    for row in rows:
                        marked[row.account_id].append(MarkedPosting(row.direction, row.amount))
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.debug(f"Marked {group_count} transaction groups reconciled at {reconciled_at.isoformat()}")
        return reconciled_at, group_count, marked

    async def _update_closed_balances(
        self, marked: Dict[str, List[MarkedPosting]]
    ) -> List[AccountReconciliationSummary]:
        async with self.session_factory() as session:
            account_ids = await PostingRepository(session).account_ids()

        # Each account retries independently; one account's backoff never delays another
        results = await asyncio.gather(
            *(self._reconcile_account_isolated(account_id, marked.get(account_id, []))
              for account_id in sorted(account_ids))
        )
        return [summary for summary in results if summary is not None]

    async def _reconcile_account_isolated(
        self, account_id: str, postings: List[MarkedPosting]
    ) -> Optional[AccountReconciliationSummary]:
        try:
            return await self._reconcile_account(account_id, postings)
        except Exception as exc:
            logger.error(
                f"Failed to update closed balance for account {account_id}: {exc}. "
                f"{len(postings)} postings were marked reconciled without advancing its snapshot",
                exc_info=not isinstance(exc, TooManyRetriesError),
            )
            return None

    async def _reconcile_account(
        self, account_id: str, postings: List[MarkedPosting]
    ) -> AccountReconciliationSummary:
        retries = 0
        while True:
            async with self.session_factory() as session:
                accounts = AccountRepository(session)
                account = await accounts.get_or_fail(account_id)
                previous_balance = account.closed_balance
                expected_version = account.version
                new_balance = fold_postings(previous_balance, account.direction, postings)

                try:
                    version = await accounts.compare_and_swap_closed_balance(
                        account_id, new_balance, expected_version
                    )
                    await session.commit()
                except VersionConflictError:
                    await session.rollback()
                    retries += 1
                    if retries > self.max_retries:
                        raise TooManyRetriesError(account_id, self.max_retries)
                    delay = self.backoff_delay(retries)
                    logger.warning(
                        f"Version conflict on account {account_id} (expected version {expected_version}), "
                        f"retry {retries}/{self.max_retries} in {delay:.3f}s"
                    )
                else:
                    return AccountReconciliationSummary(
                        account_id=account_id,
                        previous_closed_balance=previous_balance,
                        new_closed_balance=new_balance,
                        transactions_included=len(postings),
                        version=version,
                        retries=retries,
                    )

            await asyncio.sleep(delay)
