
import asyncio
import logging
import pytest
from datetime import datetime, timezone

from ledger_core.exceptions import (
    IntegrityViolationError,
    ReconciliationInProgressError,
    VersionConflictError,
)
from ledger_core.models import Direction, Posting
from ledger_core.repositories import AccountRepository, PostingRepository
from ledger_core.schemas import AccountCreate, PostingCreate, TransactionCreate
from ledger_core.services.ledger import LedgerService
from ledger_core.services.reconciliation import ReconciliationLock, ReconciliationService

DEBIT = Direction.DEBIT
CREDIT = Direction.CREDIT


async def create_account(session_factory, account_id, direction, closed_balance=0):
    async with session_factory() as session:
        return await LedgerService(session).create_account(
            AccountCreate(id=account_id, direction=direction, closed_balance=closed_balance)
        )


async def post_transaction(session_factory, transaction_id, *legs):
    async with session_factory() as session:
        return await LedgerService(session).create_transaction(TransactionCreate(
            id=transaction_id,
            entries=[
                PostingCreate(account_id=account_id, direction=direction, amount=amount)
                for account_id, direction, amount in legs
            ],
        ))


async def insert_raw_postings(session_factory, *postings):
    """Writes postings straight to the store, skipping creation-time validation."""
    async with session_factory() as session:
        session.add_all(postings)
        await session.commit()


async def get_account(session_factory, account_id):
    async with session_factory() as session:
        return await AccountRepository(session).get(account_id)


async def get_balance(session_factory, account_id):
    async with session_factory() as session:
        return await LedgerService(session).get_account_balance(account_id)


async def get_group(session_factory, transaction_id):
    async with session_factory() as session:
        return await PostingRepository(session).find_by_transaction_id(transaction_id)


def raw_posting(posting_id, transaction_id, account_id, direction, amount):
    return Posting(
        id=posting_id,
        transaction_id=transaction_id,
        account_id=account_id,
        direction=direction,
        amount=amount,
        created_at=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_reconcile_advances_snapshot(session_factory, reconciliation_service):
    await create_account(session_factory, "account-a", DEBIT, closed_balance=1000)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 300), ("account-b", CREDIT, 300))
    await post_transaction(session_factory, "tx-2", ("account-a", DEBIT, 200), ("account-b", CREDIT, 200))

    result = await reconciliation_service.reconcile_all()

    assert result.integrity_check_passed is True
    assert result.total_transaction_groups_reconciled == 2
    assert result.total_accounts_reconciled == 2
    assert result.total_retries == 0

    account = await get_account(session_factory, "account-a")
    assert account.closed_balance == 1500
    assert account.version == 1
    assert await get_balance(session_factory, "account-a") == 1500

    summary = next(s for s in result.accounts if s.account_id == "account-a")
    assert summary.previous_closed_balance == 1000
    assert summary.new_closed_balance == 1500
    assert summary.transactions_included == 2
    assert summary.version == 1
    assert summary.retries == 0

    for transaction_id in ("tx-1", "tx-2"):
        group = await get_group(session_factory, transaction_id)
        assert all(p.reconciled_at is not None for p in group)


@pytest.mark.asyncio
async def test_reconcile_with_empty_ledger(reconciliation_service):
    result = await reconciliation_service.reconcile_all()

    assert result.total_accounts_reconciled == 0
    assert result.total_transaction_groups_reconciled == 0
    assert result.integrity_check_passed is True
    assert result.accounts == []


@pytest.mark.asyncio
async def test_reconcile_preserves_every_balance(session_factory, reconciliation_service):
    await create_account(session_factory, "cash", DEBIT, closed_balance=-500)
    await create_account(session_factory, "revenue", CREDIT, closed_balance=1000)
    await create_account(session_factory, "fees", DEBIT)
    await post_transaction(session_factory, "sale", ("cash", DEBIT, 1000), ("revenue", CREDIT, 1000))
    await post_transaction(
        session_factory, "split",
        ("fees", DEBIT, 40), ("revenue", DEBIT, 600), ("cash", CREDIT, 640),
    )

    before = {a: await get_balance(session_factory, a) for a in ("cash", "revenue", "fees")}
    await reconciliation_service.reconcile_all()
    after = {a: await get_balance(session_factory, a) for a in ("cash", "revenue", "fees")}

    assert before == after == {"cash": -140, "revenue": 1400, "fees": 40}
    for account_id, balance in after.items():
        assert (await get_account(session_factory, account_id)).closed_balance == balance


@pytest.mark.asyncio
async def test_second_run_only_reconciles_new_groups(session_factory, reconciliation_service):
    await create_account(session_factory, "account-a", DEBIT)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 500), ("account-b", CREDIT, 500))
    await reconciliation_service.reconcile_all()
    first_stamp = [p.reconciled_at for p in await get_group(session_factory, "tx-1")]

    await post_transaction(session_factory, "tx-2", ("account-a", DEBIT, 300), ("account-b", CREDIT, 300))
    result = await reconciliation_service.reconcile_all()

    assert result.total_transaction_groups_reconciled == 1
    # Stamps never move once set
    assert [p.reconciled_at for p in await get_group(session_factory, "tx-1")] == first_stamp

    account = await get_account(session_factory, "account-a")
    assert account.closed_balance == 800
    assert account.version == 2


@pytest.mark.asyncio
async def test_group_postings_share_one_stamp(session_factory, reconciliation_service):
    for account_id in ("a", "b", "c"):
        await create_account(session_factory, account_id, DEBIT)
    await post_transaction(session_factory, "tx-3", ("a", DEBIT, 1000), ("b", CREDIT, 600), ("c", CREDIT, 400))
    await post_transaction(session_factory, "tx-4", ("c", DEBIT, 5), ("a", CREDIT, 5))

    result = await reconciliation_service.reconcile_all()

    stamps = {p.reconciled_at for tid in ("tx-3", "tx-4") for p in await get_group(session_factory, tid)}
    assert len(stamps) == 1
    assert result.total_accounts_reconciled == 3


@pytest.mark.asyncio
async def test_unbalanced_group_aborts_run(session_factory, reconciliation_service):
    await create_account(session_factory, "account-a", DEBIT)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "good", ("account-a", DEBIT, 100), ("account-b", CREDIT, 100))
    await insert_raw_postings(
        session_factory,
        raw_posting("bad-1", "unbalanced-tx", "account-a", DEBIT, 1000),
        raw_posting("bad-2", "unbalanced-tx", "account-b", CREDIT, 500),
    )

    with pytest.raises(IntegrityViolationError) as exc_info:
        await reconciliation_service.reconcile_all()

    error = exc_info.value
    assert error.transaction_id == "unbalanced-tx"
    assert (error.debits, error.credits) == (1000, 500)
    assert "not balanced" in error.detail

    # Nothing marked, nothing snapshotted
    for transaction_id in ("good", "unbalanced-tx"):
        assert all(p.reconciled_at is None for p in await get_group(session_factory, transaction_id))
    assert (await get_account(session_factory, "account-a")).version == 0

    # Lock was released: the next run fails on integrity again, not on the lock
    assert not reconciliation_service.lock.locked()
    with pytest.raises(IntegrityViolationError):
        await reconciliation_service.reconcile_all()


@pytest.mark.asyncio
async def test_concurrent_run_fails_fast(session_factory):
    lock = ReconciliationLock()
    first = ReconciliationService(session_factory, lock=lock)
    second = ReconciliationService(session_factory, lock=lock)
    await create_account(session_factory, "account-a", DEBIT)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 1000), ("account-b", CREDIT, 1000))

    running = asyncio.create_task(first.reconcile_all())
    await asyncio.sleep(0)

    with pytest.raises(ReconciliationInProgressError) as exc_info:
        await second.reconcile_all()
    assert exc_info.value.detail == "Reconciliation already in progress"

    result = await running
    assert result.total_transaction_groups_reconciled == 1
    assert not lock.locked()


@pytest.mark.asyncio
async def test_overlapping_runs_fold_each_posting_once(session_factory):
    # Separate locks, as two processes would have
    await create_account(session_factory, "account-a", DEBIT)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 500), ("account-b", CREDIT, 500))
    services = [
        ReconciliationService(session_factory, lock=ReconciliationLock(), backoff_base_ms=1, backoff_max_ms=5)
        for _ in range(2)
    ]

    results = await asyncio.gather(*(service.reconcile_all() for service in services))

    assert sum(result.total_transaction_groups_reconciled for result in results) == 1
    assert (await get_account(session_factory, "account-a")).closed_balance == 500
    assert (await get_account(session_factory, "account-b")).closed_balance == 500
    assert await get_balance(session_factory, "account-a") == 500
    assert await get_balance(session_factory, "account-b") == 500


@pytest.mark.asyncio
async def test_version_conflict_is_retried(session_factory, reconciliation_service, monkeypatch):
    await create_account(session_factory, "account-a", DEBIT, closed_balance=1000)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 500), ("account-b", CREDIT, 500))

    real_cas = AccountRepository.compare_and_swap_closed_balance
    conflicts = []

    async def conflict_once(self, account_id, new_balance, expected_version):
        if account_id == "account-a" and not conflicts:
            conflicts.append(expected_version)
            raise VersionConflictError(account_id, expected_version)
        return await real_cas(self, account_id, new_balance, expected_version)

    monkeypatch.setattr(AccountRepository, "compare_and_swap_closed_balance", conflict_once)

    result = await reconciliation_service.reconcile_all()

    summaries = {s.account_id: s for s in result.accounts}
    assert summaries["account-a"].retries == 1
    assert summaries["account-b"].retries == 0
    assert result.total_retries == 1
    assert result.total_accounts_reconciled == 2

    account = await get_account(session_factory, "account-a")
    assert account.closed_balance == 1500
    assert account.version == 1


@pytest.mark.asyncio
async def test_retry_rereads_account_after_concurrent_write(session_factory, reconciliation_service, monkeypatch):
    await create_account(session_factory, "account-a", DEBIT, closed_balance=1000)
    await create_account(session_factory, "account-b", CREDIT)
    await post_transaction(session_factory, "tx-1", ("account-a", DEBIT, 500), ("account-b", CREDIT, 500))

    real_cas = AccountRepository.compare_and_swap_closed_balance
    interfered = []

    async def interfering_writer(self, account_id, new_balance, expected_version):
        if account_id == "account-a" and not interfered:
            interfered.append(True)
            # Another writer moves the snapshot first
            async with session_factory() as other:
                await real_cas(AccountRepository(other), account_id, 2000, expected_version)
                await other.commit()
        return await real_cas(self, account_id, new_balance, expected_version)

    monkeypatch.setattr(AccountRepository, "compare_and_swap_closed_balance", interfering_writer)

    result = await reconciliation_service.reconcile_all()

    summary = next(s for s in result.accounts if s.account_id == "account-a")
    assert summary.retries == 1
    assert summary.previous_closed_balance == 2000
    assert summary.new_closed_balance == 2500
    assert summary.version == 2

    account = await get_account(session_factory, "account-a")
    assert (account.closed_balance, account.version) == (2500, 2)


@pytest.mark.asyncio
async def test_too_many_retries_is_isolated(session_factory, monkeypatch, caplog):
    service = ReconciliationService(
        session_factory, lock=ReconciliationLock(), max_retries=2, backoff_base_ms=1, backoff_max_ms=2
    )
    await create_account(session_factory, "contended", DEBIT)
    await create_account(session_factory, "calm", CREDIT)
    await post_transaction(session_factory, "tx-1", ("contended", DEBIT, 700), ("calm", CREDIT, 700))

    real_cas = AccountRepository.compare_and_swap_closed_balance
    attempts = []

    async def always_conflict(self, account_id, new_balance, expected_version):
        if account_id == "contended":
            attempts.append(expected_version)
            raise VersionConflictError(account_id, expected_version)
        return await real_cas(self, account_id, new_balance, expected_version)

    monkeypatch.setattr(AccountRepository, "compare_and_swap_closed_balance", always_conflict)

    with caplog.at_level(logging.ERROR, logger="ledger_core.services.reconciliation"):
        result = await service.reconcile_all()

    # One first attempt plus two retries
    assert len(attempts) == 3
    assert [s.account_id for s in result.accounts] == ["calm"]
    assert result.total_accounts_reconciled == 1
    assert result.total_transaction_groups_reconciled == 1
    assert "contended" in caplog.text

    contended = await get_account(session_factory, "contended")
    assert (contended.closed_balance, contended.version) == (0, 0)
    assert (await get_account(session_factory, "calm")).closed_balance == 700


@pytest.mark.asyncio
async def test_missing_account_does_not_abort_run(session_factory, reconciliation_service):
    await create_account(session_factory, "account-a", DEBIT)
    await insert_raw_postings(
        session_factory,
        raw_posting("orphan-1", "tx-orphan", "account-a", DEBIT, 1000),
        raw_posting("orphan-2", "tx-orphan", "non-existent-account", CREDIT, 1000),
    )

    result = await reconciliation_service.reconcile_all()

    assert result.total_transaction_groups_reconciled == 1
    assert [s.account_id for s in result.accounts] == ["account-a"]
    assert (await get_account(session_factory, "account-a")).closed_balance == 1000


def test_backoff_is_exponential_and_capped():
    service = ReconciliationService(None, backoff_base_ms=100, backoff_max_ms=1000)
    assert [service.backoff_delay(n) for n in range(1, 6)] == [0.1, 0.2, 0.4, 0.8, 1.0]
    assert service.backoff_delay(10) == 1.0
