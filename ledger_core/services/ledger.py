from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

# Setup Logger
logger = logging.getLogger(__name__)

from ledger_core.exceptions import (
    DuplicateAccountError,
    DuplicatePostingError,
    DuplicateTransactionError,
    LedgerError,
    TransactionNotFoundError,
)
from ledger_core.models import Account, Posting, TransactionGroup, generate_id
from ledger_core.repositories import AccountRepository, PostingRepository
from ledger_core.schemas import AccountCreate, TransactionCreate
from ledger_core.services.balance import check_balance, compute_balance

class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.accounts = AccountRepository(db)
        self.postings = PostingRepository(db)

    async def create_account(self, account_in: AccountCreate) -> Account:
        """
        Creates a new ledger account with an optional opening snapshot balance.
        """
        if account_in.id and await self.accounts.get(account_in.id) is not None:
            raise DuplicateAccountError(account_in.id)

        account = Account(
            id=account_in.id or generate_id(),
            name=account_in.name,
            direction=account_in.direction,
            closed_balance=account_in.closed_balance,
            version=0,
        )
        try:
            await self.accounts.put(account)
            await self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent create of the same id
            await self.db.rollback()
            logger.warning(f"Rejected duplicate account id: {account.id}")
            raise DuplicateAccountError(account.id) from exc
        except Exception:
            await self.db.rollback()
            raise
        logger.info(f"Created account: {account.name} (ID: {account.id}, direction: {account.direction.value})")
        return account

    async def get_account(self, account_id: str) -> Account:
        """
        Retrieves an account by id.
        Raises AccountNotFoundError if the account does not exist.
        """
        return await self.accounts.get_or_fail(account_id)

    async def get_account_balance(self, account_id: str) -> int:
        """
        Current balance: the closed_balance snapshot plus every unreconciled posting.
        """
        account = await self.accounts.get_or_fail(account_id)
        return await compute_balance(self.postings, account)

    async def create_transaction(self, transaction_in: TransactionCreate) -> List[Posting]:
        """
        Records a balanced transaction as one posting per entry.

        Everything is validated before anything is written. The postings are then
        written in one database transaction: either the whole group is visible or,
        on any failure, every posting already written is rolled back.
        """
        # 1. Validation - fail fast
        check_balance(transaction_in.entries, transaction_in.id)
        for entry in transaction_in.entries:
            await self.accounts.get_or_fail(entry.account_id)

        transaction_id = transaction_in.id or generate_id()
        existing = await self.postings.find_by_transaction_id(transaction_id)
        if existing or await self.postings.get_group(transaction_id) is not None:
            logger.warning(f"Rejected duplicate transaction id: {transaction_id}")
            raise DuplicateTransactionError(transaction_id)

        # 2. Build - shared group fields
        created_at = datetime.now(timezone.utc)
        postings = [
            Posting(
                id=entry.id or generate_id(),
                transaction_id=transaction_id,
                transaction_name=transaction_in.name,
                account_id=entry.account_id,
                direction=entry.direction,
                amount=entry.amount,
                created_at=created_at,
                reconciled_at=None,
            )
            for entry in transaction_in.entries
        ]

        # 3. Commit - all or nothing
        posting_ids = [posting.id for posting in postings]
        try:
            # The group row's primary key rejects a concurrent writer of the same id
            await self.postings.put_group(
                TransactionGroup(id=transaction_id, name=transaction_in.name, created_at=created_at)
            )
            for posting in postings:
                await self.postings.put(posting)
            await self.db.commit()
        except IntegrityError as exc:
            logger.warning(f"Transaction {transaction_id} conflicts with stored rows. Rolling back")
            await self.db.rollback()
            duplicate = await self._find_duplicate(transaction_id, posting_ids)
            if duplicate is None:
                raise
            raise duplicate from exc
        except Exception:
            logger.error(f"Transaction creation failed. Rolling back transaction {transaction_id}", exc_info=True)
            await self.db.rollback()
            raise

        logger.info(f"Created transaction {transaction_id} with {len(postings)} postings")
        return postings

    async def _find_duplicate(self, transaction_id: str, posting_ids: List[str]) -> Optional[LedgerError]:
        """
        Names the stored row that made the insert fail, looked up after the rollback.
        """
        if (await self.postings.get_group(transaction_id) is not None
                or await self.postings.find_by_transaction_id(transaction_id)):
            return DuplicateTransactionError(transaction_id)
        for posting_id in posting_ids:
            if await self.postings.get(posting_id) is not None:
                return DuplicatePostingError(posting_id)
        return None

    async def get_transaction(self, transaction_id: str) -> List[Posting]:
        """
        Returns the postings of a transaction group.
        """
        postings = await self.postings.find_by_transaction_id(transaction_id)
        if not postings:
            logger.warning(f"Transaction lookup failed: {transaction_id}")
            raise TransactionNotFoundError(transaction_id)
        return postings

    async def get_postings(self, account_id: str) -> List[Posting]:
        """
        Returns all postings of an account, oldest first.
        """
        await self.accounts.get_or_fail(account_id)
        postings = await self.postings.find_by_account_id(account_id)
        logger.debug(f"Retrieved {len(postings)} postings for {account_id}")
        return postings
