"""
Persistence primitives for accounts and postings.

Repositories run their statements in the caller's session and never commit:
the service that owns the session decides where the unit of work ends.
"""
import logging
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import Row, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.exceptions import AccountNotFoundError, VersionConflictError
from ledger_core.models import Account, Posting, TransactionGroup

logger = logging.getLogger(__name__)


class AccountRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, account_id: str) -> Optional[Account]:
        # Always reload: the optimistic update must see the stored version
        query = (
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_or_fail(self, account_id: str) -> Account:
        account = await self.get(account_id)
        if account is None:
            logger.warning(f"Account lookup failed: {account_id}")
            raise AccountNotFoundError(account_id)
        return account

    async def put(self, account: Account) -> Account:
        self.db.add(account)
        await self.db.flush()
        return account

    async def compare_and_swap_closed_balance(
        self, account_id: str, new_balance: int, expected_version: int
    ) -> int:
        """
        Sets closed_balance and bumps version by one, only if the stored version
        still equals expected_version. Returns the new version.

        Raises VersionConflictError when another writer got there first and
        AccountNotFoundError when the row does not exist.
        """
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.version == expected_version)
            .values(closed_balance=new_balance, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            if await self.get(account_id) is None:
                raise AccountNotFoundError(account_id)
            raise VersionConflictError(account_id, expected_version)
        return expected_version + 1


class PostingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def put(self, posting: Posting) -> Posting:
        self.db.add(posting)
        await self.db.flush()
        return posting

    async def get(self, posting_id: str) -> Optional[Posting]:
        result = await self.db.execute(select(Posting).where(Posting.id == posting_id))
        return result.scalar_one_or_none()

    async def put_group(self, group: TransactionGroup) -> TransactionGroup:
        """
        Claims the transaction id. Flushing raises IntegrityError if it is already taken.
        """
        self.db.add(group)
        await self.db.flush()
        return group

    async def get_group(self, transaction_id: str) -> Optional[TransactionGroup]:
        result = await self.db.execute(
            select(TransactionGroup).where(TransactionGroup.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def find_by_transaction_id(self, transaction_id: str) -> List[Posting]:
        query = select(Posting).where(Posting.transaction_id == transaction_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def find_by_account_id(self, account_id: str) -> List[Posting]:
        query = (
            select(Posting)
            .where(Posting.account_id == account_id)
            .order_by(Posting.created_at, Posting.id)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def find_unreconciled_by_account_id(self, account_id: str) -> List[Posting]:
        # Served by ix_postings_account_reconciled; runs on every balance read
        query = select(Posting).where(
            Posting.account_id == account_id,
            Posting.reconciled_at.is_(None),
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def all_transaction_ids(self) -> Set[str]:
        result = await self.db.execute(select(Posting.transaction_id).distinct())
        return set(result.scalars().all())

    async def unreconciled_transaction_ids(self) -> Set[str]:
        query = (
            select(Posting.transaction_id)
            .where(Posting.reconciled_at.is_(None))
            .distinct()
        )
        result = await self.db.execute(query)
        return set(result.scalars().all())

    async def account_ids(self) -> Set[str]:
        result = await self.db.execute(select(Posting.account_id).distinct())
        return set(result.scalars().all())

    async def mark_group_reconciled(self, transaction_id: str, reconciled_at: datetime) -> List[Row]:
        """
        Stamps every open posting of the group in a single statement and returns
        (account_id, direction, amount) for the rows this statement stamped.

        Postings that already carry a timestamp keep it and are not returned, so a
        run that overlaps another one never sees rows the other run stamped.
        """
        stmt = (
            update(Posting)
            .where(
                Posting.transaction_id == transaction_id,
                Posting.reconciled_at.is_(None),
            )
            .values(reconciled_at=reconciled_at)
            .returning(Posting.account_id, Posting.direction, Posting.amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return list(result.all())
