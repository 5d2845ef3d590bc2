"""
Balance arithmetic for the ledger.

An account's current balance is event-sourced:

    balance = closed_balance + contribution of every unreconciled posting

so it is always derived from immutable postings and never mutated in place.
All amounts are integer cents.
"""
import logging
from typing import Iterable, NamedTuple, Optional, Protocol

from ledger_core.exceptions import UnbalancedTransactionError
from ledger_core.models import Account, Direction
from ledger_core.repositories import PostingRepository

logger = logging.getLogger(__name__)


class PostingLike(Protocol):
    direction: Direction
    amount: int


class BalanceTotals(NamedTuple):
    debits: int
    credits: int


def apply_posting(balance: int, account_direction: Direction, posting_direction: Direction, amount: int) -> int:
    """
    Same direction as the account increases the balance, the opposite direction decreases it.
    """
    if account_direction == posting_direction:
        return balance + amount
    return balance - amount


def fold_postings(balance: int, account_direction: Direction, postings: Iterable[PostingLike]) -> int:
    for posting in postings:
        balance = apply_posting(balance, account_direction, posting.direction, posting.amount)
    return balance


def check_balance(postings: Iterable[PostingLike], transaction_id: Optional[str] = None) -> BalanceTotals:
    """
    Sums a transaction group by direction.
    Raises UnbalancedTransactionError unless total debits equal total credits.
    """
    debits = 0
    credits = 0
    for posting in postings:
        if posting.direction == Direction.DEBIT:
            debits += posting.amount
        else:
            credits += posting.amount

    if debits != credits:
        raise UnbalancedTransactionError(debits, credits, transaction_id)
    return BalanceTotals(debits, credits)


async def compute_balance(postings: PostingRepository, account: Account) -> int:
    """
    Current balance of an already loaded account. Read-only; the result may be negative.
    """
    unreconciled = await postings.find_unreconciled_by_account_id(account.id)
    balance = fold_postings(account.closed_balance, account.direction, unreconciled)
    logger.debug(
        f"Computed balance for {account.id}: {balance} "
        f"({len(unreconciled)} unreconciled postings)"
    )
    return balance
