
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, model_validator

from ledger_core.models import Direction

# Account Schemas
class AccountCreate(BaseModel):
    """
    Schema for creating a new account. The id is generated when omitted.
    """
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = None
    direction: Direction
    closed_balance: int = 0

class AccountResponse(BaseModel):
    """
    Account information with the balance computed from the snapshot
    and the unreconciled postings.
    """
    id: str
    name: Optional[str]
    direction: Direction
    balance: int

    class Config:
        from_attributes = True

# Posting Schemas
class PostingCreate(BaseModel):
    """
    One leg of a new transaction. Amount is in cents.
    """
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    account_id: str
    amount: int = Field(..., gt=0)
    direction: Direction

class PostingResponse(BaseModel):
    id: str
    account_id: str
    amount: int
    direction: Direction

    class Config:
        from_attributes = True

class PostingDetailResponse(PostingResponse):
    """
    Posting as stored in the ledger, including its group and reconciliation state.
    """
    transaction_id: str
    transaction_name: Optional[str]
    created_at: datetime
    reconciled_at: Optional[datetime]

# Transaction Schemas
class TransactionCreate(BaseModel):
    """
    A balanced set of postings. The sum of debit amounts must equal the
    sum of credit amounts.
    """
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Optional[str] = None
    entries: List[PostingCreate] = Field(..., min_length=2)

    @model_validator(mode="after")
    def check_unique_entry_ids(self):
        seen = set()
        for entry in self.entries:
            if entry.id is None:
                continue
            if entry.id in seen:
                raise ValueError(f"Posting id {entry.id} appears more than once")
            seen.add(entry.id)
        return self

class TransactionResponse(BaseModel):
    id: str
    name: Optional[str]
    entries: List[PostingResponse] = []

# Reconciliation Schemas
class AccountReconciliationSummary(BaseModel):
    account_id: str
    previous_closed_balance: int
    new_closed_balance: int
    transactions_included: int
    version: int
    retries: int

class ReconciliationResult(BaseModel):
    """
    Outcome of one system-wide reconciliation run. Accounts whose snapshot
    update failed are not listed.
    """
    reconciled_at: datetime
    total_accounts_reconciled: int
    total_transaction_groups_reconciled: int
    integrity_check_passed: bool
    total_retries: int
    accounts: List[AccountReconciliationSummary] = []
