from typing import Optional

from fastapi import HTTPException

class LedgerError(HTTPException):
    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

class AccountNotFoundError(LedgerError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(status_code=404, detail=f"Account with ID {account_id} not found")

class DuplicateAccountError(LedgerError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(status_code=409, detail=f"Account with ID {account_id} already exists")

class TransactionNotFoundError(LedgerError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(status_code=404, detail=f"Transaction with ID {transaction_id} not found")

class DuplicateTransactionError(LedgerError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(status_code=409, detail=f"Transaction with ID {transaction_id} already exists")

class DuplicatePostingError(LedgerError):
    def __init__(self, posting_id: str):
        self.posting_id = posting_id
        super().__init__(status_code=409, detail=f"Posting with ID {posting_id} already exists")

class UnbalancedTransactionError(LedgerError):
    def __init__(self, debits: int, credits: int, transaction_id: Optional[str] = None):
        self.transaction_id = transaction_id
        self.debits = debits
        self.credits = credits
        context = (
            f"Transaction {transaction_id} is not balanced."
            if transaction_id else "Transaction is not balanced."
        )
        super().__init__(status_code=400, detail=f"{context} Debits: {debits}, Credits: {credits}")

class IntegrityViolationError(LedgerError):
    def __init__(self, transaction_id: str, debits: int, credits: int):
        self.transaction_id = transaction_id
        self.debits = debits
        self.credits = credits
        super().__init__(
            status_code=400,
            detail=(
                f"Transaction integrity check failed: Transaction {transaction_id} "
                f"is not balanced. Debits: {debits}, Credits: {credits}"
            ),
        )

class VersionConflictError(LedgerError):
    def __init__(self, account_id: str, expected_version: int):
        self.account_id = account_id
        self.expected_version = expected_version
        super().__init__(
            status_code=409,
            detail=(
                f"Account {account_id} was modified by another operation. "
                f"Expected version {expected_version}. Retry the operation."
            ),
        )

class TooManyRetriesError(LedgerError):
    def __init__(self, account_id: str, retries: int):
        self.account_id = account_id
        self.retries = retries
        super().__init__(
            status_code=409,
            detail=f"Too many concurrent updates for account {account_id} after {retries} retries",
        )

class ReconciliationInProgressError(LedgerError):
    def __init__(self):
        super().__init__(status_code=409, detail="Reconciliation already in progress")
