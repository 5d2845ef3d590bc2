
from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.db.session import get_db, get_session_factory
from ledger_core.schemas import (
    AccountCreate,
    AccountResponse,
    PostingDetailResponse,
    PostingResponse,
    ReconciliationResult,
    TransactionCreate,
    TransactionResponse,
)
from ledger_core.services.ledger import LedgerService
from ledger_core.services.reconciliation import ReconciliationService

router = APIRouter()

@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(account: AccountCreate, db: AsyncSession = Depends(get_db)):
    service = LedgerService(db)
    new_account = await service.create_account(account)
    # No postings yet, balance is the opening snapshot
    return AccountResponse(
        id=new_account.id,
        name=new_account.name,
        direction=new_account.direction,
        balance=new_account.closed_balance
    )

@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, db: AsyncSession = Depends(get_db)):
    service = LedgerService(db)
    account = await service.get_account(account_id)

    balance = await service.get_account_balance(account_id)

    return AccountResponse(
        id=account.id,
        name=account.name,
        direction=account.direction,
        balance=balance
    )

@router.get("/accounts/{account_id}/postings", response_model=List[PostingDetailResponse])
async def get_account_postings(account_id: str, db: AsyncSession = Depends(get_db)):
    service = LedgerService(db)
    return await service.get_postings(account_id)

@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(transaction: TransactionCreate, db: AsyncSession = Depends(get_db)):
    service = LedgerService(db)
    postings = await service.create_transaction(transaction)
    return TransactionResponse(
        id=postings[0].transaction_id,
        name=postings[0].transaction_name,
        entries=[PostingResponse.model_validate(posting) for posting in postings]
    )

@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(transaction_id: str, db: AsyncSession = Depends(get_db)):
    service = LedgerService(db)
    postings = await service.get_transaction(transaction_id)
    return TransactionResponse(
        id=transaction_id,
        name=postings[0].transaction_name,
        entries=[PostingResponse.model_validate(posting) for posting in postings]
    )

@router.post("/transactions/reconciliation", response_model=ReconciliationResult)
async def reconcile_all(session_factory: async_sessionmaker = Depends(get_session_factory)):
    service = ReconciliationService(session_factory)
    return await service.reconcile_all()
