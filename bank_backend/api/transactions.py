"""
Transaction endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, get_banking_system, get_current_identity
from .schemas import (
    CreateTransactionRequest, ReverseTransactionRequest, TransactionListResponse,
    TransactionResponse, UpdateTransactionRequest
)
from ..rbac import Identity


router = APIRouter()


@router.post("", response_model=TransactionResponse, status_code=201)
def create_transaction(
    request: CreateTransactionRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Apply a deposit, withdrawal or transfer"""
    transaction = system.transaction_processor.apply_transaction(
        account_id=request.account_id,
        actor=identity,
        kind=request.kind,
        amount=request.amount,
        description=request.description,
    )
    return TransactionResponse.from_transaction(transaction)


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    page: int = Query(1),
    page_size: Optional[int] = Query(None, alias="pageSize"),
    account_id: Optional[str] = Query(None, alias="accountId"),
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Newest-first page of the caller's transactions"""
    result = system.transaction_processor.list_transactions(
        identity,
        page=page,
        page_size=page_size if page_size is not None else system.config.default_page_size,
        account_id=account_id,
    )
    return TransactionListResponse.from_page(result)


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    transaction = system.transaction_processor.get_transaction(transaction_id, identity)
    return TransactionResponse.from_transaction(transaction)


@router.put("/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    request: UpdateTransactionRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Edit the description; financial fields are refused"""
    changes = {name: getattr(request, name) for name in request.model_fields_set}
    transaction = system.transaction_processor.update_transaction(
        transaction_id, identity, **changes
    )
    return TransactionResponse.from_transaction(transaction)


@router.post("/{transaction_id}/reverse", response_model=TransactionResponse, status_code=201)
def reverse_transaction(
    transaction_id: str,
    request: ReverseTransactionRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Post the compensating entry for a transaction"""
    reversal = system.transaction_processor.reverse_transaction(
        transaction_id, identity, reason=request.reason
    )
    return TransactionResponse.from_transaction(reversal)
