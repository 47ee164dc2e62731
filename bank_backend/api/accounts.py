"""
Account endpoints
"""

from typing import List

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_identity
from .schemas import AccountResponse, CreateAccountRequest, ReconciliationResponse
from ..rbac import Identity


router = APIRouter()


@router.post("", response_model=AccountResponse, status_code=201)
def create_account(
    request: CreateAccountRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Open an account with a zero balance"""
    account = system.account_manager.open_account(
        identity,
        account_number=request.account_number,
        owner_user_id=request.owner_user_id,
    )
    return AccountResponse.from_account(account)


@router.get("", response_model=List[AccountResponse])
def list_accounts(
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Caller's accounts (every account for an ADMIN)"""
    return [AccountResponse.from_account(a) for a in system.account_manager.list_accounts(identity)]


@router.get("/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    return AccountResponse.from_account(system.account_manager.get_account_for(account_id, identity))


@router.get("/{account_id}/reconciliation", response_model=ReconciliationResponse)
def reconcile_account(
    account_id: str,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """Compare the stored balance with the account's ledger"""
    report = system.transaction_processor.reconcile(account_id, identity)
    return ReconciliationResponse.from_report(report)
