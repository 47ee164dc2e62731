"""
Account Management Module

Opens and looks up customer accounts. Balances are held as exact Decimal
values and only ever change through the transaction engine.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Identity, UserManager, authorize
from .storage import StorageInterface, StorageRecord


logger = get_logger("bank.accounts")

ACCOUNT_NUMBER_MIN_LENGTH = 10
ACCOUNT_NUMBER_MAX_LENGTH = 20


@dataclass
class Account(StorageRecord):
    """Customer account"""
    owner_user_id: str
    account_number: str
    balance: Decimal = Decimal("0.00")

    def __post_init__(self):
        if self.balance < 0:
            raise ValidationError("Account balance cannot be negative")


class AccountManager:
    """
    Manages account lifecycle and scoped lookups
    """

    def __init__(self, storage: StorageInterface, user_manager: UserManager):
        self.storage = storage
        self.user_manager = user_manager
        self.accounts_table = "accounts"

    def open_account(self, actor: Identity, account_number: Optional[str] = None,
                     owner_user_id: Optional[str] = None) -> Account:
        """
        Open a new account with a zero balance

        Args:
            actor: Caller opening the account
            account_number: Requested number (generated if not provided)
            owner_user_id: Owner of the account; defaults to the caller,
                only an ADMIN may open on behalf of someone else

        Returns:
            Created Account object
        """
        owner_user_id = owner_user_id or actor.user_id
        authorize(actor, owner_user_id, resource="accounts")
        self.user_manager.require_user(owner_user_id)

        if account_number is None:
            account_number = self._generate_account_number()
        account_number = self._validate_account_number(account_number)

        with self.storage.lock_record("account_numbers", account_number):
            if self.get_account_by_number(account_number):
                raise ConflictError(
                    "Account number already in use", {"account_number": account_number}
                )

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_user_id=owner_user_id,
                account_number=account_number,
            )
            self.save_account(account)

        log_action(
            logger, "info", "Account opened",
            user_id=actor.user_id, action="open_account", resource=f"account:{account.id}",
            extra={"account_number": account_number, "owner_user_id": owner_user_id}
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found", {"account_id": account_id})
        return account

    def get_account_for(self, account_id: str, actor: Identity) -> Account:
        """Account visible to the caller (owner or ADMIN)"""
        account = self.require_account(account_id)
        authorize(actor, account.owner_user_id, resource=f"account:{account_id}")
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def list_accounts(self, actor: Identity) -> List[Account]:
        """Caller's own accounts; an ADMIN sees every account"""
        if actor.is_admin:
            accounts_data = self.storage.load_all(self.accounts_table)
        else:
            accounts_data = self.storage.find(self.accounts_table, {"owner_user_id": actor.user_id})
        return [self._account_from_dict(data) for data in accounts_data]

    def save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _validate_account_number(self, account_number: str) -> str:
        account_number = str(account_number).strip()
        if not ACCOUNT_NUMBER_MIN_LENGTH <= len(account_number) <= ACCOUNT_NUMBER_MAX_LENGTH:
            raise ValidationError(
                f"Account number must be {ACCOUNT_NUMBER_MIN_LENGTH}-"
                f"{ACCOUNT_NUMBER_MAX_LENGTH} characters",
                {"field": "account_number"},
            )
        return account_number

    def _generate_account_number(self) -> str:
        """Generate an account number: ACC + epoch seconds + 3 random digits"""
        timestamp = int(datetime.now(timezone.utc).timestamp())
        return f"ACC{timestamp}{secrets.randbelow(1000):03d}"

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = str(account.balance)
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_user_id=data['owner_user_id'],
            account_number=data['account_number'],
            balance=Decimal(data['balance']),
        )
