"""
Transaction Processing Module

Applies deposits, withdrawals and transfers to accounts. Each operation
updates the account balance and appends the matching ledger entry in one
unit of work under the account's record lock, so concurrent requests on the
same account never lose an update and a failed operation leaves no trace.

The ledger is append-only: a posted entry can only have its description
edited. Mistakes are corrected with compensating reversal entries.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .accounts import Account, AccountManager
from .errors import ConflictError, InsufficientFundsError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher
from .rbac import Identity, UserManager, authorize
from .storage import StorageInterface, StorageRecord


CENTS = Decimal("0.01")

# Largest amount and balance; well inside the 28-digit default decimal
# precision so sums of cents stay exact
MAX_AMOUNT = Decimal("999999999999.99")
MAX_BALANCE = Decimal("9999999999999999.99")

# Fields fixed once an entry is posted
IMMUTABLE_FIELDS = frozenset({"account_id", "user_id", "amount", "kind"})


class TransactionKind(Enum):
    """Types of ledger entries"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"  # Outbound transfer; debits the account like a withdrawal

    @classmethod
    def parse(cls, value: Any) -> 'TransactionKind':
        if isinstance(value, TransactionKind):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid transaction type: {value}",
                {"field": "type", "allowed": [k.value for k in cls]},
            )

    @property
    def is_debit(self) -> bool:
        return self is not TransactionKind.DEPOSIT

    @property
    def compensating(self) -> 'TransactionKind':
        """Kind of the entry that undoes this one"""
        return TransactionKind.WITHDRAWAL if self is TransactionKind.DEPOSIT else TransactionKind.DEPOSIT


def parse_amount(value: Any) -> Decimal:
    """
    Parse a monetary amount: finite, strictly positive, at most MAX_AMOUNT,
    at most 2 decimal places.

    Raises:
        ValidationError: for anything else
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount is required", {"field": "amount"})
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value}", {"field": "amount"})

    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number", {"field": "amount"})
    if amount <= 0:
        raise ValidationError("Amount must be positive", {"field": "amount"})
    if amount > MAX_AMOUNT:
        raise ValidationError(f"Amount cannot exceed {MAX_AMOUNT}", {"field": "amount"})
    cents = amount.quantize(CENTS, rounding=ROUND_DOWN)
    if amount != cents:
        raise ValidationError("Amount cannot have more than 2 decimal places", {"field": "amount"})
    return cents


@dataclass
class Transaction(StorageRecord):
    """
    Ledger entry recording one balance change
    """
    account_id: str
    user_id: str                        # Who requested it
    amount: Decimal
    kind: TransactionKind
    description: Optional[str] = None
    sequence: int = 0                   # Position in the account's ledger, 1-based
    reverses_id: Optional[str] = None   # Set on compensating entries
    reversed_by_id: Optional[str] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValidationError("Transaction amount must be positive")

    @property
    def is_reversal(self) -> bool:
        return self.reverses_id is not None

    @property
    def is_reversible(self) -> bool:
        return not self.is_reversal and self.reversed_by_id is None

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.kind.is_debit else self.amount


@dataclass
class TransactionPage:
    """One page of a newest-first transaction listing"""
    items: List[Transaction]
    total: int
    page: int
    page_size: int


@dataclass
class ReconciliationReport:
    """Stored balance compared with the sum of the account's ledger"""
    account_id: str
    balance: Decimal
    ledger_total: Decimal
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


class TransactionProcessor:
    """
    Applies financial operations to accounts atomically and serves the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        user_manager: UserManager,
        dispatcher: Optional[NotificationDispatcher] = None,
        lock_timeout: Optional[float] = 10.0,
        max_page_size: int = 100
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.user_manager = user_manager
        self.dispatcher = dispatcher
        self.lock_timeout = lock_timeout
        self.max_page_size = max_page_size
        self.table_name = "transactions"
        self.logger = get_logger("bank.transactions")

    def apply_transaction(
        self,
        account_id: str,
        actor: Identity,
        kind: Any,
        amount: Any,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Apply one deposit, withdrawal or transfer to an account

        Args:
            account_id: Account to mutate
            actor: Authenticated caller; must own the account or be ADMIN
            kind: TransactionKind or its name (case-insensitive)
            amount: Positive amount with at most 2 decimal places
            description: Optional free text

        Returns:
            The posted Transaction

        Raises:
            ValidationError, NotFoundError, AuthorizationError,
            InsufficientFundsError, ConflictError (lock timeout)
        """
        kind = TransactionKind.parse(kind)
        amount = parse_amount(amount)

        account = self.account_manager.require_account(account_id)
        authorize(actor, account.owner_user_id, resource=f"account:{account_id}")

        transaction, account = self._post(account_id, actor, kind, amount, description)
        self._notify_owner(account, transaction)
        return transaction

    def reverse_transaction(self, transaction_id: str, actor: Identity,
                            reason: Optional[str] = None) -> Transaction:
        """
        Append a compensating entry that undoes a posted transaction

        A transaction can be reversed once; reversals cannot be reversed.
        Reversing a deposit fails with InsufficientFundsError if the money
        has already left the account.
        """
        original = self.get_transaction(transaction_id, actor)
        if not original.is_reversible:
            message = (
                "A reversal cannot be reversed" if original.is_reversal
                else "Transaction already reversed"
            )
            raise ConflictError(
                message,
                {"transaction_id": transaction_id, "reversed_by_id": original.reversed_by_id},
            )

        description = f"REVERSAL: {reason}" if reason else f"REVERSAL of {transaction_id}"
        reversal, account = self._post(
            original.account_id, actor, original.kind.compensating, original.amount,
            description, reverses_id=transaction_id,
        )

        log_action(
            self.logger, "info", "Transaction reversed",
            user_id=actor.user_id, action="reverse_transaction",
            resource=f"transaction:{transaction_id}",
            extra={"reversal_id": reversal.id, "reason": reason}
        )
        self._notify_owner(account, reversal)
        return reversal

    def _post(self, account_id: str, actor: Identity, kind: TransactionKind, amount: Decimal,
              description: Optional[str], reverses_id: Optional[str] = None):
        """Read-compute-write of one ledger entry; returns (transaction, account)"""
        with self.storage.lock_record("accounts", account_id, timeout=self.lock_timeout):
            with self.storage.atomic():
                # Re-read under the lock; the caller's copy may be stale
                account = self.account_manager.require_account(account_id)

                original = None
                if reverses_id:
                    original = self._require_transaction(reverses_id)
                    if not original.is_reversible:
                        raise ConflictError("Transaction already reversed",
                                            {"transaction_id": reverses_id})

                if kind.is_debit and amount > account.balance:
                    log_action(
                        self.logger, "warning", "Transaction rejected: insufficient funds",
                        user_id=actor.user_id, action="transaction_rejected",
                        resource=f"account:{account_id}",
                        extra={"kind": kind.value, "amount": str(amount),
                               "balance": str(account.balance)}
                    )
                    raise InsufficientFundsError(account_id, account.balance, amount)

                if not kind.is_debit and account.balance + amount > MAX_BALANCE:
                    raise ValidationError(
                        f"Balance cannot exceed {MAX_BALANCE}",
                        {"field": "amount", "account_id": account_id},
                    )

                now = datetime.now(timezone.utc)
                transaction = Transaction(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_id=account_id,
                    user_id=actor.user_id,
                    amount=amount,
                    kind=kind,
                    description=description,
                    sequence=self.storage.count(self.table_name, {"account_id": account_id}) + 1,
                    reverses_id=reverses_id,
                )
                self._save_transaction(transaction)

                account.balance = account.balance + transaction.signed_amount
                account.updated_at = now
                self.account_manager.save_account(account)

                if original is not None:
                    original.reversed_by_id = transaction.id
                    original.updated_at = now
                    self._save_transaction(original)

        log_action(
            self.logger, "info", "Transaction applied",
            user_id=actor.user_id, action="apply_transaction",
            resource=f"transaction:{transaction.id}",
            extra={"account_id": account_id, "kind": kind.value, "amount": str(amount),
                   "balance": str(account.balance)}
        )
        return transaction, account

    def _notify_owner(self, account: Account, transaction: Transaction) -> None:
        """Best-effort email to the account owner; runs after commit"""
        if not self.dispatcher:
            return
        try:
            owner = self.user_manager.get_user(account.owner_user_id)
        except Exception as e:
            self.logger.error(f"Could not load owner of account {account.id} for notification: {e}")
            return
        if not owner:
            return
        self.dispatcher.dispatch(
            owner.id, owner.email,
            f"New {transaction.kind.value} Transaction",
            f"A {transaction.kind.value} transaction of ${transaction.amount} "
            f"was made on your account {account.account_number}.",
        )

    # Lookups

    def get_transaction(self, transaction_id: str, actor: Identity) -> Transaction:
        """Get a transaction visible to the caller (account owner or ADMIN)"""
        transaction = self._require_transaction(transaction_id)
        account = self.account_manager.require_account(transaction.account_id)
        authorize(actor, account.owner_user_id, resource=f"transaction:{transaction_id}")
        return transaction

    def list_transactions(
        self,
        actor: Identity,
        page: int = 1,
        page_size: int = 10,
        account_id: Optional[str] = None
    ) -> TransactionPage:
        """
        Newest-first page of transactions

        Non-admin callers see the entries they requested; an ADMIN sees all.
        With account_id, every entry on that account (owner or ADMIN only).
        Pages past the end are empty but still carry the total.
        """
        if page < 1:
            raise ValidationError("page must be >= 1", {"field": "page"})
        if page_size < 1 or page_size > self.max_page_size:
            raise ValidationError(
                f"pageSize must be between 1 and {self.max_page_size}", {"field": "pageSize"}
            )

        filters: Dict[str, Any] = {}
        if account_id:
            self.account_manager.get_account_for(account_id, actor)
            filters["account_id"] = account_id
        elif not actor.is_admin:
            filters["user_id"] = actor.user_id

        records, total = self.storage.find_page(
            self.table_name, filters, offset=(page - 1) * page_size, limit=page_size
        )
        return TransactionPage(
            items=[self._transaction_from_dict(data) for data in records],
            total=total,
            page=page,
            page_size=page_size,
        )

    def get_account_transactions(self, account_id: str) -> List[Transaction]:
        """Full ledger of an account in posting order"""
        records = self.storage.find(self.table_name, {"account_id": account_id})
        return [self._transaction_from_dict(data) for data in records]

    # Edits

    def update_transaction(self, transaction_id: str, actor: Identity, **changes) -> Transaction:
        """
        Edit a posted transaction. Only the description may change; attempts
        to change financial fields are rejected.
        """
        blocked = sorted(set(changes) & IMMUTABLE_FIELDS)
        if blocked:
            raise ValidationError(
                "Financial fields are immutable; post a reversal instead",
                {"fields": blocked},
            )
        unknown = sorted(set(changes) - {"description"})
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}", {"fields": unknown})
        return self.update_description(transaction_id, actor, changes.get("description"))

    def update_description(self, transaction_id: str, actor: Identity,
                           description: Optional[str]) -> Transaction:
        """Replace the free-text description of a transaction"""
        transaction = self.get_transaction(transaction_id, actor)

        # Same lock as postings so a concurrent reversal link is not overwritten
        with self.storage.lock_record("accounts", transaction.account_id, timeout=self.lock_timeout):
            with self.storage.atomic():
                transaction = self._require_transaction(transaction_id)
                transaction.description = description
                transaction.updated_at = datetime.now(timezone.utc)
                self._save_transaction(transaction)

        log_action(
            self.logger, "info", "Transaction description updated",
            user_id=actor.user_id, action="update_transaction",
            resource=f"transaction:{transaction_id}"
        )
        return transaction

    # Reconciliation

    def reconcile(self, account_id: str, actor: Optional[Identity] = None) -> ReconciliationReport:
        """
        Compare the stored balance with the net of the account's ledger
        applied in posting order from zero.
        """
        if actor is not None:
            self.account_manager.get_account_for(account_id, actor)

        with self.storage.lock_record("accounts", account_id, timeout=self.lock_timeout):
            account = self.account_manager.require_account(account_id)
            entries = self.get_account_transactions(account_id)

        ledger_total = Decimal("0.00")
        for entry in entries:
            ledger_total += entry.signed_amount

        report = ReconciliationReport(
            account_id=account_id,
            balance=account.balance,
            ledger_total=ledger_total,
            entry_count=len(entries),
        )
        if not report.consistent:
            log_action(
                self.logger, "error", "Account out of balance with its ledger",
                action="reconcile", resource=f"account:{account_id}",
                extra={"balance": str(report.balance), "ledger_total": str(ledger_total)}
            )
        return report

    # Serialization

    def _require_transaction(self, transaction_id: str) -> Transaction:
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if not transaction_dict:
            raise NotFoundError("Transaction not found", {"transaction_id": transaction_id})
        return self._transaction_from_dict(transaction_dict)

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        transaction_dict = self._transaction_to_dict(transaction)
        self.storage.save(self.table_name, transaction.id, transaction_dict)

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['amount'] = str(transaction.amount)
        result['kind'] = transaction.kind.value
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            user_id=data['user_id'],
            amount=Decimal(data['amount']),
            kind=TransactionKind(data['kind']),
            description=data.get('description'),
            sequence=data.get('sequence', 0),
            reverses_id=data.get('reverses_id'),
            reversed_by_id=data.get('reversed_by_id'),
        )
