"""
Pydantic schemas for API requests and responses

Field names travel as camelCase on the wire (accountId, pageSize, ...).
Money is a Decimal in and a decimal string out.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..accounts import Account
from ..notifications import Notification
from ..rbac import User
from ..transactions import ReconciliationReport, Transaction, TransactionPage


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# User schemas
class RegisterRequest(CamelModel):
    email: str
    password: str
    first_name: str
    last_name: str
    role: Optional[str] = Field(None, description="ADMIN, USER or MANAGER (default USER)")


class LoginRequest(CamelModel):
    email: str
    password: str


class UpdateUserRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None


class UserResponse(CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> 'UserResponse':
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            created_at=user.created_at,
        )


class AuthResponse(CamelModel):
    user: UserResponse
    token: str


# Account schemas
class CreateAccountRequest(CamelModel):
    account_number: Optional[str] = Field(None, description="10-20 characters; generated if omitted")
    owner_user_id: Optional[str] = Field(None, description="ADMIN only; defaults to the caller")


class AccountResponse(CamelModel):
    id: str
    account_number: str
    owner_user_id: str
    balance: Decimal
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            account_number=account.account_number,
            owner_user_id=account.owner_user_id,
            balance=account.balance,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class ReconciliationResponse(CamelModel):
    account_id: str
    balance: Decimal
    ledger_total: Decimal
    entry_count: int
    consistent: bool

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> 'ReconciliationResponse':
        return cls(
            account_id=report.account_id,
            balance=report.balance,
            ledger_total=report.ledger_total,
            entry_count=report.entry_count,
            consistent=report.consistent,
        )


# Transaction schemas
class CreateTransactionRequest(CamelModel):
    account_id: str
    amount: Decimal = Field(..., description="Positive amount, at most 2 decimal places")
    kind: str = Field(..., alias="type", description="DEPOSIT, WITHDRAWAL or TRANSFER")
    description: Optional[str] = None


class UpdateTransactionRequest(CamelModel):
    """Only description is editable; the other fields exist to be refused"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    description: Optional[str] = None
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Optional[Decimal] = None
    kind: Optional[str] = Field(None, alias="type")


class ReverseTransactionRequest(CamelModel):
    reason: Optional[str] = None


class TransactionResponse(CamelModel):
    id: str
    account_id: str
    user_id: str
    amount: Decimal
    kind: str = Field(..., alias="type")
    description: Optional[str] = None
    sequence: int
    reverses_id: Optional[str] = None
    reversed_by_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> 'TransactionResponse':
        return cls(
            id=transaction.id,
            account_id=transaction.account_id,
            user_id=transaction.user_id,
            amount=transaction.amount,
            kind=transaction.kind.value,
            description=transaction.description,
            sequence=transaction.sequence,
            reverses_id=transaction.reverses_id,
            reversed_by_id=transaction.reversed_by_id,
            created_at=transaction.created_at,
        )


class TransactionListResponse(CamelModel):
    transactions: List[TransactionResponse]
    total: int
    page: int
    page_size: int

    @classmethod
    def from_page(cls, page: TransactionPage) -> 'TransactionListResponse':
        return cls(
            transactions=[TransactionResponse.from_transaction(t) for t in page.items],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
        )


# Notification schemas
class CreateNotificationRequest(CamelModel):
    user_id: str
    subject: str
    body: str
    send_email: bool = True


class NotificationResponse(CamelModel):
    id: str
    user_id: str
    subject: str
    body: str
    read: bool
    status: str
    failed_reason: Optional[str] = None
    created_at: datetime
    read_at: Optional[datetime] = None

    @classmethod
    def from_notification(cls, notification: Notification) -> 'NotificationResponse':
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            subject=notification.subject,
            body=notification.body,
            read=notification.read,
            status=notification.status.value,
            failed_reason=notification.failed_reason,
            created_at=notification.created_at,
            read_at=notification.read_at,
        )
