"""
Error Taxonomy Module

Exceptions raised by the banking core. Each class maps to exactly one
outcome at the API boundary, so callers can tell the kinds apart.
"""

from typing import Optional


class BankingError(Exception):
    """Base class for all banking errors"""

    kind = "banking_error"

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationError(BankingError, ValueError):
    """Malformed or out-of-range input; no mutation attempted"""
    kind = "validation_error"


class AuthenticationError(BankingError):
    """Missing, invalid or expired credential"""
    kind = "authentication_error"


class UserNotFoundError(AuthenticationError):
    """Credential is valid but its user no longer exists"""
    kind = "user_not_found"


class AuthorizationError(BankingError):
    """Authenticated but not permitted; no mutation attempted"""
    kind = "authorization_error"


class NotFoundError(BankingError):
    """Referenced entity does not exist"""
    kind = "not_found"


class InsufficientFundsError(BankingError):
    """Withdrawal or transfer exceeds the current balance"""
    kind = "insufficient_funds"

    def __init__(self, account_id: str, balance, requested):
        super().__init__(
            f"Insufficient funds: available {balance}, requested {requested}",
            {"account_id": account_id, "balance": str(balance), "requested": str(requested)},
        )


class ConflictError(BankingError):
    """Operation conflicts with current state (lock timeout, duplicate, in use)"""
    kind = "conflict"


class DependencyError(BankingError):
    """External collaborator failure (email delivery); logged, never surfaced"""
    kind = "dependency_error"
