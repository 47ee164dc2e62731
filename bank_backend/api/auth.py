"""
Authentication and authorization dependencies
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..accounts import AccountManager
from ..config import BankConfig, get_config
from ..logging_config import get_logger
from ..notifications import NotificationDispatcher, create_notifier
from ..rbac import AccessGuard, Identity, UserManager
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionProcessor


logger = get_logger("bank.api")


class BankingSystem:
    """Banking backend with all components initialized"""

    def __init__(self, config: Optional[BankConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, busy_timeout=self.config.sqlite_busy_timeout
        )

        # Notification transport is built once and shared by every request
        self.notifier = create_notifier(self.config)
        self.dispatcher = NotificationDispatcher(
            self.storage, self.notifier, max_workers=self.config.notification_workers
        )

        # Initialize core components
        self.user_manager = UserManager(
            self.storage,
            password_min_length=self.config.password_min_length,
            dispatcher=self.dispatcher,
        )
        self.guard = AccessGuard(
            self.user_manager,
            secret=self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            expiry_hours=self.config.jwt_expiry_hours,
        )
        self.account_manager = AccountManager(self.storage, self.user_manager)
        self.transaction_processor = TransactionProcessor(
            self.storage, self.account_manager, self.user_manager,
            dispatcher=self.dispatcher,
            lock_timeout=self.config.lock_timeout_seconds,
            max_page_size=self.config.max_page_size,
        )

        if self.config.bootstrap_admin_email and self.config.bootstrap_admin_password:
            self.user_manager.ensure_admin(
                self.config.bootstrap_admin_email, self.config.bootstrap_admin_password
            )

    def close(self) -> None:
        """Drain pending notifications and release storage"""
        self.dispatcher.shutdown(wait=True)
        self.storage.close()


# Global banking system instance - created on first use
banking_system: Optional[BankingSystem] = None


# Dependency to get banking system
def get_banking_system() -> BankingSystem:
    global banking_system
    if banking_system is None:
        banking_system = BankingSystem()
        logger.info("Banking system initialized")
    return banking_system


def shutdown_banking_system() -> None:
    global banking_system
    if banking_system is not None:
        banking_system.close()
        banking_system = None
        logger.info("Banking system shut down")


# JWT Security
security = HTTPBearer(auto_error=False)


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> Identity:
    """Dependency that validates the bearer token and returns the caller"""
    token = credentials.credentials if credentials else None
    return system.guard.authenticate(token)


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> Optional[Identity]:
    """Like get_current_identity, but anonymous callers get None"""
    if not credentials:
        return None
    return system.guard.authenticate(credentials.credentials)
