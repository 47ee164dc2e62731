"""
Tests for account management
"""

import pytest
from decimal import Decimal

from bank_backend.accounts import Account, AccountManager
from bank_backend.errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError
)
from bank_backend.rbac import Identity, Role, UserManager
from bank_backend.storage import InMemoryStorage


class TestAccountManager:
    """Test account lifecycle and scoping"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.user_manager = UserManager(self.storage)
        self.account_manager = AccountManager(self.storage, self.user_manager)

        self.alice = self._identity(
            self.user_manager.register("alice@example.com", "secret1", "Alice", "Smith")
        )
        self.bob = self._identity(
            self.user_manager.register("bob@example.com", "secret1", "Bob", "Jones")
        )
        self.admin = self._identity(
            self.user_manager.register("admin@example.com", "secret1", "Ada", "Admin", Role.ADMIN)
        )

    @staticmethod
    def _identity(user):
        return Identity(user_id=user.id, email=user.email, role=user.role)

    def test_open_account(self):
        account = self.account_manager.open_account(self.alice, "ACC0000000001")

        assert account.owner_user_id == self.alice.user_id
        assert account.account_number == "ACC0000000001"
        assert account.balance == Decimal("0.00")

        loaded = self.account_manager.get_account(account.id)
        assert loaded == account
        assert isinstance(loaded.balance, Decimal)

    def test_generated_account_number(self):
        account = self.account_manager.open_account(self.alice)
        assert account.account_number.startswith("ACC")
        assert 10 <= len(account.account_number) <= 20

    @pytest.mark.parametrize("number", ["123456789", "1" * 21, "   "])
    def test_account_number_length(self, number):
        with pytest.raises(ValidationError):
            self.account_manager.open_account(self.alice, number)
        assert self.account_manager.list_accounts(self.alice) == []

    def test_account_number_bounds_accepted(self):
        self.account_manager.open_account(self.alice, "1" * 10)
        self.account_manager.open_account(self.alice, "2" * 20)
        assert len(self.account_manager.list_accounts(self.alice)) == 2

    def test_duplicate_account_number(self):
        self.account_manager.open_account(self.alice, "ACC0000000001")
        with pytest.raises(ConflictError):
            self.account_manager.open_account(self.bob, "ACC0000000001")

    def test_admin_opens_for_another_user(self):
        account = self.account_manager.open_account(
            self.admin, "ACC0000000002", owner_user_id=self.bob.user_id
        )
        assert account.owner_user_id == self.bob.user_id

    def test_user_cannot_open_for_another_user(self):
        with pytest.raises(AuthorizationError):
            self.account_manager.open_account(
                self.alice, "ACC0000000003", owner_user_id=self.bob.user_id
            )

    def test_open_for_unknown_owner(self):
        with pytest.raises(NotFoundError):
            self.account_manager.open_account(self.admin, "ACC0000000004", owner_user_id="ghost")

    def test_list_accounts_scoped_to_owner(self):
        mine = self.account_manager.open_account(self.alice, "ACC0000000001")
        theirs = self.account_manager.open_account(self.bob, "ACC0000000002")

        assert [a.id for a in self.account_manager.list_accounts(self.alice)] == [mine.id]
        assert [a.id for a in self.account_manager.list_accounts(self.bob)] == [theirs.id]
        assert {a.id for a in self.account_manager.list_accounts(self.admin)} == {mine.id, theirs.id}

    def test_get_account_for(self):
        account = self.account_manager.open_account(self.alice, "ACC0000000001")

        assert self.account_manager.get_account_for(account.id, self.alice).id == account.id
        assert self.account_manager.get_account_for(account.id, self.admin).id == account.id
        with pytest.raises(AuthorizationError):
            self.account_manager.get_account_for(account.id, self.bob)
        with pytest.raises(NotFoundError):
            self.account_manager.get_account_for("missing", self.alice)

    def test_get_account_by_number(self):
        account = self.account_manager.open_account(self.alice, "ACC0000000001")
        assert self.account_manager.get_account_by_number("ACC0000000001").id == account.id
        assert self.account_manager.get_account_by_number("ACC9999999999") is None

    def test_negative_balance_rejected(self):
        with pytest.raises(ValidationError):
            Account(
                id="a1", created_at=None, updated_at=None,
                owner_user_id=self.alice.user_id, account_number="ACC0000000001",
                balance=Decimal("-0.01"),
            )
