"""
Test suite for RBAC module

Tests registration, login, bearer tokens, the owner-or-admin authorization
predicate and user self-management.
"""

import pytest
import jwt

from bank_backend.accounts import AccountManager
from bank_backend.errors import (
    AuthenticationError, AuthorizationError, ConflictError, NotFoundError,
    UserNotFoundError, ValidationError
)
from bank_backend.notifications import NotificationDispatcher, Notifier
from bank_backend.rbac import (
    AccessGuard, Identity, Role, UserManager, authorize, can_access, require_roles
)
from bank_backend.storage import InMemoryStorage


SECRET = "test-secret"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, body):
        self.sent.append((recipient, subject, body))
        return True


@pytest.fixture
def storage():
    """Create in-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def user_manager(storage):
    return UserManager(storage)


@pytest.fixture
def guard(user_manager):
    return AccessGuard(user_manager, secret=SECRET)


@pytest.fixture
def alice(user_manager):
    return user_manager.register("Alice@Example.com", "secret1", "Alice", "Smith")


@pytest.fixture
def admin(user_manager):
    return user_manager.register("admin@example.com", "adminpw", "Ada", "Admin", Role.ADMIN)


def identity_of(user):
    return Identity(user_id=user.id, email=user.email, role=user.role)


class TestRegistration:
    """User registration and validation"""

    def test_register_user(self, alice):
        assert alice.email == "alice@example.com"
        assert alice.role == Role.USER
        assert alice.full_name == "Alice Smith"
        assert alice.password_hash and alice.password_hash != "secret1"
        assert alice.password_salt

    def test_register_persists_user(self, user_manager, alice):
        loaded = user_manager.get_user(alice.id)
        assert loaded.email == alice.email
        assert loaded.role == Role.USER
        assert user_manager.get_user_by_email("ALICE@example.com").id == alice.id

    def test_duplicate_email_is_conflict(self, user_manager, alice):
        with pytest.raises(ConflictError):
            user_manager.register("alice@EXAMPLE.com", "another1", "Alicia", "Smith")

    @pytest.mark.parametrize("email,password,first,last", [
        ("not-an-email", "secret1", "Bob", "Jones"),
        ("bob@example.com", "short", "Bob", "Jones"),
        ("bob@example.com", "secret1", "B", "Jones"),
        ("bob@example.com", "secret1", "Bob", " J "),
    ])
    def test_invalid_input_rejected(self, user_manager, email, password, first, last):
        with pytest.raises(ValidationError):
            user_manager.register(email, password, first, last)
        assert user_manager.get_user_by_email("bob@example.com") is None

    def test_role_parsing(self, user_manager):
        manager = user_manager.register("m@example.com", "secret1", "Mia", "Manager", "manager")
        assert manager.role == Role.MANAGER
        with pytest.raises(ValidationError):
            Role.parse("superuser")

    def test_salts_differ_for_same_password(self, user_manager):
        one = user_manager.register("one@example.com", "samepass", "One", "User")
        two = user_manager.register("two@example.com", "samepass", "Two", "User")
        assert one.password_salt != two.password_salt
        assert one.password_hash != two.password_hash

    def test_welcome_email_sent(self, storage):
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(storage, notifier, max_workers=1)
        manager = UserManager(storage, dispatcher=dispatcher)

        user = manager.register("new@example.com", "secret1", "Nora", "New")
        dispatcher.shutdown(wait=True)

        assert notifier.sent == [(
            "new@example.com", "Welcome to Banking System",
            "Hi Nora, your account has been created!"
        )]
        assert len(dispatcher.list_notifications(identity_of(user))) == 1

    def test_ensure_admin_is_idempotent(self, user_manager):
        first = user_manager.ensure_admin("root@example.com", "rootpass")
        second = user_manager.ensure_admin("root@example.com", "rootpass")
        assert first.id == second.id
        assert first.role == Role.ADMIN


class TestLogin:
    def test_login_success(self, user_manager, alice):
        assert user_manager.login("alice@example.com", "secret1").id == alice.id

    def test_login_wrong_password(self, user_manager, alice):
        with pytest.raises(AuthenticationError):
            user_manager.login("alice@example.com", "wrong-password")

    def test_login_unknown_email(self, user_manager):
        with pytest.raises(AuthenticationError):
            user_manager.login("ghost@example.com", "secret1")


class TestTokens:
    """Bearer token issue and verification"""

    def test_round_trip(self, guard, alice):
        identity = guard.authenticate(guard.issue_token(alice))
        assert identity == Identity(user_id=alice.id, email=alice.email, role=Role.USER)

    def test_token_claims(self, guard, alice):
        payload = jwt.decode(guard.issue_token(alice), SECRET, algorithms=["HS256"])
        assert payload["sub"] == alice.id
        assert payload["role"] == "USER"
        assert payload["exp"] - payload["iat"] == 3600

    def test_missing_token(self, guard):
        with pytest.raises(AuthenticationError):
            guard.authenticate(None)

    def test_garbage_token(self, guard):
        with pytest.raises(AuthenticationError):
            guard.authenticate("not.a.token")

    def test_forged_token(self, user_manager, guard, alice):
        forger = AccessGuard(user_manager, secret="someone-else")
        with pytest.raises(AuthenticationError):
            guard.authenticate(forger.issue_token(alice))

    def test_expired_token(self, user_manager, guard, alice):
        stale = AccessGuard(user_manager, secret=SECRET, expiry_hours=-1)
        with pytest.raises(AuthenticationError) as exc_info:
            guard.authenticate(stale.issue_token(alice))
        assert "expired" in exc_info.value.message.lower()

    def test_token_of_deleted_user(self, user_manager, guard, alice):
        token = guard.issue_token(alice)
        user_manager.delete_user(alice.id, identity_of(alice))
        with pytest.raises(UserNotFoundError):
            guard.authenticate(token)

    def test_role_read_from_store(self, user_manager, guard, alice, admin):
        token = guard.issue_token(alice)
        user_manager.update_user(alice.id, identity_of(admin), role=Role.MANAGER)
        assert guard.authenticate(token).role == Role.MANAGER


class TestAuthorization:
    """Owner-or-admin predicate"""

    def test_owner_allowed(self, alice):
        authorize(identity_of(alice), alice.id)
        assert can_access(identity_of(alice), alice.id)

    def test_other_user_denied(self, alice, user_manager):
        bob = user_manager.register("bob@example.com", "secret1", "Bob", "Jones")
        with pytest.raises(AuthorizationError):
            authorize(identity_of(bob), alice.id)

    def test_admin_allowed_on_anything(self, admin, alice):
        authorize(identity_of(admin), alice.id)

    def test_manager_has_no_admin_powers(self, user_manager, alice):
        manager = user_manager.register("m@example.com", "secret1", "Mia", "Manager", Role.MANAGER)
        with pytest.raises(AuthorizationError):
            authorize(identity_of(manager), alice.id)

    def test_require_roles(self, admin, alice):
        require_roles(identity_of(admin), {Role.ADMIN})
        with pytest.raises(AuthorizationError):
            require_roles(identity_of(alice), {Role.ADMIN})


class TestUserManagement:
    """Listing, updating and deleting users"""

    def test_list_users_admin_only(self, user_manager, alice, admin):
        assert {u.id for u in user_manager.list_users(identity_of(admin))} == {alice.id, admin.id}
        with pytest.raises(AuthorizationError):
            user_manager.list_users(identity_of(alice))

    def test_update_self(self, user_manager, alice):
        updated = user_manager.update_user(alice.id, identity_of(alice), first_name="Alicia")
        assert updated.first_name == "Alicia"
        assert user_manager.get_user(alice.id).first_name == "Alicia"

    def test_update_password(self, user_manager, alice):
        user_manager.update_user(alice.id, identity_of(alice), password="newsecret")
        user_manager.login("alice@example.com", "newsecret")
        with pytest.raises(AuthenticationError):
            user_manager.login("alice@example.com", "secret1")

    def test_update_email_conflict(self, user_manager, alice, admin):
        with pytest.raises(ConflictError):
            user_manager.update_user(alice.id, identity_of(alice), email="admin@example.com")

    def test_update_other_user_denied(self, user_manager, alice):
        bob = user_manager.register("bob@example.com", "secret1", "Bob", "Jones")
        with pytest.raises(AuthorizationError):
            user_manager.update_user(alice.id, identity_of(bob), first_name="Hacked")

    def test_self_promotion_denied(self, user_manager, alice):
        with pytest.raises(AuthorizationError):
            user_manager.update_user(alice.id, identity_of(alice), role=Role.ADMIN)
        assert user_manager.get_user(alice.id).role == Role.USER

    def test_update_missing_user(self, user_manager, admin):
        with pytest.raises(NotFoundError):
            user_manager.update_user("missing", identity_of(admin), first_name="Nobody")

    def test_delete_self(self, user_manager, alice):
        user_manager.delete_user(alice.id, identity_of(alice))
        assert user_manager.get_user(alice.id) is None

    def test_delete_refused_while_owning_accounts(self, storage, user_manager, alice):
        AccountManager(storage, user_manager).open_account(identity_of(alice), "ACC0000000001")
        with pytest.raises(ConflictError):
            user_manager.delete_user(alice.id, identity_of(alice))
        assert user_manager.get_user(alice.id) is not None
