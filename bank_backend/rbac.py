"""
Role-Based Access Control (RBAC) Module

User registration and login, bearer token issuance and verification, and the
single authorization predicate used for every resource: the owner may act,
an ADMIN may act on anything, everyone else is denied.
"""

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING

import jwt

from .errors import (
    AuthenticationError, AuthorizationError, ConflictError, NotFoundError,
    UserNotFoundError, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .notifications import NotificationDispatcher


logger = get_logger("bank.rbac")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Role(Enum):
    """Closed set of user roles"""
    ADMIN = "ADMIN"
    USER = "USER"
    MANAGER = "MANAGER"

    @classmethod
    def parse(cls, value: Any) -> 'Role':
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError(
                f"Unknown role: {value}",
                {"allowed": [r.value for r in cls]},
            )


@dataclass
class User(StorageRecord):
    """Registered user"""
    email: str
    first_name: str
    last_name: str
    role: Role = Role.USER
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller resolved from a bearer token"""
    user_id: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# Authorization

def can_access(identity: Identity, resource_owner_id: str) -> bool:
    """Owner or ADMIN"""
    return identity.user_id == resource_owner_id or identity.is_admin


def authorize(identity: Identity, resource_owner_id: Optional[str] = None,
              required_roles: Optional[Iterable[Role]] = None,
              resource: Optional[str] = None) -> None:
    """
    Allow or deny an action. Raises AuthorizationError on deny.

    Args:
        identity: The caller
        resource_owner_id: Owner of the resource acted upon, if any
        required_roles: Roles allowed to call a role-gated operation, if any
        resource: Resource label used for logging only
    """
    if required_roles is not None:
        allowed = set(required_roles)
        if identity.role not in allowed:
            log_action(
                logger, "warning", "Role check denied",
                user_id=identity.user_id, action="authorize", resource=resource,
                extra={"role": identity.role.value, "allowed": sorted(r.value for r in allowed)}
            )
            raise AuthorizationError("Forbidden: Insufficient role")

    if resource_owner_id is not None and not can_access(identity, resource_owner_id):
        log_action(
            logger, "warning", "Ownership check denied",
            user_id=identity.user_id, action="authorize", resource=resource
        )
        raise AuthorizationError("Forbidden: not the owner of this resource")


def require_roles(identity: Identity, roles: Iterable[Role], resource: Optional[str] = None) -> None:
    """Role-gated operations (admin-only listing, notification creation)"""
    authorize(identity, required_roles=roles, resource=resource)


class AccessGuard:
    """Issues bearer tokens and resolves them to identities"""

    def __init__(self, user_manager: 'UserManager', secret: str,
                 algorithm: str = "HS256", expiry_hours: int = 1):
        self.user_manager = user_manager
        self.secret = secret
        self.algorithm = algorithm
        self.expiry_hours = expiry_hours

    def issue_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "role": user.role.value,
            "iat": now,
            "exp": now + timedelta(hours=self.expiry_hours),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def authenticate(self, token: Optional[str]) -> Identity:
        """
        Resolve a bearer token to the caller's identity.

        Raises:
            AuthenticationError: token missing, malformed, forged or expired
            UserNotFoundError: token is valid but its user is gone
        """
        if not token:
            raise AuthenticationError("Unauthorized: No token provided")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Invalid token: No valid user id")

        user = self.user_manager.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found", {"user_id": user_id})

        # Role comes from the store, not the token, so demotions apply at once
        return Identity(user_id=user.id, email=user.email, role=user.role)


class UserManager:
    """User registration, login and self-service management"""

    def __init__(self, storage: StorageInterface, password_min_length: int = 6,
                 dispatcher: Optional['NotificationDispatcher'] = None):
        self.storage = storage
        self.password_min_length = password_min_length
        self.dispatcher = dispatcher
        self.table_name = "users"

    # Registration and login

    def register(self, email: str, password: str, first_name: str, last_name: str,
                 role: Role = Role.USER) -> User:
        """Create a user and send the welcome email"""
        email = self._normalize_email(email)
        self._validate_password(password)
        first_name = self._validate_name(first_name, "first_name")
        last_name = self._validate_name(last_name, "last_name")
        role = Role.parse(role)

        with self.storage.lock_record("user_emails", email):
            if self.get_user_by_email(email):
                raise ConflictError("Email already registered", {"email": email})

            now = datetime.now(timezone.utc)
            user = User(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
            )
            self._set_user_password(user, password)
            self._save_user(user)

        log_action(
            logger, "info", "User registered",
            user_id=user.id, action="register", resource=f"user:{user.id}",
            extra={"role": role.value}
        )

        if self.dispatcher:
            self.dispatcher.dispatch(
                user.id, user.email,
                "Welcome to Banking System",
                f"Hi {user.first_name}, your account has been created!",
            )

        return user

    def login(self, email: str, password: str) -> User:
        """Verify credentials. Raises AuthenticationError on mismatch."""
        user = self.get_user_by_email(email)
        if not user or not self._verify_password(user, password):
            log_action(
                logger, "warning", "Login failed",
                action="login_failed", resource="auth",
                extra={"email": str(email).strip().lower()}
            )
            raise AuthenticationError("Invalid email or password")

        log_action(logger, "info", "User logged in",
                   user_id=user.id, action="login", resource="auth")
        return user

    def ensure_admin(self, email: str, password: str) -> User:
        """Create the bootstrap administrator if it does not exist yet"""
        existing = self.get_user_by_email(email)
        if existing:
            return existing
        return self.register(email, password, "System", "Administrator", Role.ADMIN)

    # Lookups

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            return None
        return self._user_from_dict(data)

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email (case-insensitive)"""
        users = self.storage.find(self.table_name, {"email": str(email).strip().lower()})
        if not users:
            return None
        return self._user_from_dict(users[0])

    def list_users(self, actor: Identity) -> List[User]:
        """All users, ADMIN only"""
        require_roles(actor, {Role.ADMIN}, resource="users")
        return [self._user_from_dict(data) for data in self.storage.load_all(self.table_name)]

    # Self-service

    def update_user(self, user_id: str, actor: Identity, email: Optional[str] = None,
                    password: Optional[str] = None, first_name: Optional[str] = None,
                    last_name: Optional[str] = None, role: Optional[Role] = None) -> User:
        """Update a user; the user themself or an ADMIN. Role changes are ADMIN only."""
        authorize(actor, user_id, resource=f"user:{user_id}")
        user = self.require_user(user_id)

        if role is not None:
            role = Role.parse(role)
            if role != user.role:
                require_roles(actor, {Role.ADMIN}, resource=f"user:{user_id}")
                user.role = role
        if first_name is not None:
            user.first_name = self._validate_name(first_name, "first_name")
        if last_name is not None:
            user.last_name = self._validate_name(last_name, "last_name")
        if password is not None:
            self._validate_password(password)
            self._set_user_password(user, password)

        if email is not None:
            email = self._normalize_email(email)
            if email != user.email:
                with self.storage.lock_record("user_emails", email):
                    if self.get_user_by_email(email):
                        raise ConflictError("Email already registered", {"email": email})
                    user.email = email
                    user.updated_at = datetime.now(timezone.utc)
                    self._save_user(user)
                return user

        user.updated_at = datetime.now(timezone.utc)
        self._save_user(user)
        return user

    def delete_user(self, user_id: str, actor: Identity) -> None:
        """Delete a user that owns no accounts and has no ledger entries"""
        authorize(actor, user_id, resource=f"user:{user_id}")
        self.require_user(user_id)

        if (self.storage.count("accounts", {"owner_user_id": user_id})
                or self.storage.count("transactions", {"user_id": user_id})):
            raise ConflictError(
                "User still owns accounts or ledger entries", {"user_id": user_id}
            )

        with self.storage.atomic():
            for notification in self.storage.find("notifications", {"user_id": user_id}):
                self.storage.delete("notifications", notification["id"])
            self.storage.delete(self.table_name, user_id)

        log_action(logger, "info", "User deleted",
                   user_id=actor.user_id, action="delete_user", resource=f"user:{user_id}")

    # Validation helpers

    def _normalize_email(self, email: str) -> str:
        email = str(email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", {"field": "email"})
        return email

    def _validate_password(self, password: str) -> None:
        if not password or len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters",
                {"field": "password"},
            )

    @staticmethod
    def _validate_name(value: str, field_name: str) -> str:
        value = str(value or "").strip()
        if len(value) < 2:
            raise ValidationError(f"{field_name} must be at least 2 characters",
                                  {"field": field_name})
        return value

    # Password hashing

    def _generate_salt(self) -> str:
        return secrets.token_hex(16)

    def _hash_password(self, password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _set_user_password(self, user: User, password: str) -> None:
        user.password_salt = self._generate_salt()
        user.password_hash = self._hash_password(password, user.password_salt)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash or not user.password_salt or not password:
            return False
        expected = self._hash_password(password, user.password_salt)
        return hmac.compare_digest(expected, user.password_hash)

    # Serialization

    def _save_user(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, user.to_dict())

    def _user_from_dict(self, data: Dict) -> User:
        data = dict(data)
        data['role'] = Role(data['role'])
        return User.from_dict(data)
