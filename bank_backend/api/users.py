"""
User endpoints: registration, login and self-service management
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Response

from .auth import BankingSystem, get_banking_system, get_current_identity, get_optional_identity
from .schemas import AuthResponse, LoginRequest, RegisterRequest, UpdateUserRequest, UserResponse
from ..errors import AuthorizationError
from ..rbac import Identity, Role, require_roles


router = APIRouter()


@router.post("/register", response_model=AuthResponse, status_code=201)
def register(
    request: RegisterRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Optional[Identity] = Depends(get_optional_identity)
):
    """Register a user; elevated roles can only be granted by an ADMIN"""
    role = Role.parse(request.role) if request.role else Role.USER
    if role != Role.USER:
        if identity is None:
            raise AuthorizationError("Only an ADMIN can register users with elevated roles")
        require_roles(identity, {Role.ADMIN}, resource="users")

    user = system.user_manager.register(
        email=request.email,
        password=request.password,
        first_name=request.first_name,
        last_name=request.last_name,
        role=role,
    )
    return AuthResponse(user=UserResponse.from_user(user), token=system.guard.issue_token(user))


@router.post("/login", response_model=AuthResponse)
def login(request: LoginRequest, system: BankingSystem = Depends(get_banking_system)):
    """Exchange credentials for a bearer token"""
    user = system.user_manager.login(request.email, request.password)
    return AuthResponse(user=UserResponse.from_user(user), token=system.guard.issue_token(user))


@router.get("", response_model=List[UserResponse])
def list_users(
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    """List all users (ADMIN)"""
    return [UserResponse.from_user(u) for u in system.user_manager.list_users(identity)]


@router.put("/{user_id}", response_model=UserResponse)
def update_user(
    user_id: str,
    request: UpdateUserRequest,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    user = system.user_manager.update_user(
        user_id, identity,
        email=request.email,
        password=request.password,
        first_name=request.first_name,
        last_name=request.last_name,
        role=Role.parse(request.role) if request.role else None,
    )
    return UserResponse.from_user(user)


@router.delete("/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    system: BankingSystem = Depends(get_banking_system),
    identity: Identity = Depends(get_current_identity)
):
    system.user_manager.delete_user(user_id, identity)
    return Response(status_code=204)
