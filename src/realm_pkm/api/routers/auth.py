"""
Account endpoints: registration, login, token refresh and profile.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from realm_pkm.api.dependencies import get_auth_service, get_bearer_token, get_current_user
from realm_pkm.api.schemas import (
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
)
from realm_pkm.exceptions import AuthenticationError, ErrorCode, ValidationError
from realm_pkm.models.schema import User
from realm_pkm.services.auth_service import AuthResult, AuthService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

_UNAUTHORIZED_CODES = {
    ErrorCode.AUTH_INVALID_CREDENTIALS,
    ErrorCode.AUTH_TOKEN_INVALID,
    ErrorCode.AUTH_TOKEN_EXPIRED,
    ErrorCode.AUTH_USER_INACTIVE,
}


def _unwrap(result: AuthResult) -> Dict[str, Any]:
    """Return the payload of a successful result or raise the matching error."""
    if result.success:
        return result.to_dict()
    code = result.code or ErrorCode.VALIDATION_FAILED
    if code in _UNAUTHORIZED_CODES:
        raise AuthenticationError(result.message, code=code)
    raise ValidationError(result.message, code=code)


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    request: RegisterRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, Any]:
    """Create an account and return its first token pair."""
    return _unwrap(
        auth.register(
            request.email,
            request.password,
            request.display_name,
            first_name=request.first_name,
            last_name=request.last_name,
        )
    )


@router.post("/login")
def login(
    request: LoginRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, Any]:
    return _unwrap(auth.authenticate(request.email, request.password))


@router.post("/refresh")
def refresh(
    request: RefreshRequest, auth: AuthService = Depends(get_auth_service)
) -> Dict[str, Any]:
    """Exchange a refresh token for a new access token."""
    return _unwrap(auth.refresh(request.refresh_token))


@router.post("/validate")
def validate(
    token: str = Depends(get_bearer_token),
    auth: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    user = auth.validate(token)
    return {
        "valid": True,
        "user": user.to_public_dict(),
        "remaining_ms": auth.tokens.get_remaining_ms(token),
    }


@router.get("/me")
def me(user: User = Depends(get_current_user)) -> Dict[str, Any]:
    return user.to_public_dict()


@router.put("/me")
def update_profile(
    request: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> Dict[str, Any]:
    updated = auth.update_profile(user.id, **request.model_dump())
    return updated.to_public_dict()


@router.post("/me/password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(
    request: PasswordChangeRequest,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> None:
    auth.change_password(user.id, request.current_password, request.new_password)


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
def deactivate(
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> None:
    auth.deactivate_user(user.id)
