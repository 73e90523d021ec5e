"""Authentication endpoints: register, login, refresh, logout and account recovery"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import get_auth_service, get_bearer_token, get_current_user
from app.middleware.rate_limit import get_rate_limit, limiter
from app.models.user import User
from app.schemas.auth import (
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenPairResponse,
    VerifyEmailRequest,
)
from app.schemas.user import UserResponse
from app.services.auth_service import AuthService
from app.utils.jwt_utils import get_jwks

router = APIRouter(prefix="/api/auth", tags=["authentication"])
jwks_router = APIRouter(tags=["authentication"])


# ---------------------------------------------------------------------------
# POST /api/auth/register
# ---------------------------------------------------------------------------

@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("register"))
def register(
    request: Request,
    data: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> RegisterResponse:
    """Create an account.

    The email is trimmed and lower-cased; registering an address that differs
    only in case or surrounding whitespace from an existing one fails with
    ``duplicate_email``. A ``UserCreatedMessage`` is queued in the same
    transaction as the new row.
    """
    user = service.register(data.email, data.password, data.name)
    return RegisterResponse(
        message="User registered successfully",
        user={"id": user.id, "email": user.email},
    )


# ---------------------------------------------------------------------------
# POST /api/auth/login
# ---------------------------------------------------------------------------

@router.post("/login", response_model=TokenPairResponse)
@limiter.limit(get_rate_limit("login"))
def login(
    request: Request,
    data: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenPairResponse:
    """Exchange email and password for a session token and a refresh token."""
    client_ip = request.client.host if request.client else None
    return TokenPairResponse(**service.login(data.email, data.password, ip_address=client_ip))


# ---------------------------------------------------------------------------
# POST /api/auth/refresh
# ---------------------------------------------------------------------------

@router.post("/refresh", response_model=TokenPairResponse)
@limiter.limit(get_rate_limit("refresh"))
def refresh(
    request: Request,
    data: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenPairResponse:
    """Trade a refresh token for a new pair. Each refresh token works once."""
    return TokenPairResponse(**service.refresh(data.refresh_token))


# ---------------------------------------------------------------------------
# POST /api/auth/logout
# ---------------------------------------------------------------------------

@router.post("/logout", response_model=MessageResponse)
def logout(
    token: Optional[str] = Depends(get_bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the bearer token for the rest of its lifetime.

    Always succeeds; any later request with the same token gets 401
    ``revoked_token``.
    """
    service.logout(token)
    return MessageResponse(message="Logged out successfully")


# ---------------------------------------------------------------------------
# GET /api/auth/me
# ---------------------------------------------------------------------------

@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------

@router.post("/verify-email", response_model=MessageResponse)
def verify_email(
    data: VerifyEmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.verify_email(data.token)
    return MessageResponse(message="Email verified")


@router.post("/password/forgot", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(get_rate_limit("password_reset"))
def forgot_password(
    request: Request,
    data: ForgotPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Start a password reset. The response is the same whether or not the email exists."""
    service.request_password_reset(data.email)
    return MessageResponse(message="If the account exists, a reset link has been sent")


@router.post("/password/reset", response_model=MessageResponse)
def reset_password(
    data: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.reset_password(data.token, data.password)
    return MessageResponse(message="Password has been reset")


# ---------------------------------------------------------------------------
# GET /.well-known/jwks.json
# ---------------------------------------------------------------------------

@jwks_router.get("/.well-known/jwks.json", response_model=Dict[str, Any])
def jwks() -> Dict[str, Any]:
    """Public key set (JWKS) for services that verify session tokens themselves.

    Remember that such services cannot see logouts; only this service's
    revocation cache knows about them.
    """
    return get_jwks()
