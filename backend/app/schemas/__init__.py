"""Pydantic schemas for request/response validation"""
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

__all__ = [
    "ForgotPasswordRequest",
    "LoginRequest",
    "MessageResponse",
    "RefreshRequest",
    "RegisterRequest",
    "RegisterResponse",
    "ResetPasswordRequest",
    "TokenPairResponse",
    "UserResponse",
    "VerifyEmailRequest",
]
