"""Auth request/response schemas"""
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=180, description="Login email (case-insensitive)")
    password: str = Field(..., min_length=6, max_length=4096)
    name: Optional[str] = Field(None, max_length=255)

    @field_validator("email")
    @classmethod
    def email_has_at(cls, value: str) -> str:
        local, _, domain = value.strip().partition("@")
        if not local or not domain:
            raise ValueError("Invalid email address")
        return value


class LoginRequest(BaseModel):
    email: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class VerifyEmailRequest(BaseModel):
    token: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str = Field(..., min_length=6, max_length=4096)


class TokenPairResponse(BaseModel):
    token: str
    refresh_token: str
    expires_in: int   # seconds until the access token expires


class RegisteredUser(BaseModel):
    id: int
    email: str


class RegisterResponse(BaseModel):
    message: str
    user: RegisteredUser


class MessageResponse(BaseModel):
    message: str
