"""User schemas"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class UserResponse(BaseModel):
    """Profile of the authenticated user"""

    id: int
    email: str
    name: Optional[str]
    roles: List[str]
    is_active: bool
    is_verified: bool
    last_login_at: Optional[datetime]
    login_count: int
    created_at: datetime

    @classmethod
    def from_user(cls, user) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            roles=user.get_roles(),
            is_active=user.is_active,
            is_verified=user.is_verified,
            last_login_at=user.last_login_at,
            login_count=user.login_count,
            created_at=user.created_at,
        )
