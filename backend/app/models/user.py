"""User model: the auth-relevant projection of the user aggregate"""
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from app.config import settings
from app.database import Base
from app.utils.clock import utcnow


def normalize_email(email: str) -> str:
    """Trim and lower-case an email for storage and comparison."""
    return (email or "").strip().lower()


class User(Base):
    """A registered user.

    Timestamps are maintained by the mutation methods below rather than ORM
    hooks: anything that changes the row calls :meth:`touch`.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(180), unique=True, nullable=False, index=True)
    roles = Column(JSON, nullable=False, default=list)
    password = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    verification_token = Column(String(100), nullable=True, index=True)
    email_verified_at = Column(DateTime, nullable=True)
    reset_password_token = Column(String(100), nullable=True, index=True)
    reset_password_token_expires_at = Column(DateTime, nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    last_login_ip = Column(String(45), nullable=True)
    login_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    def __init__(self, email: str, password: str, name: Optional[str] = None, roles: Optional[List[str]] = None):
        super().__init__(
            email=normalize_email(email),
            password=password,
            name=name,
            roles=list(roles or []),
            is_active=True,
            is_verified=False,
            login_count=0,
            created_at=utcnow(),
        )

    # -- roles ---------------------------------------------------------------

    def get_roles(self) -> List[str]:
        """Stored roles plus the default role, de-duplicated, order preserved."""
        roles = list(self.roles or []) + [settings.DEFAULT_ROLE]
        return list(dict.fromkeys(roles))

    def has_role(self, role: str) -> bool:
        return role in self.get_roles()

    # -- lifecycle -----------------------------------------------------------

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def set_password_hash(self, password_hash: str) -> None:
        self.password = password_hash
        self.touch()

    def generate_verification_token(self) -> str:
        self.verification_token = secrets.token_hex(32)
        self.touch()
        return self.verification_token

    def mark_verified(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.is_verified = True
        self.verification_token = None
        if self.email_verified_at is None:
            self.email_verified_at = now
        self.touch(now)

    def generate_reset_password_token(self, expires_in_hours: int = 24, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        self.reset_password_token = secrets.token_hex(32)
        self.reset_password_token_expires_at = now + timedelta(hours=expires_in_hours)
        self.touch(now)
        return self.reset_password_token

    def is_reset_password_token_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.reset_password_token or not self.reset_password_token_expires_at:
            return False
        return self.reset_password_token_expires_at > (now or utcnow())

    def clear_reset_password_token(self) -> None:
        self.reset_password_token = None
        self.reset_password_token_expires_at = None
        self.touch()

    def record_login(self, ip_address: Optional[str] = None, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.last_login_at = now
        self.last_login_ip = ip_address
        self.login_count = (self.login_count or 0) + 1
        self.touch(now)

    def soft_delete(self, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.deleted_at = now
        self.is_active = False
        self.touch(now)

    def restore(self) -> None:
        self.deleted_at = None
        self.is_active = True
        self.touch()

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
