"""Password hashing"""
from typing import List, Optional

from passlib.context import CryptContext

from app.config import settings


class PasswordHasher:
    """Thin wrapper over a passlib context so the scheme stays pluggable."""

    def __init__(self, schemes: Optional[List[str]] = None):
        self._context = CryptContext(schemes=schemes or settings.PASSWORD_HASH_SCHEMES, deprecated="auto")

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return self._context.verify(password, password_hash)
        except ValueError:
            # Unrecognised or corrupt hash
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        return self._context.needs_update(password_hash)


password_hasher = PasswordHasher()
