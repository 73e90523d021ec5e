"""User data access"""
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from app.database import SessionLocal, session_scope
from app.models.user import User, normalize_email


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup on the normalized email."""
        return self.db.query(User).filter(func.lower(User.email) == normalize_email(email)).first()

    def find_active_by_email(self, email: str) -> Optional[User]:
        return (
            self.db.query(User)
            .filter(
                func.lower(User.email) == normalize_email(email),
                User.is_active == True,
                User.deleted_at.is_(None),
            )
            .first()
        )

    def find_by_verification_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self.db.query(User).filter(User.verification_token == token).first()

    def find_by_reset_password_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        return self.db.query(User).filter(User.reset_password_token == token).first()

    def email_exists(self, email: str, exclude_user_id: Optional[int] = None) -> bool:
        query = self.db.query(func.count(User.id)).filter(func.lower(User.email) == normalize_email(email))
        if exclude_user_id:
            query = query.filter(User.id != exclude_user_id)
        return query.scalar() > 0

    def add(self, user: User) -> User:
        """Stage a new user and flush so it gets an id (no commit)."""
        self.db.add(user)
        self.db.flush()
        return user


def iter_for_export(session_factory: sessionmaker = SessionLocal, batch_size: int = 500) -> Iterator[dict]:
    """Stream every user, oldest first, as plain dicts.

    Forward-only; call again to restart. The session is held only while the
    generator runs and is closed on exhaustion, on error, or when the caller
    closes the generator early.
    """
    with session_scope(session_factory) as db:
        query = db.query(User).order_by(User.id.asc()).execution_options(yield_per=batch_size)
        for user in query:
            yield {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "roles": user.get_roles(),
                "is_active": user.is_active,
                "is_verified": user.is_verified,
                "login_count": user.login_count,
                "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
                "created_at": user.created_at.isoformat() if user.created_at else None,
                "deleted_at": user.deleted_at.isoformat() if user.deleted_at else None,
            }
            # Rows already yielded are not needed again
            db.expunge(user)
