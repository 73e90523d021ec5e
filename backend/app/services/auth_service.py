"""Auth orchestration: registration, login, logout, refresh and account lifecycle.

The service owns the unit of work: every state change commits together with
the outbox rows it produces, or rolls back with them.
"""
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import DuplicateEmail, InvalidCredentials, InvalidToken, RevokedToken
from app.messenger.bus import MessageBus
from app.messenger.messages import PasswordResetRequestedMessage, UserCreatedMessage, UserUpdatedMessage
from app.middleware.monitoring import record_auth_event, record_auth_failure
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.repositories.users import UserRepository
from app.utils.clock import utcnow
from app.utils.jwt_utils import create_user_token, decode_user_token
from app.utils.logger import logger
from app.utils.passwords import PasswordHasher, password_hasher
from app.utils.revocation import RevocationCache


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


class AuthService:
    def __init__(
        self,
        db: Session,
        bus: MessageBus,
        revocation_cache: RevocationCache,
        hasher: Optional[PasswordHasher] = None,
    ):
        self.db = db
        self.bus = bus
        self.revocation_cache = revocation_cache
        self.hasher = hasher or password_hasher
        self.users = UserRepository(db)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: Optional[str] = None) -> User:
        """Create a user and enqueue ``UserCreatedMessage`` in one transaction.

        Raises:
            DuplicateEmail: an account with the same normalized email exists.
        """
        if self.users.email_exists(email):
            record_auth_failure("duplicate_email")
            raise DuplicateEmail()

        user = User(email=email, password=self.hasher.hash(password), name=name)
        user.generate_verification_token()

        try:
            self.users.add(user)
            self.bus.dispatch(self.db, UserCreatedMessage(user_id=user.id, email=user.email))
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same email
            self.db.rollback()
            record_auth_failure("duplicate_email")
            raise DuplicateEmail()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(user)
        record_auth_event("register")
        logger.info(f"Registered user {user.id}", extra={"user_id": user.id, "action": "register"})
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """Verify credentials and issue an access/refresh token pair.

        Raises:
            InvalidCredentials: unknown email, inactive account or wrong password.
        """
        user = self.users.find_by_email(email)
        if (
            user is None
            or not user.is_active
            or user.is_deleted
            or not self.hasher.verify(password, user.password)
        ):
            record_auth_failure("invalid_credentials")
            raise InvalidCredentials()

        if self.hasher.needs_rehash(user.password):
            user.set_password_hash(self.hasher.hash(password))

        user.record_login(ip_address)
        result = self._issue_tokens(user)
        self.db.commit()

        record_auth_event("login")
        logger.info(f"User {user.id} logged in", extra={"user_id": user.id, "action": "login"})
        return result

    def logout(self, token: Optional[str]) -> None:
        """Blacklist ``token`` until it expires.

        Never fails: a missing, malformed or already-expired token is already
        unusable, so there is nothing to revoke.
        """
        if not token:
            return
        try:
            claims = decode_user_token(token)
        except InvalidToken:
            logger.debug("Logout with an invalid token ignored", extra={"action": "logout"})
            return

        now_ts = int(datetime.now(timezone.utc).timestamp())
        ttl = min(int(claims["exp"]) - now_ts, settings.JWT_ACCESS_EXPIRE_SECONDS)
        if ttl <= 0:
            return

        self.revocation_cache.revoke(token, ttl)
        record_auth_event("logout")
        logger.info(
            f"Revoked session token for user {claims['user_id']}",
            extra={"user_id": claims["user_id"], "action": "logout"},
        )

    def refresh(self, raw_refresh_token: str) -> Dict[str, Any]:
        """Rotate a refresh token: consume it and issue a fresh pair.

        Presenting an already-used token revokes every outstanding refresh
        token of that user, since one of the two holders is not the user.

        Raises:
            InvalidToken: unknown, expired, used or revoked token, or the user
                is no longer active.
        """
        now = utcnow()
        row = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_refresh_token(raw_refresh_token or ""))
            .first()
        )
        if row is None:
            record_auth_failure("invalid_token")
            raise InvalidToken("Invalid refresh token")

        if row.used_at is not None:
            revoked = self._revoke_refresh_tokens(row.user_id, now)
            self.db.commit()
            record_auth_failure("refresh_reuse")
            logger.warning(
                f"Refresh token reuse detected for user {row.user_id}, revoked {revoked} tokens",
                extra={"user_id": row.user_id, "action": "refresh"},
            )
            raise InvalidToken("Refresh token already used")

        if not row.is_usable(now):
            record_auth_failure("invalid_token")
            raise InvalidToken("Refresh token expired or revoked")

        user = self.users.get(row.user_id)
        if user is None or not user.is_active or user.is_deleted:
            raise InvalidToken("User not found or inactive")

        consumed = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.id == row.id, RefreshToken.used_at.is_(None))
            .update({RefreshToken.used_at: now}, synchronize_session=False)
        )
        if consumed != 1:
            self.db.rollback()
            raise InvalidToken("Refresh token already used")

        result = self._issue_tokens(user, now)
        self.db.commit()

        record_auth_event("refresh")
        logger.info(f"Refreshed session for user {user.id}", extra={"user_id": user.id, "action": "refresh"})
        return result

    def authenticate(self, token: str) -> User:
        """Resolve a bearer token to its active user.

        Raises:
            InvalidToken: bad signature/expiry, or the user is gone/inactive.
            RevokedToken: the token was logged out.
        """
        claims = decode_user_token(token)
        if self.revocation_cache.is_revoked(token):
            record_auth_failure("revoked_token")
            raise RevokedToken()

        user = self.users.get(claims["user_id"])
        if user is None or not user.is_active or user.is_deleted:
            raise InvalidToken("User not found or inactive")
        return user

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> User:
        user = self.users.find_by_verification_token(token)
        if user is None:
            raise InvalidToken("Invalid verification token", status_code=400)

        user.mark_verified()
        self._commit_with_event(user, "verified")
        return user

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for an active account.

        Returns the token (None for unknown emails); it also travels to the
        mailer in a ``PasswordResetRequestedMessage``.
        """
        user = self.users.find_active_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email", extra={"action": "password_reset"})
            return None

        token = user.generate_reset_password_token(settings.RESET_PASSWORD_EXPIRE_HOURS)
        self.bus.dispatch(
            self.db,
            PasswordResetRequestedMessage(
                user_id=user.id,
                email=user.email,
                token=token,
                expires_at=user.reset_password_token_expires_at,
            ),
        )
        self.db.commit()
        return token

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.users.find_by_reset_password_token(token)
        if user is None or not user.is_reset_password_token_valid():
            raise InvalidToken("Invalid or expired reset token", status_code=400)

        user.set_password_hash(self.hasher.hash(new_password))
        user.clear_reset_password_token()
        self._revoke_refresh_tokens(user.id, utcnow())
        self._commit_with_event(user, "password_reset")
        return user

    def soft_delete(self, user: User) -> User:
        """Deactivate and mark deleted; outstanding refresh tokens stop working."""
        user.soft_delete()
        self._revoke_refresh_tokens(user.id, utcnow())
        self._commit_with_event(user, "deleted")
        return user

    def restore(self, user: User) -> User:
        user.restore()
        self._commit_with_event(user, "restored")
        return user

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_tokens(self, user: User, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        token, expires_in = create_user_token(user)
        raw_refresh = secrets.token_hex(32)
        self.db.add(
            RefreshToken(
                token_hash=hash_refresh_token(raw_refresh),
                user_id=user.id,
                created_at=now,
                expires_at=now + timedelta(seconds=settings.JWT_REFRESH_EXPIRE_SECONDS),
            )
        )
        return {"token": token, "refresh_token": raw_refresh, "expires_in": expires_in}

    def _revoke_refresh_tokens(self, user_id: int, now: datetime) -> int:
        return (
            self.db.query(RefreshToken)
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.used_at.is_(None),
                RefreshToken.revoked_at.is_(None),
            )
            .update({RefreshToken.revoked_at: now}, synchronize_session=False)
        )

    def _commit_with_event(self, user: User, change: str) -> None:
        try:
            self.bus.dispatch(self.db, UserUpdatedMessage(user_id=user.id, email=user.email, change=change))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"User {user.id} {change}", extra={"user_id": user.id, "action": change})
