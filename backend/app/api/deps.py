"""API dependencies for service wiring, authentication and authorization.

Collaborators (message bus, revocation cache) live on ``app.state`` and are
handed to the service explicitly; tests swap them through
``app.dependency_overrides``.

Authentication is ``Authorization: Bearer <JWT>``: the signature and expiry
are checked first, then the revocation cache, then the user must still be
active.
"""
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, sessionmaker

from app.database import SessionLocal, get_db
from app.exceptions import Forbidden, InvalidToken
from app.messenger.bus import MessageBus
from app.models.user import User
from app.services.auth_service import AuthService
from app.utils.revocation import RevocationCache

_bearer_scheme = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

def get_revocation_cache(request: Request) -> RevocationCache:
    return request.app.state.revocation_cache


def get_message_bus(request: Request) -> MessageBus:
    return request.app.state.message_bus


def get_session_factory() -> sessionmaker:
    """Session factory for work that outlives the request session (streaming)."""
    return SessionLocal


def get_auth_service(
    db: Session = Depends(get_db),
    bus: MessageBus = Depends(get_message_bus),
    revocation_cache: RevocationCache = Depends(get_revocation_cache),
) -> AuthService:
    return AuthService(db=db, bus=bus, revocation_cache=revocation_cache)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Optional[str]:
    """Raw bearer token, or None when the header is absent or not Bearer."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        return None
    return credentials.credentials


def get_current_user(
    token: Optional[str] = Depends(get_bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """Require a valid, unrevoked session token and return its user."""
    if not token:
        raise InvalidToken("Authorization: Bearer <token> header required")
    return service.authenticate(token)


# ---------------------------------------------------------------------------
# Role checks
# ---------------------------------------------------------------------------

def require_role(role: str) -> Callable:
    """Return a FastAPI dependency that requires the caller to hold ``role``.

    Usage::

        @router.get("/sensitive")
        def endpoint(user: User = Depends(require_role("ROLE_ADMIN"))):
            ...
    """

    def _role_dep(user: User = Depends(get_current_user)) -> User:
        if not user.has_role(role):
            raise Forbidden(f"Role '{role}' required")
        return user

    # Give FastAPI a unique name so it doesn't collapse distinct dependencies
    _role_dep.__name__ = f"require_role_{role.lower()}"
    return _role_dep
