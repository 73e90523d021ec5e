"""JWT utilities: RS256 keypair management, user token signing, verification, and JWKS"""
import base64
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwt

from app.config import settings
from app.exceptions import InvalidToken
from app.utils.logger import logger

# Claims that must never reach a user token
_STRIPPED_CLAIMS = ("username",)

_REQUIRED_CLAIMS = ("sub", "exp", "user_id", "email", "roles")


# ---------------------------------------------------------------------------
# Keypair management
# ---------------------------------------------------------------------------

_private_key: Any = None   # cryptography RSAPrivateKey object
_public_key: Any = None    # cryptography RSAPublicKey object


def _load_keypair() -> None:
    """Load or auto-generate the RSA keypair.

    Reads JWT_PRIVATE_KEY from settings (PEM string).
    If absent, generates a fresh RSA-2048 keypair for this process; every
    token is invalidated on restart until a key is configured.
    """
    global _private_key, _public_key

    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    if settings.JWT_PRIVATE_KEY:
        pem = settings.JWT_PRIVATE_KEY.encode()
        _private_key = serialization.load_pem_private_key(pem, password=None)
        _public_key = _private_key.public_key()
        logger.info("JWT keypair loaded from JWT_PRIVATE_KEY setting")
    else:
        _private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        _public_key = _private_key.public_key()
        logger.warning(
            "JWT_PRIVATE_KEY not set — auto-generated RSA-2048 keypair for this process. "
            "All tokens will be invalidated on restart."
        )


def get_private_key() -> Any:
    """Return the loaded private key, initialising on first call."""
    if _private_key is None:
        _load_keypair()
    return _private_key


def get_public_key() -> Any:
    """Return the loaded public key, initialising on first call."""
    if _public_key is None:
        _load_keypair()
    return _public_key


# ---------------------------------------------------------------------------
# Token creation
# ---------------------------------------------------------------------------

def build_user_claims(user, now: Optional[int] = None, expires_in: Optional[int] = None) -> Dict[str, Any]:
    """Claim set for a user session token.

    ``sub`` is the user id; ``user_id``, ``email`` and ``roles`` are the
    custom claims consumers read. A generic ``username`` claim is never
    emitted.
    """
    now = now if now is not None else int(datetime.now(timezone.utc).timestamp())
    expires_in = expires_in if expires_in is not None else settings.JWT_ACCESS_EXPIRE_SECONDS

    claims: Dict[str, Any] = {
        "sub": str(user.id),
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": now + expires_in,
        "user_id": int(user.id),
        "email": user.email,
        "roles": user.get_roles(),
    }
    for claim in _STRIPPED_CLAIMS:
        claims.pop(claim, None)
    return claims


def create_user_token(user) -> Tuple[str, int]:
    """Sign a session token for ``user``.

    Returns:
        (token, expires_in seconds)
    """
    claims = build_user_claims(user)
    headers = {"kid": settings.JWT_KEY_ID} if settings.JWT_KEY_ID else None

    token = jwt.encode(claims, get_private_key(), algorithm=settings.JWT_ALGORITHM, headers=headers)
    return token, settings.JWT_ACCESS_EXPIRE_SECONDS


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------

def decode_user_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry of a session token and return its claims.

    Does NOT consult the revocation cache; callers check that separately.

    Raises:
        InvalidToken: bad signature, expired, malformed, or missing claims.
    """
    try:
        payload = jwt.decode(token, get_public_key(), algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        logger.debug(f"JWT decode failed: {exc}")
        raise InvalidToken()

    missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
    if missing:
        raise InvalidToken(f"Token is missing claims: {', '.join(missing)}")

    return payload


# ---------------------------------------------------------------------------
# JWKS
# ---------------------------------------------------------------------------

def get_jwks() -> Dict[str, Any]:
    """Return the public key in JWKS format for third-party token verification."""
    public_key = get_public_key()
    pub_numbers = public_key.public_numbers()

    def _to_base64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    key_entry: Dict[str, Any] = {
        "kty": "RSA",
        "use": "sig",
        "alg": settings.JWT_ALGORITHM,
        "n": _to_base64url(pub_numbers.n),
        "e": _to_base64url(pub_numbers.e),
    }

    if settings.JWT_KEY_ID:
        key_entry["kid"] = settings.JWT_KEY_ID

    return {"keys": [key_entry]}
