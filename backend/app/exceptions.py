"""Domain exceptions.

Every error the auth flows can raise derives from :class:`IdentityError`, which
carries the HTTP status and the machine-readable ``error`` code rendered by the
exception handler in ``app.main``.
"""


class IdentityError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 400
    error: str = "bad_request"
    default_message: str = "Bad request"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class DuplicateEmail(IdentityError):
    status_code = 400
    error = "duplicate_email"
    default_message = "User already exists"


class InvalidCredentials(IdentityError):
    status_code = 401
    error = "invalid_credentials"
    default_message = "Invalid credentials"


class InvalidToken(IdentityError):
    """Bad signature, expired, malformed, or an unknown/used one-time token."""

    status_code = 401
    error = "invalid_token"
    default_message = "Invalid or expired token"

    def __init__(self, message: str = None, status_code: int = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class RevokedToken(IdentityError):
    status_code = 401
    error = "revoked_token"
    default_message = "Token has been revoked"


class Forbidden(IdentityError):
    status_code = 403
    error = "forbidden"
    default_message = "Insufficient role"


class DeliveryFailure(Exception):
    """A message handler failed (or none was registered) during dispatch.

    Never reaches an HTTP client: the dispatcher catches it and reschedules the
    message.
    """

    def __init__(self, message_id: int, message_type: str, cause: BaseException = None):
        self.message_id = message_id
        self.message_type = message_type
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Delivery of message {message_id} ({message_type}) failed{detail}")


class UserNotFound(IdentityError):
    status_code = 404
    error = "user_not_found"
    default_message = "User not found"
