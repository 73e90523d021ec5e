"""Message handlers and the type -> handler registry"""
from typing import Callable, Dict, Optional, Type

from app.messenger.messages import (
    Message,
    PasswordResetRequestedMessage,
    UserCreatedMessage,
    UserUpdatedMessage,
)
from app.utils.logger import logger

Handler = Callable[[Message], None]


class HandlerRegistry:
    """Maps a message class name (the ``type`` header) to its handler.

    Handlers may run more than once for the same message (at-least-once
    delivery) and must tolerate that.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._types: Dict[str, Type[Message]] = {}

    def register(self, message_cls: Type[Message], handler: Handler) -> None:
        self._handlers[message_cls.__name__] = handler
        self._types[message_cls.__name__] = message_cls

    def handles(self, message_cls: Type[Message]) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(message_cls, handler)
            return handler

        return decorator

    def resolve(self, type_name: Optional[str]) -> Optional[Handler]:
        return self._handlers.get(type_name)

    @property
    def message_types(self) -> Dict[str, Type[Message]]:
        return dict(self._types)


def handle_user_created(message: UserCreatedMessage) -> None:
    # Hook point for welcome mail, profile provisioning in other services, etc.
    logger.info(
        "User created event processed",
        extra={"user_id": message.user_id, "email": message.email, "action": "user.created"},
    )


def handle_user_updated(message: UserUpdatedMessage) -> None:
    logger.info(
        f"User updated event processed ({message.change})",
        extra={"user_id": message.user_id, "email": message.email, "action": "user.updated"},
    )


def handle_password_reset_requested(message: PasswordResetRequestedMessage) -> None:
    # The token itself stays out of the logs
    logger.info(
        "Password reset requested",
        extra={"user_id": message.user_id, "email": message.email, "action": "user.password_reset"},
    )


def default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(UserCreatedMessage, handle_user_created)
    registry.register(UserUpdatedMessage, handle_user_updated)
    registry.register(PasswordResetRequestedMessage, handle_password_reset_requested)
    return registry
