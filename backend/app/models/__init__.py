"""Database models"""
from app.models.messenger_message import MessengerMessage
from app.models.refresh_token import RefreshToken
from app.models.revoked_token import RevokedToken
from app.models.user import User

__all__ = ["MessengerMessage", "RefreshToken", "RevokedToken", "User"]
