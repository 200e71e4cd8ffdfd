"""Database models package."""

from .base import Base
from .chat import Message, User

__all__ = [
    "Base",
    "User",
    "Message",
]
