"""Core utilities for the RelayChat backend."""

from .security import ScopedTokenError, create_scoped_token, verify_scoped_token

__all__ = ["ScopedTokenError", "create_scoped_token", "verify_scoped_token"]
