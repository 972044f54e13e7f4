"""
Authentication helpers for the API service.
"""

from .tokens import AuthContext, TokenAuthenticator, extract_bearer_token

__all__ = [
    "AuthContext",
    "TokenAuthenticator",
    "extract_bearer_token",
]
