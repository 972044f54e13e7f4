"""
Bearer token authentication for the API service.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context
from ..models import UserRole


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller derived from a verified access token."""

    user_id: int
    email: str
    role: str
    claims: Dict[str, Any]

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an ``Authorization: Bearer`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    return token or None


class TokenAuthenticator:
    """Validates HS256 access tokens issued by the Fixia auth endpoints."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.logger = get_logger("api.auth")

    def decode(self, token: str) -> AuthContext:
        """Verify ``token`` and build its AuthContext."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as exc:
            self.logger.info("Token rejected", error=str(exc))
            raise AuthenticationError("Invalid or expired token") from exc

        user_id = claims.get("id")
        if user_id is None:
            raise AuthenticationError("Token missing user id")

        try:
            user_id = int(user_id)
        except (TypeError, ValueError) as exc:
            raise AuthenticationError("Token user id is not numeric") from exc

        return AuthContext(
            user_id=user_id,
            email=claims.get("email", ""),
            role=claims.get("user_type", UserRole.EXPLORER.value),
            claims=claims,
        )

    async def authenticate(self, request: Request) -> AuthContext:
        """Authenticate the request using its Authorization bearer token."""
        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            raise AuthenticationError("Missing or invalid Authorization header")

        context = self.decode(token)

        request.state.user_info = {
            "user_id": context.user_id,
            "email": context.email,
            "role": context.role,
        }
        request.state.auth_context = context
        set_user_context(str(context.user_id), context.role)
        return context

    def require(self, *roles: UserRole):
        """FastAPI dependency authenticating the caller and checking its role.

        Admins pass every role check.
        """
        allowed = {role.value for role in roles}

        async def dependency(request: Request) -> AuthContext:
            context = await self.authenticate(request)
            if allowed and context.role not in allowed and not context.is_admin:
                raise AuthorizationError(
                    "Insufficient role for this resource",
                    details={"role": context.role, "required": sorted(allowed)},
                )
            return context

        return dependency
