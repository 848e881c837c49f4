"""
Authentication middleware with local Supabase JWT validation
"""
import jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from typing import Optional
import os
import logging
from dotenv import load_dotenv

from models.user import Account

load_dotenv()

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"

# PyJWT failure -> client-facing detail; anything else is "Invalid token"
_TOKEN_ERRORS = (
    (jwt.ExpiredSignatureError, "Token has expired"),
    (jwt.InvalidAudienceError, "Invalid token audience"),
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class AuthMiddleware:
    def __init__(self, jwt_secret: Optional[str] = None):
        self.jwt_secret = jwt_secret or os.getenv("SUPABASE_JWT_SECRET")
        if not self.jwt_secret:
            raise ValueError("SUPABASE_JWT_SECRET environment variable is required")

    async def verify_token(self, credentials: HTTPAuthorizationCredentials) -> dict:
        """
        Validate a Supabase access token with the project's JWT secret and
        return the caller as {"id", "email"}
        """
        try:
            claims = jwt.decode(credentials.credentials, self.jwt_secret,
                                algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
        except jwt.InvalidTokenError as e:
            for error_type, detail in _TOKEN_ERRORS:
                if isinstance(e, error_type):
                    raise _unauthorized(detail)
            logger.warning(f"Rejected token: {e}")
            raise _unauthorized("Invalid token")

        if not claims.get("sub"):
            raise _unauthorized("Invalid token: missing user information")

        return Account(id=claims["sub"], email=claims.get("email")).model_dump()


# Created on first use so importing the app does not require the secret
_auth_middleware = None


def get_auth_middleware() -> AuthMiddleware:
    global _auth_middleware
    if _auth_middleware is None:
        _auth_middleware = AuthMiddleware()
    return _auth_middleware
