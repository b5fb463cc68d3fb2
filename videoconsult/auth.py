"""
Bearer credential resolution.

Tokens are issued by the identity service; we only verify them and pull
out who is calling and in which role.
"""

import time
from typing import Optional

import jwt
import structlog

from videoconsult.video.exceptions import UnauthorizedError
from videoconsult.video.models import Caller, CallerRole

logger = structlog.get_logger("auth")


def parse_bearer(header: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer ...`` header."""
    if not header or not header.startswith("Bearer "):
        raise UnauthorizedError("Access denied. No token provided.")
    token = header[len("Bearer "):].strip()
    if not token:
        raise UnauthorizedError("Access denied. No token provided.")
    return token


class IdentityResolver:
    """Verifies HS256 bearer tokens and resolves them to a Caller."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        if not secret:
            raise ValueError("JWT secret not configured")
        self.secret = secret
        self.algorithm = algorithm

    def resolve(self, token: str) -> Caller:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.warning("token_expired")
            raise UnauthorizedError("Token expired.")
        except jwt.InvalidTokenError as exc:
            logger.warning("token_invalid", error=str(exc))
            raise UnauthorizedError("Invalid token.")

        caller_id = claims.get("userId") or claims.get("user_id") or claims.get("sub")
        if not caller_id:
            raise UnauthorizedError("Invalid token.")
        try:
            role = CallerRole(claims.get("role", ""))
        except ValueError:
            logger.warning("token_unknown_role", caller_id=caller_id, role=claims.get("role"))
            raise UnauthorizedError("Invalid token.")

        return Caller(caller_id=str(caller_id), role=role)

    def issue(self, caller_id: str, role: CallerRole, ttl: int = 3600) -> str:
        """Sign a token for ``caller_id`` (development tooling and tests)."""
        now = int(time.time())
        payload = {"userId": caller_id, "role": role.value, "iat": now, "exp": now + ttl}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)
