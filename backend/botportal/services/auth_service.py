"""
Authentication service.

Resolves the caller identity (user id and tenant memberships) from an HS256
JWT bearer token.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from datetime import timedelta
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from ..config import settings
from ..exceptions import Unauthenticated
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


@dataclass
class CallerIdentity:
    """
    Authenticated caller.

    ``tenants`` lists the caller's tenant memberships in order. None means
    memberships were not asserted (anonymous development mode) and the
    tenant must be named explicitly.
    """
    user_id: str
    tenants: Optional[List[str]] = field(default=None)

    @property
    def default_tenant(self) -> Optional[str]:
        if self.tenants:
            return self.tenants[0]
        return None

    def is_member(self, tenant_id: str) -> bool:
        if self.tenants is None:
            return True
        return tenant_id in self.tenants


class AuthService:
    """Handles token issuance and verification."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        expiration_hours: Optional[int] = None
    ):
        self.secret_key = secret_key or settings.secret_key.get_secret_value()
        self.algorithm = algorithm or settings.jwt_algorithm
        self.expiration_hours = expiration_hours or settings.jwt_expiration_hours

    def create_token(
        self,
        user_id: str,
        tenants: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a JWT token.

        Args:
            user_id: User identifier
            tenants: Tenant memberships, first one is the default tenant
            metadata: Additional claims

        Returns:
            JWT token string
        """
        now = utcnow()
        payload = {
            "sub": user_id,
            "tenants": list(tenants or []),
            "exp": now + timedelta(hours=self.expiration_hours),
            "iat": now,
            "type": "access"
        }

        if metadata:
            payload.update(metadata)

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

        logger.debug(f"Created token for user: {user_id}")
        return token

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify and decode a JWT token.

        Raises:
            Unauthenticated: If token is invalid or expired
        """
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])

        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token has expired")

        except jwt.InvalidTokenError as e:
            raise Unauthenticated(f"Invalid token: {str(e)}")

    def identity_from_token(self, token: str) -> CallerIdentity:
        payload = self.verify_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthenticated("Invalid token payload")

        tenants = payload.get("tenants") or []
        if not isinstance(tenants, list):
            tenants = [tenants]

        return CallerIdentity(user_id=str(user_id), tenants=[str(t) for t in tenants])

    def anonymous_identity(self, user_id: Optional[str]) -> Optional[CallerIdentity]:
        """Identity taken from a request field, when that mode is enabled."""
        if not settings.allow_anonymous_user_id or not user_id:
            return None
        return CallerIdentity(user_id=user_id, tenants=None)


# Global auth service instance
auth_service = AuthService()


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Optional[CallerIdentity]:
    """
    Get current caller from the bearer token.

    Returns:
        CallerIdentity if a token was sent, None otherwise

    Raises:
        Unauthenticated: If a token was sent but is invalid
    """
    if not credentials:
        return None

    return auth_service.identity_from_token(credentials.credentials)
