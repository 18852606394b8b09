from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from iamcore.logging import get_logger
from iamcore.service.errors import Forbidden, InvalidToken, Unauthorized
from iamcore.service.tokens import TokenIssuer
from iamcore.storage.models import AccessTokenClaims

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    tenant_id: Optional[str]
    role: str
    permissions: Tuple[str, ...]
    is_super_admin: bool
    claims: AccessTokenClaims

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationGate:
    """Stateless request guard: verify the bearer token, then check the role.

    Only the token issuer is consulted; no store lookups happen here.
    """

    def __init__(self, issuer: TokenIssuer) -> None:
        self.issuer = issuer

    def authorize(
        self, authorization: Optional[str], required_roles: Iterable[str] = ()
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise Unauthorized("missing bearer token")
        try:
            claims = self.issuer.verify(token)
        except InvalidToken as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise Unauthorized("invalid token") from exc

        allowed = frozenset(required_roles)
        if allowed and claims.role not in allowed:
            logger.info(
                "authorization_denied",
                user_id=claims.sub,
                role=claims.role,
                required=sorted(allowed),
            )
            raise Forbidden("insufficient role")

        return AuthContext(
            user_id=claims.sub,
            tenant_id=claims.tenant_id or None,
            role=claims.role,
            permissions=claims.permissions,
            is_super_admin=claims.is_super_admin,
            claims=claims,
        )
