from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import (
    TokenClaimsInvalid,
    TokenExpired,
    TokenMalformed,
    TokenSignatureMismatch,
)
from iamcore.storage.models import (
    AccessTokenClaims,
    Role,
    RoleScope,
    Tenant,
    User,
    utcnow,
)

logger = get_logger(__name__)

ALGORITHM = "HS256"

_STR_CLAIMS = ("sub", "tenant_id", "role", "iss")
_INT_CLAIMS = ("iat", "exp")


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_int(value: Any) -> bool:
    # bool is an int subclass; a JSON true must not pass as a timestamp
    return isinstance(value, int) and not isinstance(value, bool)


class TokenIssuer:
    """Issues and verifies HS256 access tokens.

    Tokens are self-contained: verification needs only the shared secret,
    never the store. Every rejection raises a subclass of ``InvalidToken``
    so the cause is visible in logs while callers see one outcome.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.ttl_seconds = settings.access_token_ttl_seconds
        self.super_admin_role = settings.super_admin_role
        self._clock = clock

    def primary_role(self, roles: Iterable[Role]) -> str:
        """Pick the single role embedded in the token.

        Order: the super-admin role, then SYSTEM-scope roles, then by name.
        Deterministic for a given role set regardless of assignment order.
        """
        ranked = sorted(
            roles,
            key=lambda r: (
                r.name != self.super_admin_role,
                r.scope != RoleScope.SYSTEM,
                r.name,
            ),
        )
        return ranked[0].name if ranked else ""

    def is_super_admin(self, roles: Iterable[Role]) -> bool:
        return any(r.name == self.super_admin_role for r in roles)

    def build_claims(
        self,
        user: User,
        tenant: Optional[Tenant],
        roles: Iterable[Role],
        permissions: Iterable[str],
    ) -> AccessTokenClaims:
        roles = list(roles)
        iat = int(self._clock().timestamp())
        return AccessTokenClaims(
            sub=user.id,
            tenant_id=tenant.id if tenant else "",
            role=self.primary_role(roles),
            permissions=tuple(sorted(set(permissions))),
            is_super_admin=self.is_super_admin(roles),
            iat=iat,
            exp=iat + self.ttl_seconds,
            iss=self.issuer,
        )

    def issue(
        self,
        user: User,
        tenant: Optional[Tenant],
        roles: Iterable[Role],
        permissions: Iterable[str],
    ) -> str:
        return self.encode(self.build_claims(user, tenant, roles, permissions))

    def encode(self, claims: AccessTokenClaims) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def verify(self, token: str) -> AccessTokenClaims:
        if not isinstance(token, str):
            raise TokenMalformed()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformed()

        # Deeply nested JSON overflows the decoder before any type check
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, RecursionError):
            raise TokenMalformed()
        # Fixed algorithm; anything else (including "none") is refused outright
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformed()

        # Compare the canonical encodings so non-canonical base64 cannot slip through
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureMismatch()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, RecursionError):
            raise TokenMalformed()

        claims = self._parse_claims(payload)
        if claims.iss != self.issuer:
            raise TokenClaimsInvalid()
        if self._clock().timestamp() >= claims.exp:
            raise TokenExpired()
        return claims

    @staticmethod
    def _parse_claims(payload: Any) -> AccessTokenClaims:
        if not isinstance(payload, dict):
            raise TokenClaimsInvalid()
        for name in _STR_CLAIMS:
            if not isinstance(payload.get(name), str):
                raise TokenClaimsInvalid()
        for name in _INT_CLAIMS:
            if not _is_int(payload.get(name)):
                raise TokenClaimsInvalid()
        permissions = payload.get("permissions")
        if not isinstance(permissions, list) or not all(
            isinstance(p, str) for p in permissions
        ):
            raise TokenClaimsInvalid()
        if not isinstance(payload.get("is_super_admin"), bool):
            raise TokenClaimsInvalid()
        if not payload["sub"]:
            raise TokenClaimsInvalid()
        return AccessTokenClaims(
            sub=payload["sub"],
            tenant_id=payload["tenant_id"],
            role=payload["role"],
            permissions=tuple(permissions),
            is_super_admin=payload["is_super_admin"],
            iat=payload["iat"],
            exp=payload["exp"],
            iss=payload["iss"],
        )
