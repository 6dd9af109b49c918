"""
HS256 tokens: user bearer tokens checked at the HTTP edge, and short-lived
internal tokens the ledger presents to the referral service.
"""
import time
from typing import Dict, Optional

import jwt

from common.settings import settings

ALGO = "HS256"
ADMIN_SCOPE = "admin"
ADMIN_ROLES = ("admin", "superadmin")


class InvalidCredentials(Exception):
    pass


def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)


def mint_internal_jwt(aud: str) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": "share-ledger-service",
        "aud": aud,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)


def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "iss", "sub"]},
    )


def claims_from_authorization(header: Optional[str]) -> Dict:
    """Claims of an ``Authorization: Bearer <jwt>`` header."""
    scheme, _, token = (header or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise InvalidCredentials("missing bearer token")
    try:
        return verify_token(token.strip())
    except jwt.InvalidTokenError as e:
        raise InvalidCredentials(f"invalid token: {e}")


def is_admin(claims: Dict) -> bool:
    # scope claim from the auth service; older tokens carry isAdmin or role
    return (claims.get("scope") == ADMIN_SCOPE
            or claims.get("isAdmin") is True
            or claims.get("role") in ADMIN_ROLES)
