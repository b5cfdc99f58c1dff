from __future__ import annotations

"""
Vidgate — request dependencies
==============================
- Bearer token extraction (case-insensitive scheme)
- JWT decode (python-jose, HS*) → `Principal`
- `ClaimsCapabilityOracle`: answers submit / grade / admin from token claims
- `get_request_context`: the explicit `RequestContext` every handler passes down

Token claims
------------
    sub    : user id (integer, required)
    caps   : list of capability strings, e.g. ``submit:42``, ``grade:*``
    admin  : boolean (or ``"admin"`` in ``roles``)
"""

import logging
from typing import Any, Dict, Iterable

from fastapi import Depends, HTTPException, Request, status
from jose import ExpiredSignatureError, JWTError, jwt

from vidgate.core.config import Settings
from vidgate.services.access import Principal, RequestContext
from vidgate.services.container import Services

logger = logging.getLogger("vidgate.auth")

__all__ = [
    "get_services",
    "get_bearer_token",
    "decode_token",
    "principal_from_claims",
    "get_current_principal",
    "ClaimsCapabilityOracle",
    "get_request_context",
]


# ─────────────────────────────────────────────────────────────
# 🧰 Services
# ─────────────────────────────────────────────────────────────
def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready.")
    return services


# ─────────────────────────────────────────────────────────────
# 📥 Bearer token
# ─────────────────────────────────────────────────────────────
def get_bearer_token(request: Request) -> str:
    """Extract a Bearer token from the `Authorization` header (case-insensitive)."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header.")

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.warning("Malformed Authorization header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization scheme.")
    return parts[1].strip()


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    """Verify signature and `exp`; return the claims."""
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
        )
    except ExpiredSignatureError:
        logger.info("Token expired.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired.")
    except JWTError as e:
        logger.warning("JWT decoding failed: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")


def principal_from_claims(claims: Dict[str, Any]) -> Principal:
    sub = claims.get("sub") or claims.get("user_id")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing user ID.")
    if user_id <= 0:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing user ID.")

    caps = claims.get("caps") or []
    if isinstance(caps, str):
        caps = caps.split()
    roles = claims.get("roles") or []
    is_admin = bool(claims.get("admin")) or "admin" in roles
    return Principal(user_id=user_id, capabilities=frozenset(str(c) for c in caps), is_admin=is_admin)


async def get_current_principal(request: Request, services: Services = Depends(get_services)) -> Principal:
    claims = decode_token(get_bearer_token(request), services.settings)
    return principal_from_claims(claims)


# ─────────────────────────────────────────────────────────────
# 🔐 Capability oracle (claims based)
# ─────────────────────────────────────────────────────────────
class ClaimsCapabilityOracle:
    """
    Capabilities come from the token: ``submit:{assignment_id}`` or ``submit:*``,
    ``grade:{assignment_id}`` or ``grade:*``. Admins may submit anywhere;
    grading is answered from claims alone so admin access is reported as `admin`.
    """

    @staticmethod
    def _holds(caps: Iterable[str], action: str, assignment_id: int) -> bool:
        caps = set(caps)
        return f"{action}:{assignment_id}" in caps or f"{action}:*" in caps

    async def can_submit(self, user: Principal, assignment_id: int) -> bool:
        return user.is_admin or self._holds(user.capabilities, "submit", assignment_id)

    async def can_grade(self, user: Principal, assignment_id: int) -> bool:
        return self._holds(user.capabilities, "grade", assignment_id)

    async def is_admin(self, user: Principal) -> bool:
        return user.is_admin


_ORACLE = ClaimsCapabilityOracle()


async def get_request_context(
    principal: Principal = Depends(get_current_principal),
    services: Services = Depends(get_services),
) -> RequestContext:
    return RequestContext(current_user=principal, capability_oracle=_ORACLE, record_store=services.store)
