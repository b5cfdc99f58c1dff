"""
Service graph + auth helpers for tests.

- `services`: `Services` wired to the SQLite store, mock Redis, `FakeBackend`,
  a canned-policy issuer, the fake clock and the recording sleeper
- `make_token` / `auth_headers`: HS256 request tokens the API accepts
- `ctx_for`: an explicit `RequestContext` for service-level tests
"""

from datetime import timedelta
from typing import Dict, Iterable, Optional

import pytest
from jose import jwt

from vidgate.api.deps import ClaimsCapabilityOracle
from vidgate.services.access import Principal, RequestContext
from vidgate.services.container import Services
from vidgate.services.grants import CannedPolicyIssuer
from vidgate.utils.clock import epoch, utcnow
from tests.fixtures.settings import TEST_JWT_SECRET

__all__ = [
    "services",
    "issuer",
    "make_token",
    "auth_headers",
    "principal",
    "ctx_for",
    "CDN_DOMAIN",
    "KEY_PAIR_ID",
]

CDN_DOMAIN = "cdn.example.test"
KEY_PAIR_ID = "K2JCJMDEHXQW5F"


def principal(user_id: int, *caps: str, admin: bool = False) -> Principal:
    return Principal(user_id=user_id, capabilities=frozenset(caps), is_admin=admin)


def ctx_for(user: Principal, store) -> RequestContext:
    return RequestContext(current_user=user, capability_oracle=ClaimsCapabilityOracle(), record_store=store)


def make_token(
    user_id: int,
    caps: Iterable[str] = (),
    *,
    admin: bool = False,
    clock=None,
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
) -> str:
    now = (clock or utcnow)()
    claims = {
        "sub": str(user_id),
        "caps": list(caps),
        "exp": epoch(now + timedelta(seconds=expires_in)),
    }
    if admin:
        claims["admin"] = True
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id: int, caps: Iterable[str] = (), *, admin: bool = False, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {make_token(user_id, caps, admin=admin)}"}
    headers.update(extra or {})
    return headers


@pytest.fixture()
def issuer(rsa_private_pem, clock) -> CannedPolicyIssuer:
    return CannedPolicyIssuer(
        domain=CDN_DOMAIN,
        key_pair_id=KEY_PAIR_ID,
        private_key_pem=rsa_private_pem,
        clock=clock,
    )


@pytest.fixture()
def services(settings, session_maker, redis_client, fake_backend, issuer, clock, sleeper) -> Services:
    return Services(
        settings,
        session_maker=session_maker,
        redis=redis_client,
        backend=fake_backend,
        issuer=issuer,
        clock=clock,
        sleep=sleeper,
    )
