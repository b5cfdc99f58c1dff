from __future__ import annotations

"""
Signing primitives for time-limited media grants.

Two schemes
-----------
1. **Canned policy** (CloudFront): the policy document
   ``{"Statement":[{"Resource":R,"Condition":{"DateLessThan":{"AWS:EpochTime":T}}}]}``
   is serialized compactly, signed with RSA-SHA1 (PKCS#1 v1.5), base64-encoded
   and then remapped ``+ → -``, ``= → _``, ``/ → ~``.
2. **Playback token** (hosted video): an RS256 JWT with ``kid`` header and
   ``sub``/``kid``/``exp`` (+ optional ``viewer``) claims.

Both are deterministic: PKCS#1 v1.5 has no random padding and the JWT carries no
``iat``/``jti``, so the same inputs always yield the same string.
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from jose import JWTError, jwt

from vidgate.core.config import normalize_pem
from vidgate.core.exceptions import KeyMaterialError, NotConfigured, SignError

logger = logging.getLogger(__name__)

PemLike = Union[str, bytes]
KeyLike = Union[rsa.RSAPrivateKey, PemLike]

_CF_ENCODE = str.maketrans({"+": "-", "=": "_", "/": "~"})
_CF_DECODE = str.maketrans({"-": "+", "_": "=", "~": "/"})

PLAYBACK_TOKEN_ALGORITHM = "RS256"


# ─────────────────────────────────────────────────────────────────────────────
# 🔑 Key material
# ─────────────────────────────────────────────────────────────────────────────

def pem_text(raw: Optional[PemLike]) -> str:
    """
    Return PEM text from env-style input.

    Accepts plain PEM, ``\\n``-escaped single-line PEM, or the whole PEM
    base64-encoded (the form hosted-video APIs hand signing keys out in).
    """
    if raw is None:
        return ""
    s = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    s = normalize_pem(s)
    if s and "-----BEGIN" not in s:
        try:
            decoded = base64.b64decode(s, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return s
        if "-----BEGIN" in decoded:
            return normalize_pem(decoded)
    return s


def load_private_key(raw: Optional[PemLike]) -> rsa.RSAPrivateKey:
    """Parse an RSA private key; `NotConfigured` when absent, `KeyMaterialError` when unparsable."""
    text = pem_text(raw)
    if not text:
        raise NotConfigured("Signing key is not configured")
    try:
        key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyMaterialError("Signing key could not be parsed") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyMaterialError("Signing key must be an RSA private key")
    return key


def public_pem(private_key: rsa.RSAPrivateKey) -> str:
    """SubjectPublicKeyInfo PEM for the given private key."""
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _as_key(key: KeyLike) -> rsa.RSAPrivateKey:
    return key if isinstance(key, rsa.RSAPrivateKey) else load_private_key(key)


# ─────────────────────────────────────────────────────────────────────────────
# 📜 Canned policy
# ─────────────────────────────────────────────────────────────────────────────

def canned_policy(resource: str, expires_at: int) -> bytes:
    """Exact policy bytes that get signed (no whitespace, slashes unescaped)."""
    doc = {
        "Statement": [
            {
                "Resource": resource,
                "Condition": {"DateLessThan": {"AWS:EpochTime": int(expires_at)}},
            }
        ]
    }
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


def cloudfront_b64(raw: bytes) -> str:
    """Standard base64, then remap to CloudFront's query-safe alphabet."""
    return base64.b64encode(raw).decode("ascii").translate(_CF_ENCODE)


def cloudfront_b64decode(value: str) -> bytes:
    return base64.b64decode(value.translate(_CF_DECODE))


def sign_canned_policy(resource: str, expires_at: int, private_key: KeyLike) -> str:
    """Sign the canned policy for `resource` and return the CloudFront-encoded signature."""
    key = _as_key(private_key)
    try:
        raw = key.sign(canned_policy(resource, expires_at), padding.PKCS1v15(), hashes.SHA1())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SignError("Canned policy signing failed") from e
    return cloudfront_b64(raw)


def verify_canned_policy(
    resource: str,
    expires_at: int,
    signature: str,
    public_key: rsa.RSAPublicKey,
    *,
    now: datetime,
) -> bool:
    """Edge-style check: signature matches and `now` is before the expiry."""
    if now.timestamp() >= int(expires_at):
        return False
    try:
        public_key.verify(
            cloudfront_b64decode(signature),
            canned_policy(resource, expires_at),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
    except (InvalidSignature, binascii.Error, ValueError):
        return False
    return True


# ─────────────────────────────────────────────────────────────────────────────
# 🎟️ Playback token (RS256 JWT)
# ─────────────────────────────────────────────────────────────────────────────

def sign_playback_token(
    video_id: str,
    expires_at: int,
    *,
    key_id: str,
    private_key: PemLike,
    viewer_id: Optional[str] = None,
) -> str:
    """Mint a self-describing playback token bound to `video_id` and `expires_at`."""
    if not key_id:
        raise NotConfigured("Playback signing key id is not configured")
    text = pem_text(private_key)
    load_private_key(text)  # surface parse errors as KeyMaterialError
    claims: Dict[str, Any] = {"sub": video_id, "kid": key_id, "exp": int(expires_at)}
    if viewer_id is not None:
        claims["viewer"] = str(viewer_id)
    try:
        return jwt.encode(claims, text, algorithm=PLAYBACK_TOKEN_ALGORITHM, headers={"kid": key_id})
    except JWTError as e:
        raise SignError("Playback token signing failed") from e


def verify_playback_token(token: str, public_key_pem: str, *, now: datetime) -> Optional[Dict[str, Any]]:
    """Return the claims while `now < exp`; `None` for bad signatures or expired tokens."""
    try:
        claims = jwt.decode(
            token,
            public_key_pem,
            algorithms=[PLAYBACK_TOKEN_ALGORITHM],
            options={"verify_exp": False, "verify_aud": False},
        )
    except JWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, int) or now.timestamp() >= exp:
        return None
    return claims


def token_expiry(token: str) -> Optional[int]:
    """Read `exp` without verifying, so a holder can tell if a refresh is due."""
    try:
        exp = jwt.get_unverified_claims(token).get("exp")
    except JWTError:
        return None
    return exp if isinstance(exp, int) else None


__all__ = [
    "pem_text",
    "load_private_key",
    "public_pem",
    "canned_policy",
    "cloudfront_b64",
    "cloudfront_b64decode",
    "sign_canned_policy",
    "verify_canned_policy",
    "sign_playback_token",
    "verify_playback_token",
    "token_expiry",
]
