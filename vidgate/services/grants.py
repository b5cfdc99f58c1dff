from __future__ import annotations

"""
Playback grant issuers.

`issue_playback_grant(resource_identity, ttl_seconds)` returns a `SignedGrant`
(never persisted). The expiry is computed from the injected clock, the final
target URL is built **with every query parameter first**, and only then is that
exact string signed. Appending a parameter after signing yields a URL the CDN
edge rejects.

- `CannedPolicyIssuer` → CloudFront URL with ``Expires``/``Signature``/``Key-Pair-Id``
- `PlaybackTokenIssuer` → hosted-video signed token (+ manifest URL)
"""

import logging
from typing import Literal, Optional, Protocol
from urllib.parse import quote, urlencode

from pydantic import BaseModel

from vidgate.core.config import MAX_GRANT_TTL_SECONDS, Settings
from vidgate.core.exceptions import AppException, NotConfigured
from vidgate.services.signing import load_private_key, sign_canned_policy, sign_playback_token
from vidgate.utils.clock import Clock, epoch, utcnow

logger = logging.getLogger(__name__)

IFRAME_HOST = "iframe.videodelivery.net"


class SignedGrant(BaseModel):
    """Data returned when issuing a playback grant.

    - resource_path: The exact resource string that was signed.
    - url: Fully-qualified URL the player loads.
    - expires_at: Epoch seconds when the grant stops being valid.
    - signature: CloudFront signature or the signed token itself.
    - key_id: Key-pair id (CloudFront) or signing key id (token).
    """

    kind: Literal["canned_policy", "token"]
    resource_path: str
    url: str
    expires_at: int
    signature: str
    key_id: str


class GrantIssuer(Protocol):
    def issue_playback_grant(
        self,
        resource_identity: str,
        ttl_seconds: int,
        *,
        response_content_disposition: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> SignedGrant: ...


def _check_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl < 1 or ttl > MAX_GRANT_TTL_SECONDS:
        raise AppException(
            f"ttl_seconds must be between 1 and {MAX_GRANT_TTL_SECONDS}",
            code="invalid_ttl",
            details={"ttl_seconds": ttl_seconds},
        )
    return ttl


# ─────────────────────────────────────────────────────────────────────────────
# 🌐 CloudFront canned policy
# ─────────────────────────────────────────────────────────────────────────────
class CannedPolicyIssuer:
    def __init__(
        self,
        *,
        domain: Optional[str],
        key_pair_id: Optional[str],
        private_key_pem: Optional[str],
        clock: Clock = utcnow,
    ) -> None:
        self.domain = domain
        self.key_pair_id = key_pair_id
        self._private_key_pem = private_key_pem
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utcnow) -> "CannedPolicyIssuer":
        pem = settings.CLOUDFRONT_PRIVATE_KEY_PEM
        return cls(
            domain=settings.CLOUDFRONT_DOMAIN,
            key_pair_id=settings.CLOUDFRONT_KEY_PAIR_ID,
            private_key_pem=pem.get_secret_value() if pem else None,
            clock=clock,
        )

    def resource_url(self, key: str, *, response_content_disposition: Optional[str] = None) -> str:
        """`https://{domain}/{key}` plus any override parameter, ready to be signed."""
        url = f"https://{self.domain}/{quote(key.lstrip('/'), safe='/~')}"
        if response_content_disposition:
            url += "?" + urlencode({"response-content-disposition": response_content_disposition})
        return url

    def issue_playback_grant(
        self,
        resource_identity: str,
        ttl_seconds: int,
        *,
        response_content_disposition: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> SignedGrant:
        """
        Steps
        -----
        1) Validate configuration and TTL.
        2) Build the full resource URL including the disposition override.
        3) Sign that exact string with the canned policy.
        4) Append the CloudFront query parameters.
        """
        # ── [Step 1] Config + TTL ──────────────────────────────────────────
        if not (self.domain and self.key_pair_id and self._private_key_pem):
            raise NotConfigured("CloudFront signing is not configured")
        ttl = _check_ttl(ttl_seconds)
        key = load_private_key(self._private_key_pem)
        expires_at = epoch(self._clock()) + ttl

        # ── [Step 2] Final resource string (signed-in, never appended later) ─
        resource = self.resource_url(resource_identity, response_content_disposition=response_content_disposition)

        # ── [Step 3] Sign ──────────────────────────────────────────────────
        signature = sign_canned_policy(resource, expires_at, key)

        # ── [Step 4] Assemble ──────────────────────────────────────────────
        sep = "&" if "?" in resource else "?"
        url = f"{resource}{sep}Expires={expires_at}&Signature={signature}&Key-Pair-Id={self.key_pair_id}"
        logger.debug("Issued canned-policy grant for %s (exp=%s)", resource_identity, expires_at)
        return SignedGrant(
            kind="canned_policy",
            resource_path=resource,
            url=url,
            expires_at=expires_at,
            signature=signature,
            key_id=self.key_pair_id,
        )


# ─────────────────────────────────────────────────────────────────────────────
# 🎟️ Hosted-video signed token
# ─────────────────────────────────────────────────────────────────────────────
class PlaybackTokenIssuer:
    def __init__(
        self,
        *,
        key_id: Optional[str],
        private_key_pem: Optional[str],
        customer_domain: Optional[str] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.key_id = key_id
        self._private_key_pem = private_key_pem
        self.customer_domain = customer_domain
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Clock = utcnow) -> "PlaybackTokenIssuer":
        pem = settings.STREAM_SIGNING_KEY_PEM
        return cls(
            key_id=settings.STREAM_SIGNING_KEY_ID,
            private_key_pem=pem.get_secret_value() if pem else None,
            customer_domain=settings.STREAM_CUSTOMER_DOMAIN,
            clock=clock,
        )

    def playback_url(self, token: str) -> str:
        if self.customer_domain:
            return f"https://{self.customer_domain}/{token}/manifest/video.m3u8"
        return f"https://{IFRAME_HOST}/{token}"

    def issue_playback_grant(
        self,
        resource_identity: str,
        ttl_seconds: int,
        *,
        response_content_disposition: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> SignedGrant:
        if not (self.key_id and self._private_key_pem):
            raise NotConfigured("Playback token signing is not configured")
        ttl = _check_ttl(ttl_seconds)
        expires_at = epoch(self._clock()) + ttl
        token = sign_playback_token(
            resource_identity,
            expires_at,
            key_id=self.key_id,
            private_key=self._private_key_pem,
            viewer_id=viewer_id,
        )
        # Streams are served as manifests; a download disposition has no meaning here
        if response_content_disposition:
            logger.debug("Ignoring content disposition for token grant %s", resource_identity)
        return SignedGrant(
            kind="token",
            resource_path=resource_identity,
            url=self.playback_url(token),
            expires_at=expires_at,
            signature=token,
            key_id=self.key_id,
        )


def build_grant_issuer(settings: Settings, *, clock: Clock = utcnow) -> GrantIssuer:
    """Pick the issuer that matches the configured storage backend."""
    if settings.STORAGE_BACKEND == "s3":
        return CannedPolicyIssuer.from_settings(settings, clock=clock)
    return PlaybackTokenIssuer.from_settings(settings, clock=clock)


__all__ = [
    "SignedGrant",
    "GrantIssuer",
    "CannedPolicyIssuer",
    "PlaybackTokenIssuer",
    "build_grant_issuer",
]
