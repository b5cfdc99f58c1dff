from __future__ import annotations

"""
Access verifier for playback.

`decide_access(facts)` is a pure function: it sees only the facts passed in
and returns an `AccessDecision` value. Rules are evaluated top to bottom and
the first match wins:

1. resource not found           → deny  `not_found`
2. artifact id ≠ bound artifact → deny  `identity_mismatch`
3. status ≠ ready               → deny  `not_ready` (carries the status)
4. owner with submit capability → allow `owner`
5. grader capability            → allow `grader`
6. admin                        → allow `admin`
7. otherwise                    → deny  `forbidden`

Decisions are recomputed on every request; nothing here caches an `allow`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, FrozenSet, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from vidgate.db.models import VideoRecord
    from vidgate.repositories.videos import VideoStore


class AccessReason(str, Enum):
    NOT_FOUND = "not_found"
    IDENTITY_MISMATCH = "identity_mismatch"
    NOT_READY = "not_ready"
    OWNER = "owner"
    GRADER = "grader"
    ADMIN = "admin"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class AccessFacts:
    exists: bool
    identity_matches: bool = True
    resource_status: Optional[str] = None
    is_owner: bool = False
    owner_can_submit: bool = False
    has_grader_capability: bool = False
    is_admin: bool = False


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: AccessReason
    status: Optional[str] = None


def decide_access(facts: AccessFacts) -> AccessDecision:
    if not facts.exists:
        return AccessDecision(False, AccessReason.NOT_FOUND)
    if not facts.identity_matches:
        return AccessDecision(False, AccessReason.IDENTITY_MISMATCH)
    if facts.resource_status != "ready":
        return AccessDecision(False, AccessReason.NOT_READY, status=facts.resource_status)
    if facts.is_owner and facts.owner_can_submit:
        return AccessDecision(True, AccessReason.OWNER, status=facts.resource_status)
    if facts.has_grader_capability:
        return AccessDecision(True, AccessReason.GRADER, status=facts.resource_status)
    if facts.is_admin:
        return AccessDecision(True, AccessReason.ADMIN, status=facts.resource_status)
    return AccessDecision(False, AccessReason.FORBIDDEN, status=facts.resource_status)


# ─────────────────────────────────────────────────────────────────────────────
# 🧭 Request context (explicitly passed; nothing reads ambient state)
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Principal:
    """Authenticated caller. `capabilities` are the raw claim strings."""

    user_id: int
    capabilities: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False


class CapabilityOracle(Protocol):
    """Answers "can user U submit to / grade assignment A?"."""

    async def can_submit(self, user: Principal, assignment_id: int) -> bool: ...

    async def can_grade(self, user: Principal, assignment_id: int) -> bool: ...

    async def is_admin(self, user: Principal) -> bool: ...


@dataclass(frozen=True)
class RequestContext:
    current_user: Principal
    capability_oracle: CapabilityOracle
    record_store: "VideoStore"


async def gather_facts(
    ctx: RequestContext,
    record: Optional["VideoRecord"],
    *,
    claimed_artifact_id: Optional[str] = None,
) -> AccessFacts:
    """Collect read-only facts for `decide_access` from the record and the oracle."""
    if record is None:
        return AccessFacts(exists=False)
    user = ctx.current_user
    oracle = ctx.capability_oracle
    is_owner = record.owner_id == user.user_id
    return AccessFacts(
        exists=True,
        identity_matches=claimed_artifact_id is None or claimed_artifact_id == record.artifact_id,
        resource_status=record.status.value,
        is_owner=is_owner,
        owner_can_submit=is_owner and await oracle.can_submit(user, record.assignment_id),
        has_grader_capability=await oracle.can_grade(user, record.assignment_id),
        is_admin=await oracle.is_admin(user),
    )


__all__ = [
    "AccessReason",
    "AccessFacts",
    "AccessDecision",
    "decide_access",
    "Principal",
    "CapabilityOracle",
    "RequestContext",
    "gather_facts",
]
