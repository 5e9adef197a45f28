"""
Permission resolution over an immutable policy snapshot.

Nothing here touches the database. Callers load a PolicySnapshot (see
service.load_policy_snapshot) and an Actor, then ask questions; the same
snapshot may be shared across threads or tasks.

Precedence, first match wins:
1. inactive actor            -> deny
2. actor holds the super role -> allow
3. code missing from catalog -> deny
4. DENY override             -> deny
5. ALLOW override            -> allow
6. otherwise                 -> allow iff some assigned role grants the code
"""
from dataclasses import dataclass, field
from typing import Mapping, FrozenSet, Tuple

from app.features.permissions.models import OverrideEffect
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """The caller as described by the identity collaborator."""
    user_id: str
    role_codes: FrozenSet[str]
    is_active: bool = True


@dataclass(frozen=True)
class PolicySnapshot:
    """
    Already-loaded policy data.

    catalog:      active permission codes
    grants:       role code -> granted codes (active roles only)
    overrides:    user id -> {permission code -> ALLOW | DENY}
    bypass_roles: role codes exempt from every check
    """
    catalog: FrozenSet[str] = frozenset()
    grants: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    overrides: Mapping[str, Mapping[str, OverrideEffect]] = field(default_factory=dict)
    bypass_roles: FrozenSet[str] = frozenset()

    def role_permissions(self, role_codes) -> FrozenSet[str]:
        """Union of the grants of the given roles, restricted to the catalog."""
        granted: set[str] = set()
        for role_code in role_codes:
            granted |= self.grants.get(role_code, frozenset())
        return frozenset(granted & self.catalog)

    def user_overrides(self, user_id: str) -> Mapping[str, OverrideEffect]:
        return self.overrides.get(user_id, {})


def is_bypass(snapshot: PolicySnapshot, actor: Actor) -> bool:
    return actor.is_active and bool(actor.role_codes & snapshot.bypass_roles)


def decide(snapshot: PolicySnapshot, actor: Actor, permission_code: str) -> Tuple[bool, str]:
    """Walk the precedence chain once; returns (allowed, reason)."""
    if not actor.is_active:
        return False, "inactive user"

    if actor.role_codes & snapshot.bypass_roles:
        return True, "super role bypass"

    if permission_code not in snapshot.catalog:
        return False, "unknown permission"

    effect = snapshot.user_overrides(actor.user_id).get(permission_code, OverrideEffect.INHERIT)
    if effect == OverrideEffect.DENY:
        return False, "denied by user override"
    if effect == OverrideEffect.ALLOW:
        return True, "allowed by user override"

    for role_code in actor.role_codes:
        if permission_code in snapshot.grants.get(role_code, frozenset()):
            return True, "granted by role"
    return False, "not granted by role"


def has_permission(snapshot: PolicySnapshot, actor: Actor, permission_code: str) -> bool:
    """Decide whether the actor may use permission_code."""
    allowed, reason = decide(snapshot, actor, permission_code)
    if not allowed:
        log.debug("Deny %s for user %s: %s", permission_code, actor.user_id, reason)
    return allowed


def effective_permissions(snapshot: PolicySnapshot, actor: Actor) -> FrozenSet[str]:
    """
    Every catalog code for which has_permission would allow.

    Starts from the role-derived set and only walks the actor's own override
    rows; codes without an override keep the role outcome.
    """
    if not actor.is_active:
        return frozenset()

    if actor.role_codes & snapshot.bypass_roles:
        return snapshot.catalog

    effective = set(snapshot.role_permissions(actor.role_codes))
    for code, effect in snapshot.user_overrides(actor.user_id).items():
        if code not in snapshot.catalog:
            continue
        if effect == OverrideEffect.DENY:
            effective.discard(code)
        elif effect == OverrideEffect.ALLOW:
            effective.add(code)
    return frozenset(effective)


def explain(snapshot: PolicySnapshot, actor: Actor, permission_code: str) -> str:
    """Short human-readable reason for the outcome of has_permission."""
    return decide(snapshot, actor, permission_code)[1]
