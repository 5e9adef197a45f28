"""
Feature gating decisions over already-loaded rows.

Two separate axes, never merged here:
- is_feature_enabled: global flag, replaced outright by an owner override
- resolve_visibility: per-customer SHOW / HIDE / RESTRICTED rule

Callers that need both (or a permission check too) ask each and AND the
answers.
"""
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from app.features.feature_flags.models import OwnerType, Visibility


OwnerKey = Tuple[OwnerType, str]


@dataclass(frozen=True)
class FeatureSnapshot:
    """
    flags:     feature key -> global is_enabled
    overrides: (owner type, owner id) -> {feature key -> is_enabled}
    """
    flags: Mapping[str, bool] = field(default_factory=dict)
    overrides: Mapping[OwnerKey, Mapping[str, bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class VisibilityRule:
    visibility: Visibility
    condition_profile_percent: Optional[int] = None


def is_feature_enabled(snapshot: FeatureSnapshot, owner_type: OwnerType, owner_id: str, feature_key: str) -> bool:
    """Owner override if present, else the global flag; unknown flags are off."""
    owner_overrides = snapshot.overrides.get((OwnerType(owner_type), owner_id), {})
    if feature_key in owner_overrides:
        return owner_overrides[feature_key]
    return snapshot.flags.get(feature_key, False)


def resolve_visibility(rule: Optional[VisibilityRule], profile_percent: float) -> Visibility:
    """
    SHOW or HIDE for one customer and feature.

    No rule shows the feature. RESTRICTED shows it once profile_percent
    reaches the threshold; a missing threshold counts as 0.
    """
    if rule is None or rule.visibility == Visibility.SHOW:
        return Visibility.SHOW
    if rule.visibility == Visibility.HIDE:
        return Visibility.HIDE
    threshold = rule.condition_profile_percent or 0
    return Visibility.SHOW if profile_percent >= threshold else Visibility.HIDE
