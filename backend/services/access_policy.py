"""EMR Access Policy - tier × role screen matrix.

A screen is reachable iff the subscriber's tier rank is at least the screen's
minimum tier rank AND the caller's role is in the screen's allow-list.

Deny precedence is fixed so results are deterministic:
1. SCREEN_NOT_FOUND      - unknown screen id (fail closed)
2. ROLE_NOT_ALLOWED      - role outside the allow-list, regardless of tier
3. PLAN_UPGRADE_REQUIRED - role allowed but tier rank too low (carries upgrade hint)

Pure and side-effect free: no database, no logging of decisions.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from models import ClinicRole, EMRTier
from services.entitlement_errors import (
    EntitlementError,
    PlanUpgradeRequired,
    RoleNotAllowed,
    ScreenNotFound,
)
from services.plan_catalog import DEFAULT_CATALOG, PlanCatalog, Screen

RoleLike = Union[ClinicRole, str, None]
TierLike = Union[EMRTier, str, None]

ALLOW = "ALLOW"
SCREEN_NOT_FOUND = ScreenNotFound.error_code
ROLE_NOT_ALLOWED = RoleNotAllowed.error_code
PLAN_UPGRADE_REQUIRED = PlanUpgradeRequired.error_code


def _resolve_role(role: RoleLike) -> Optional[ClinicRole]:
    if role is None:
        return None
    if isinstance(role, ClinicRole):
        return role
    try:
        return ClinicRole(str(role).strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    screen_id: str
    reason: str = ALLOW
    screen: Optional[Screen] = None
    role: Optional[str] = None
    tier: Optional[str] = None
    upgrade_hint: Optional[Dict[str, Any]] = None

    def to_error(self) -> Optional[EntitlementError]:
        """Map a deny to its business error; None when allowed."""
        if self.allowed:
            return None
        if self.reason == SCREEN_NOT_FOUND:
            return ScreenNotFound(self.screen_id)
        if self.reason == ROLE_NOT_ALLOWED:
            required = [r.value for r in self.screen.allowed_roles] if self.screen else []
            return RoleNotAllowed(self.role or "", required, self.screen_id)
        return PlanUpgradeRequired(self.tier, self.upgrade_hint or {})

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "has_access": self.allowed,
            "screen_id": self.screen_id,
            "reason": self.reason,
            "role": self.role,
            "current_plan": self.tier,
        }
        if self.screen:
            data["screen"] = self.screen.to_dict()
        if self.upgrade_hint:
            data["locked"] = True
            data["upgrade"] = self.upgrade_hint
        return data


@dataclass(frozen=True)
class ScreenResolution:
    unlocked: List[Screen] = field(default_factory=list)
    locked: List[Screen] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "screens": [s.to_dict() for s in self.unlocked],
            "locked_screens": [s.to_dict() for s in self.locked],
        }


class AccessPolicyEvaluator:
    """Evaluates the tier × role matrix against an injected catalog."""

    def __init__(self, catalog: PlanCatalog = DEFAULT_CATALOG):
        self.catalog = catalog

    def can_access(self, screen_id: str, subscriber_tier: TierLike, caller_role: RoleLike) -> bool:
        return self.evaluate(screen_id, subscriber_tier, caller_role).allowed

    def evaluate(self, screen_id: str, subscriber_tier: TierLike, caller_role: RoleLike) -> AccessDecision:
        role = _resolve_role(caller_role)
        role_value = role.value if role else (str(caller_role) if caller_role else None)
        tier = self.catalog.resolve_tier(subscriber_tier)
        tier_value = tier.value if tier else (str(subscriber_tier) if subscriber_tier else None)

        screen = self.catalog.get_screen(screen_id)
        if screen is None:
            return AccessDecision(
                allowed=False,
                screen_id=screen_id,
                reason=SCREEN_NOT_FOUND,
                role=role_value,
                tier=tier_value,
            )

        if role is None or role not in screen.allowed_roles:
            return AccessDecision(
                allowed=False,
                screen_id=screen_id,
                reason=ROLE_NOT_ALLOWED,
                screen=screen,
                role=role_value,
                tier=tier_value,
            )

        if self.catalog.rank(tier) < self.catalog.rank(screen.min_tier):
            return AccessDecision(
                allowed=False,
                screen_id=screen_id,
                reason=PLAN_UPGRADE_REQUIRED,
                screen=screen,
                role=role_value,
                tier=tier_value,
                upgrade_hint=self.upgrade_hint(screen),
            )

        return AccessDecision(allowed=True, screen_id=screen_id, screen=screen, role=role_value, tier=tier_value)

    def resolve_screens(self, caller_role: RoleLike, subscriber_tier: TierLike) -> ScreenResolution:
        """Unlocked screens plus role-eligible screens held back only by tier rank."""
        role = _resolve_role(caller_role)
        if role is None:
            return ScreenResolution()

        tier_rank = self.catalog.rank(subscriber_tier)
        unlocked, locked = [], []
        for screen in self.catalog.list_screens():
            if role not in screen.allowed_roles:
                continue
            if tier_rank >= self.catalog.rank(screen.min_tier):
                unlocked.append(screen)
            else:
                locked.append(screen)
        return ScreenResolution(unlocked=unlocked, locked=locked)

    def upgrade_hint(self, screen: Screen) -> Dict[str, Any]:
        required_plan = self.catalog.get_plan(screen.min_tier)
        return {
            "required_plan": screen.min_tier.value,
            "required_plan_name": required_plan.name if required_plan else screen.min_tier.value,
            "screen_id": screen.id,
            "screen_name": screen.name,
            "message": f"Upgrade to {screen.min_tier.value} plan to access {screen.name}",
            "upgrade_path": f"/emr/upgrade?plan={screen.min_tier.value}",
        }


# Evaluator over the production catalog
access_policy = AccessPolicyEvaluator()
