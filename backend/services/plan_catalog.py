"""EMR Plan Catalog - Single source of truth for EMR add-on tiers and screens.

This is the AUTHORITATIVE source for:
- Tier codes and their rank (basic < standard < advanced)
- Per-duration pricing (6 months / 1 year)
- Doctor / staff caps snapshotted onto subscriptions
- Gated EMR screens: minimum tier and allowed clinic roles

RULES:
1. Tier comparisons always go through rank, never string equality
2. Unknown tiers resolve to rank 0 and unknown screens to None (fail closed)
3. The catalog is an immutable value built once and injected; nothing mutates it at runtime

Plan Structure (INR):
- basic: ₹4,999 / 6 months, ₹8,999 / year (2 doctors, 5 staff)
- standard: ₹9,999 / 6 months, ₹17,999 / year (5 doctors, 15 staff)
- advanced: ₹19,999 / 6 months, ₹35,999 / year (unlimited)
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union
import logging

from models import ClinicRole, EMRTier, PlanLimits, SubscriptionDuration

logger = logging.getLogger(__name__)

UNLIMITED = -1
UNKNOWN_RANK = 0

TierLike = Union[EMRTier, str, None]


# ============================================================================
# CATALOG VALUE TYPES
# ============================================================================
@dataclass(frozen=True)
class Screen:
    """One gated EMR capability."""
    id: str
    name: str
    description: str
    min_tier: EMRTier
    allowed_roles: frozenset

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "plan": self.min_tier.value,
            "roles": sorted(role.value for role in self.allowed_roles),
        }


@dataclass(frozen=True)
class PlanPrice:
    amount: int  # whole rupees
    currency: str = "INR"

    @property
    def amount_minor(self) -> int:
        """Gateway amount in paise."""
        return self.amount * 100


@dataclass(frozen=True)
class PlanDefinition:
    tier: EMRTier
    rank: int
    name: str
    description: str
    pricing: Mapping[SubscriptionDuration, PlanPrice]
    limits: PlanLimits
    features: Tuple[str, ...] = ()
    is_popular: bool = False

    def __post_init__(self):
        object.__setattr__(self, "pricing", MappingProxyType(dict(self.pricing)))

    def to_dict(self) -> Dict:
        return {
            "id": self.tier.value,
            "name": self.name,
            "description": self.description,
            "rank": self.rank,
            "pricing": {
                duration.value: {
                    "amount": price.amount,
                    "currency": price.currency,
                    "per_month": round(price.amount / (6 if duration is SubscriptionDuration.SIX_MONTHS else 12)),
                }
                for duration, price in self.pricing.items()
            },
            "limits": self.limits.model_dump(),
            "features": list(self.features),
            "is_popular": self.is_popular,
        }


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable registry of tiers and screens. Build once, inject everywhere."""
    plans: Mapping[EMRTier, PlanDefinition]
    screens: Mapping[str, Screen]
    currency: str = "INR"
    _ranks: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        # Freeze the containers so callers cannot mutate shared config
        object.__setattr__(self, "plans", MappingProxyType(dict(self.plans)))
        object.__setattr__(self, "screens", MappingProxyType(dict(self.screens)))
        object.__setattr__(
            self,
            "_ranks",
            MappingProxyType({tier.value: plan.rank for tier, plan in self.plans.items()}),
        )

    # -------------------------------------------------------------------------
    # Tier lookups
    # -------------------------------------------------------------------------

    def resolve_tier(self, tier: TierLike) -> Optional[EMRTier]:
        """Resolve a tier string to EMRTier; None for anything outside the catalog."""
        if tier is None:
            return None
        if isinstance(tier, EMRTier):
            return tier if tier in self.plans else None
        try:
            resolved = EMRTier(str(tier).strip().lower())
        except ValueError:
            return None
        return resolved if resolved in self.plans else None

    def rank(self, tier: TierLike) -> int:
        resolved = self.resolve_tier(tier)
        if resolved is None:
            return UNKNOWN_RANK
        return self._ranks.get(resolved.value, UNKNOWN_RANK)

    def tiers_by_rank(self) -> List[EMRTier]:
        return sorted(self.plans.keys(), key=lambda t: self.plans[t].rank)

    def get_plan(self, tier: TierLike) -> Optional[PlanDefinition]:
        resolved = self.resolve_tier(tier)
        return self.plans.get(resolved) if resolved else None

    def list_plans(self) -> List[PlanDefinition]:
        return [self.plans[tier] for tier in self.tiers_by_rank()]

    def price_for(self, tier: TierLike, duration: SubscriptionDuration) -> Optional[PlanPrice]:
        plan = self.get_plan(tier)
        if plan is None:
            return None
        return plan.pricing.get(duration)

    def limits_for(self, tier: TierLike) -> Optional[PlanLimits]:
        plan = self.get_plan(tier)
        return plan.limits if plan else None

    # -------------------------------------------------------------------------
    # Screen lookups
    # -------------------------------------------------------------------------

    def get_screen(self, screen_id: Optional[str]) -> Optional[Screen]:
        if not screen_id:
            return None
        return self.screens.get(screen_id)

    def list_screens(self) -> List[Screen]:
        return list(self.screens.values())

    def screens_for_plan(self, tier: TierLike) -> List[Screen]:
        """Every screen a tier unlocks, ignoring roles."""
        plan_rank = self.rank(tier)
        return [s for s in self.screens.values() if plan_rank >= self.rank(s.min_tier)]

    def screens_grouped_by_tier(self) -> Dict[str, List[Screen]]:
        grouped = {tier.value: [] for tier in self.tiers_by_rank()}
        for screen in self.screens.values():
            grouped[screen.min_tier.value].append(screen)
        return grouped


# ============================================================================
# DEFAULT EMR CATALOG
# ============================================================================
_ALL_ROLES = frozenset(ClinicRole)
_CLINICAL = frozenset({ClinicRole.ADMIN, ClinicRole.DOCTOR})
_CLINICAL_AND_STAFF = frozenset({ClinicRole.ADMIN, ClinicRole.DOCTOR, ClinicRole.STAFF})
_ADMIN_ONLY = frozenset({ClinicRole.ADMIN})

_SCREEN_DEFINITIONS = (
    # basic
    ("patient_registration", "Patient Registration", "Register walk-in and scheduled patients",
     EMRTier.BASIC, _ALL_ROLES),
    ("visit_history", "Visit History", "Chronological list of patient visits",
     EMRTier.BASIC, _ALL_ROLES),
    ("basic_prescription", "Basic Prescription", "Write and print prescriptions",
     EMRTier.BASIC, _CLINICAL),
    ("emr_dashboard", "EMR Dashboard", "Today's appointments and clinic activity",
     EMRTier.BASIC, _CLINICAL_AND_STAFF),
    # standard
    ("vitals_recorder", "Vitals Recording", "Record patient vital signs",
     EMRTier.STANDARD, _CLINICAL_AND_STAFF),
    ("vitals_trends", "Vitals Trends", "Charts of vital signs over time",
     EMRTier.STANDARD, _CLINICAL),
    ("lab_orders", "Lab Orders", "Order and track lab tests",
     EMRTier.STANDARD, _CLINICAL_AND_STAFF),
    ("medical_history", "Medical History", "Allergies, conditions, family and surgical history",
     EMRTier.STANDARD, _CLINICAL),
    ("diagnosis_coding", "ICD-10 Coding", "Search and attach ICD-10 diagnoses",
     EMRTier.STANDARD, _CLINICAL),
    ("follow_up_scheduling", "Follow-up Scheduling", "Book and track follow-up visits",
     EMRTier.STANDARD, frozenset({ClinicRole.ADMIN, ClinicRole.DOCTOR, ClinicRole.RECEPTIONIST})),
    # advanced
    ("drug_interactions", "Drug Interactions", "Check prescriptions for interactions",
     EMRTier.ADVANCED, _CLINICAL),
    ("analytics_reports", "Analytics & Reports", "Visit trends, patient stats and revenue",
     EMRTier.ADVANCED, _CLINICAL),
    ("staff_management", "Staff Management", "Invite staff and manage clinic roles",
     EMRTier.ADVANCED, _ADMIN_ONLY),
    ("data_export", "Data Export", "Export clinic records",
     EMRTier.ADVANCED, _ADMIN_ONLY),
    ("audit_logs", "Audit Logs", "Immutable record of EMR activity",
     EMRTier.ADVANCED, _ADMIN_ONLY),
)


def build_default_catalog() -> PlanCatalog:
    """Build the production EMR catalog."""
    plans = {
        EMRTier.BASIC: PlanDefinition(
            tier=EMRTier.BASIC,
            rank=1,
            name="Basic",
            description="Digital patient records for small clinics",
            pricing={
                SubscriptionDuration.SIX_MONTHS: PlanPrice(4999),
                SubscriptionDuration.ONE_YEAR: PlanPrice(8999),
            },
            limits=PlanLimits(max_doctors=2, max_staff=5),
            features=(
                "Patient registration",
                "Visit history",
                "Basic prescriptions",
                "EMR dashboard",
            ),
        ),
        EMRTier.STANDARD: PlanDefinition(
            tier=EMRTier.STANDARD,
            rank=2,
            name="Standard",
            description="Clinical workflows for growing practices",
            pricing={
                SubscriptionDuration.SIX_MONTHS: PlanPrice(9999),
                SubscriptionDuration.ONE_YEAR: PlanPrice(17999),
            },
            limits=PlanLimits(max_doctors=5, max_staff=15),
            features=(
                "Everything in Basic",
                "Vitals recording and trends",
                "Lab orders",
                "Medical history",
                "ICD-10 coding",
                "Follow-up scheduling",
            ),
            is_popular=True,
        ),
        EMRTier.ADVANCED: PlanDefinition(
            tier=EMRTier.ADVANCED,
            rank=3,
            name="Advanced",
            description="Full EMR suite with analytics and governance",
            pricing={
                SubscriptionDuration.SIX_MONTHS: PlanPrice(19999),
                SubscriptionDuration.ONE_YEAR: PlanPrice(35999),
            },
            limits=PlanLimits(max_doctors=UNLIMITED, max_staff=UNLIMITED),
            features=(
                "Everything in Standard",
                "Drug interaction checks",
                "Analytics and reports",
                "Staff management",
                "Data export",
                "Audit logs",
            ),
        ),
    }
    screens = {
        screen_id: Screen(
            id=screen_id,
            name=name,
            description=description,
            min_tier=min_tier,
            allowed_roles=roles,
        )
        for screen_id, name, description, min_tier, roles in _SCREEN_DEFINITIONS
    }
    return PlanCatalog(plans=plans, screens=screens)


# Process-wide read-only catalog
DEFAULT_CATALOG = build_default_catalog()
