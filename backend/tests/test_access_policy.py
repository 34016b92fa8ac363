"""
EMR access policy (tier × role matrix).
- Raising the tier never revokes access for the same role and screen
- A role outside a screen's allow-list is denied at every tier
- audit_logs on basic for a doctor reports ROLE_NOT_ALLOWED, not an upgrade
- Unknown screens, tiers and roles fail closed
- Locked screens carry an upgrade hint
"""
import sys
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import ClinicRole, EMRTier  # noqa: E402
from services.access_policy import (  # noqa: E402
    ALLOW,
    PLAN_UPGRADE_REQUIRED,
    ROLE_NOT_ALLOWED,
    SCREEN_NOT_FOUND,
    AccessPolicyEvaluator,
)
from services.entitlement_errors import PlanUpgradeRequired, RoleNotAllowed, ScreenNotFound  # noqa: E402
from services.plan_catalog import DEFAULT_CATALOG  # noqa: E402

policy = AccessPolicyEvaluator(DEFAULT_CATALOG)
TIERS = [EMRTier.BASIC, EMRTier.STANDARD, EMRTier.ADVANCED]


def test_access_is_monotonic_in_tier():
    for screen in DEFAULT_CATALOG.list_screens():
        for role in ClinicRole:
            results = [policy.can_access(screen.id, tier, role) for tier in TIERS]
            # once granted, never revoked by a higher tier
            first = results.index(True) if True in results else len(results)
            assert all(results[first:]), (screen.id, role, results)


def test_role_outside_allow_list_denied_at_every_tier():
    for screen in DEFAULT_CATALOG.list_screens():
        for role in set(ClinicRole) - set(screen.allowed_roles):
            for tier in TIERS:
                decision = policy.evaluate(screen.id, tier, role)
                assert not decision.allowed
                assert decision.reason == ROLE_NOT_ALLOWED


def test_audit_logs_basic_doctor_reports_role_not_allowed():
    decision = policy.evaluate("audit_logs", "basic", "doctor")
    assert decision.allowed is False
    assert decision.reason == ROLE_NOT_ALLOWED
    assert decision.upgrade_hint is None
    error = decision.to_error()
    assert isinstance(error, RoleNotAllowed)
    assert error.details["required_roles"] == ["admin"]


def test_admin_on_lower_tier_gets_upgrade_hint():
    decision = policy.evaluate("audit_logs", "basic", "admin")
    assert decision.reason == PLAN_UPGRADE_REQUIRED
    hint = decision.upgrade_hint
    assert hint["required_plan"] == "advanced"
    assert hint["screen_id"] == "audit_logs"
    assert hint["screen_name"] == "Audit Logs"
    assert hint["upgrade_path"] == "/emr/upgrade?plan=advanced"

    error = decision.to_error()
    assert isinstance(error, PlanUpgradeRequired)
    assert error.status_code == 403
    body = error.to_dict()
    assert body["error_code"] == "PLAN_UPGRADE_REQUIRED"
    assert body["locked"] is True
    assert body["current_plan"] == "basic"


def test_allowed_decision():
    decision = policy.evaluate("vitals_recorder", "advanced", "staff")
    assert decision.allowed is True
    assert decision.reason == ALLOW
    assert decision.to_error() is None
    assert decision.to_dict()["has_access"] is True


def test_unknown_screen_fails_closed():
    decision = policy.evaluate("telepathy", "advanced", "admin")
    assert decision.allowed is False
    assert decision.reason == SCREEN_NOT_FOUND
    assert isinstance(decision.to_error(), ScreenNotFound)


@pytest.mark.parametrize("tier", [None, "platinum", ""])
def test_unknown_tier_fails_closed(tier):
    for screen in DEFAULT_CATALOG.list_screens():
        assert policy.can_access(screen.id, tier, "admin") is False


@pytest.mark.parametrize("role", [None, "superuser", "nurse"])
def test_unknown_role_fails_closed(role):
    decision = policy.evaluate("patient_registration", "advanced", role)
    assert decision.allowed is False
    assert decision.reason == ROLE_NOT_ALLOWED


def test_resolve_screens_splits_unlocked_and_locked():
    resolution = policy.resolve_screens("doctor", "standard")
    unlocked = {s.id for s in resolution.unlocked}
    locked = {s.id for s in resolution.locked}

    assert "vitals_trends" in unlocked
    assert "drug_interactions" in locked
    # admin-only screens are neither unlocked nor offered as an upgrade
    assert "audit_logs" not in unlocked | locked
    assert unlocked.isdisjoint(locked)
    for screen_id in unlocked:
        assert policy.can_access(screen_id, "standard", "doctor")


def test_resolve_screens_for_unknown_role_is_empty():
    resolution = policy.resolve_screens("visitor", "advanced")
    assert resolution.unlocked == []
    assert resolution.locked == []


def test_receptionist_screens_on_advanced():
    resolution = policy.resolve_screens(ClinicRole.RECEPTIONIST, EMRTier.ADVANCED)
    assert {s.id for s in resolution.unlocked} == {
        "patient_registration",
        "visit_history",
        "follow_up_scheduling",
    }
    assert resolution.locked == []
