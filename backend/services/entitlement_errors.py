"""EMR entitlement error taxonomy.

Business outcomes (bad plan, duplicate subscription, forged payment callback,
access denials) derive from EntitlementError and carry a stable error_code plus
structured details the caller can act on. Infrastructure faults (gateway
timeout, store unavailable) are separate and are retried at the service boundary.
"""
from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Expected, recoverable business outcome surfaced directly to the caller."""
    error_code = "ENTITLEMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error_code": self.error_code, **self.details}


class InvalidPlan(EntitlementError):
    error_code = "INVALID_PLAN"

    def __init__(self, plan: Any):
        super().__init__(f"Invalid plan selected: {plan}", {"plan": plan})


class InvalidDuration(EntitlementError):
    error_code = "INVALID_DURATION"

    def __init__(self, duration: Any):
        super().__init__(
            f"Invalid duration selected: {duration}",
            {"duration": duration, "allowed_durations": ["6_months", "1_year"]},
        )


class ClinicNotFound(EntitlementError):
    error_code = "CLINIC_NOT_FOUND"
    status_code = 404

    def __init__(self, clinic_id: str):
        super().__init__("Clinic not found", {"clinic_id": clinic_id})


class DuplicateActiveSubscription(EntitlementError):
    error_code = "DUPLICATE_ACTIVE_SUBSCRIPTION"
    status_code = 409

    def __init__(self, clinic_id: str, existing_subscription_id: Optional[str] = None):
        super().__init__(
            "Clinic already has an active or in-progress EMR subscription. Upgrade or renew instead.",
            {"clinic_id": clinic_id, "existing_subscription_id": existing_subscription_id},
        )


class SignatureMismatch(EntitlementError):
    error_code = "SIGNATURE_MISMATCH"

    def __init__(self, order_id: str, subscription_id: Optional[str] = None):
        super().__init__(
            "Payment verification failed",
            {"order_id": order_id, "subscription_id": subscription_id},
        )


class OrderNotFound(EntitlementError):
    error_code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found or already processed", {"order_id": order_id})


class NotClinicMember(EntitlementError):
    error_code = "NOT_CLINIC_MEMBER"
    status_code = 403

    def __init__(self, clinic_id: str, user_id: str):
        super().__init__("You are not a member of this clinic", {"clinic_id": clinic_id, "user_id": user_id})


class RoleNotAllowed(EntitlementError):
    error_code = "ROLE_NOT_ALLOWED"
    status_code = 403

    def __init__(self, current_role: str, required_roles, screen_id: Optional[str] = None):
        required = sorted(required_roles)
        super().__init__(
            f"Requires {' or '.join(required)} role",
            {"current_role": current_role, "required_roles": required, "screen_id": screen_id},
        )


class PlanUpgradeRequired(EntitlementError):
    error_code = "PLAN_UPGRADE_REQUIRED"
    status_code = 403

    def __init__(self, current_plan: Optional[str], upgrade_hint: Dict[str, Any]):
        super().__init__(
            f"This feature requires {upgrade_hint.get('required_plan')} plan or higher",
            {"locked": True, "current_plan": current_plan, "upgrade": upgrade_hint},
        )


class ScreenNotFound(EntitlementError):
    error_code = "SCREEN_NOT_FOUND"
    status_code = 404

    def __init__(self, screen_id: str):
        super().__init__("EMR screen not found", {"screen_id": screen_id})


class NoActiveSubscription(EntitlementError):
    error_code = "NO_SUBSCRIPTION"
    status_code = 403

    def __init__(self, clinic_id: str):
        super().__init__(
            "No active EMR subscription found",
            {"clinic_id": clinic_id, "locked": True, "upgrade": {"upgrade_path": "/emr/subscribe"}},
        )


class SubscriptionExpired(EntitlementError):
    error_code = "SUBSCRIPTION_EXPIRED"
    status_code = 403

    def __init__(self, clinic_id: str, expired_at: Optional[str] = None):
        super().__init__(
            "EMR subscription has expired",
            {"clinic_id": clinic_id, "expired_at": expired_at, "locked": True, "upgrade": {"upgrade_path": "/emr/renew"}},
        )


class InvalidUpgradeDirection(EntitlementError):
    error_code = "INVALID_UPGRADE_DIRECTION"

    def __init__(self, current_plan: str, target_plan: str):
        super().__init__(
            "Can only upgrade to a higher plan",
            {"current_plan": current_plan, "target_plan": target_plan},
        )


class UpgradeAlreadyPending(EntitlementError):
    error_code = "UPGRADE_ALREADY_PENDING"
    status_code = 409

    def __init__(self, clinic_id: str, pending_order_id: Optional[str], pending_plan: Optional[str]):
        super().__init__(
            "An upgrade order is already awaiting payment. Complete it or try again later.",
            {"clinic_id": clinic_id, "pending_order_id": pending_order_id, "pending_plan": pending_plan},
        )


# ============================================================================
# SYSTEM ERRORS (not part of the business taxonomy)
# ============================================================================

class PaymentGatewayUnavailable(Exception):
    """Gateway timed out or returned a server error; the order stays pending."""
    def __init__(self, message: str, subscription_id: Optional[str] = None):
        self.subscription_id = subscription_id
        super().__init__(message)


class SubscriptionStoreUnavailable(Exception):
    """Subscription persistence is unreachable."""
