"""EMR Routes - EMR add-on plans, purchase, entitlement and access checks.

Endpoints:
- GET  /api/emr/plans - Plan comparison
- GET  /api/emr/plans/{tier} - One plan with the screens it unlocks
- GET  /api/emr/all-screens - Every gated screen grouped by minimum tier
- POST /api/emr/subscribe - Create an initial purchase order
- POST /api/emr/verify-payment - Verify a checkout callback (subscription, upgrade or renewal)
- GET  /api/emr/subscription/{clinic_id} - Current subscription summary
- GET  /api/emr/subscription/{clinic_id}/history - Past records, newest first
- POST /api/emr/upgrade - Create a prorated upgrade order
- POST /api/emr/renew - Create a renewal order
- POST /api/emr/auto-renew - Toggle auto-renew
- GET  /api/emr/screens/{clinic_id} - Unlocked and locked screens for the caller
- GET  /api/emr/access/{clinic_id}/{screen_id} - Access decision for one screen
- GET  /api/emr/audit/{clinic_id} - Clinic audit trail (audit_logs screen)
- POST /api/emr/admin/sweeps/expiry - Run the expiry sweep now (platform admin)
- POST /api/emr/admin/sweeps/reminders - Run the reminder sweep now (platform admin)

Billing endpoints (subscribe, upgrade, renew, auto-renew, history) require the
clinic's admin or a platform admin; the subscription summary requires clinic
membership. Business errors raised by the service are rendered by the
EntitlementError handler registered in server.py.
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Optional
from middleware import PLATFORM_ROLE_HIERARCHY, require_auth, require_admin
from middleware.emr_access import EMRAccessGate, get_emr_access_gate, require_emr_screen
from models import EMRTier, SubscriptionDuration
from services.access_policy import AccessDecision
from utils.audit import get_clinic_audit_logs
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/emr", tags=["emr"])


def get_subscription_service():
    from services.subscription_service import emr_subscription_service
    return emr_subscription_service


def get_reminder_scheduler():
    from services.reminder_scheduler import EMRReminderScheduler
    return EMRReminderScheduler(service=get_subscription_service())


async def authorize_clinic(service, clinic_id: str, user: dict, admin_only: bool = True):
    """Clinic admins manage billing; any member may read the summary. Platform admins pass."""
    if PLATFORM_ROLE_HIERARCHY.get(user.get("role"), 0) >= PLATFORM_ROLE_HIERARCHY["ROLE_ADMIN"]:
        return
    if admin_only:
        await service.authorize_clinic_admin(clinic_id, user["user_id"])
    else:
        await service.authorize_clinic_member(clinic_id, user["user_id"])


class SubscribeRequest(BaseModel):
    clinic_id: str
    plan: EMRTier
    duration: SubscriptionDuration


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class UpgradeRequest(BaseModel):
    clinic_id: str
    new_plan: EMRTier


class RenewRequest(BaseModel):
    clinic_id: str
    duration: SubscriptionDuration = SubscriptionDuration.ONE_YEAR


class AutoRenewRequest(BaseModel):
    clinic_id: str
    enabled: bool


# ============================================================================
# Plans and screens (public)
# ============================================================================

@router.get("/plans")
async def list_plans(service=Depends(get_subscription_service)):
    return {"success": True, **service.list_plans()}


@router.get("/plans/{tier}")
async def get_plan(tier: str, service=Depends(get_subscription_service)):
    return {"success": True, "plan": service.get_plan_details(tier)}


@router.get("/all-screens")
async def list_all_screens(service=Depends(get_subscription_service)):
    return {"success": True, "screens": service.list_all_screens()}


# ============================================================================
# Purchase flow
# ============================================================================

@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, body.clinic_id, user)
    order = await service.create_order(body.clinic_id, body.plan, body.duration, requested_by=user["user_id"])
    return {"success": True, "order": order}


@router.post("/verify-payment")
async def verify_payment(
    body: VerifyPaymentRequest,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    result = await service.verify_and_activate(
        body.order_id, body.payment_id, body.signature, verified_by=user["user_id"]
    )
    return {"success": True, "message": "Payment verified", "subscription": result}


@router.post("/upgrade")
async def upgrade(
    body: UpgradeRequest,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, body.clinic_id, user)
    order = await service.create_upgrade_order(body.clinic_id, body.new_plan, requested_by=user["user_id"])
    return {"success": True, "order": order}


@router.post("/renew")
async def renew(
    body: RenewRequest,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, body.clinic_id, user)
    order = await service.create_renewal_order(body.clinic_id, body.duration, requested_by=user["user_id"])
    return {"success": True, "order": order}


@router.post("/auto-renew")
async def auto_renew(
    body: AutoRenewRequest,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, body.clinic_id, user)
    result = await service.toggle_auto_renew(body.clinic_id, body.enabled, requested_by=user["user_id"])
    return {"success": True, **result}


# ============================================================================
# Subscription reads
# ============================================================================

@router.get("/subscription/{clinic_id}")
async def get_subscription(
    clinic_id: str,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, clinic_id, user, admin_only=False)
    return {"success": True, **(await service.get_active_subscription(clinic_id))}


@router.get("/subscription/{clinic_id}/history")
async def get_subscription_history(
    clinic_id: str,
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    await authorize_clinic(service, clinic_id, user)
    history = await service.get_subscription_history(clinic_id, limit=limit)
    return {"success": True, "history": history}


# ============================================================================
# Access
# ============================================================================

@router.get("/screens/{clinic_id}")
async def get_screens(
    clinic_id: str,
    user: dict = Depends(require_auth),
    service=Depends(get_subscription_service),
):
    return {"success": True, **(await service.get_available_screens(clinic_id, user["user_id"]))}


@router.get("/access/{clinic_id}/{screen_id}")
async def check_screen_access(
    clinic_id: str,
    screen_id: str,
    user: dict = Depends(require_auth),
    gate: EMRAccessGate = Depends(get_emr_access_gate),
):
    decision = await gate.evaluate(clinic_id, user["user_id"], screen_id)
    return {"success": True, **decision.to_dict()}


@router.get("/audit/{clinic_id}")
async def get_clinic_audit_trail(
    clinic_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    action: Optional[str] = None,
    decision: AccessDecision = Depends(require_emr_screen("audit_logs")),
):
    result = await get_clinic_audit_logs(clinic_id, limit=limit, skip=(page - 1) * limit, action=action)
    return {
        "success": True,
        "logs": result["logs"],
        "total": result["total"],
        "page": page,
        "pages": -(-result["total"] // limit),
    }


# ============================================================================
# Operator sweeps
# ============================================================================

@router.post("/admin/sweeps/expiry")
async def run_expiry_sweep(
    user: dict = Depends(require_admin),
    scheduler=Depends(get_reminder_scheduler),
):
    count = await scheduler.run_expiry_sweep()
    logger.info("Manual EMR expiry sweep by %s: %s expired", user.get("user_id"), count)
    return {"success": True, "message": f"Expired subscriptions: {count}", "count": count}


@router.post("/admin/sweeps/reminders")
async def run_reminder_sweep(
    user: dict = Depends(require_admin),
    scheduler=Depends(get_reminder_scheduler),
):
    reminders = await scheduler.run_reminder_sweep()
    logger.info("Manual EMR reminder sweep by %s: %s sent", user.get("user_id"), len(reminders))
    return {
        "success": True,
        "message": f"Reminders sent: {len(reminders)}",
        "count": len(reminders),
        "reminders": reminders,
    }
