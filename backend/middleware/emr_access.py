"""
EMR Access Gate
Server-side enforcement of the tier × role screen matrix for EMR routes.
The clinic's plan is always read fresh from the subscription store; nothing in
the request body or token is trusted for plan or clinic role.

Usage:
    @router.get("/emr/{clinic_id}/audit-logs")
    async def audit_logs(clinic_id: str, decision: AccessDecision = Depends(require_emr_screen("audit_logs"))):
        ...
"""
from fastapi import Depends, Request
from typing import Optional
import logging

from models import AuditAction, ClinicRole
from services.access_policy import AccessDecision, PLAN_UPGRADE_REQUIRED
from services.entitlement_errors import EntitlementError
from utils.audit import create_audit_log
from middleware import require_auth

logger = logging.getLogger(__name__)


class EMRAccessGate:
    """Wraps check_access with deny logging, auditing and upgrade prompts."""

    def __init__(self, service=None, audit=create_audit_log):
        self._service = service
        self.audit = audit

    @property
    def service(self):
        if self._service is None:
            from services.subscription_service import emr_subscription_service
            self._service = emr_subscription_service
        return self._service

    async def evaluate(self, clinic_id: str, user_id: str, screen_id: str) -> AccessDecision:
        """
        Decision for one screen. Membership and subscription failures raise;
        screen-level denials are returned after being logged and audited.
        """
        try:
            decision = await self.service.check_access(clinic_id, user_id, screen_id)
        except EntitlementError as e:
            await self._record_denial(clinic_id, user_id, screen_id, e.error_code, None)
            raise

        if not decision.allowed:
            await self._record_denial(clinic_id, user_id, screen_id, decision.reason, decision.role)
            if decision.reason == PLAN_UPGRADE_REQUIRED and decision.role == ClinicRole.ADMIN.value:
                # Only clinic admins can buy the upgrade
                await self.service.notifier.send_upgrade_prompt(clinic_id, user_id, decision.upgrade_hint or {})
        return decision

    async def enforce(self, clinic_id: str, user_id: str, screen_id: str) -> AccessDecision:
        decision = await self.evaluate(clinic_id, user_id, screen_id)
        if not decision.allowed:
            raise decision.to_error()
        return decision

    async def _record_denial(
        self,
        clinic_id: str,
        user_id: str,
        screen_id: str,
        reason: str,
        role: Optional[str],
    ):
        logger.warning(
            "EMR access denied: clinic_id=%s user_id=%s screen_id=%s reason=%s",
            clinic_id, user_id, screen_id, reason,
        )
        await self.audit(
            action=AuditAction.EMR_ACCESS_DENIED,
            actor_role=role,
            actor_id=user_id,
            clinic_id=clinic_id,
            resource_type="emr_screen",
            resource_id=screen_id,
            reason_code=reason,
        )


emr_access_gate = EMRAccessGate()


def get_emr_access_gate() -> EMRAccessGate:
    return emr_access_gate


def require_emr_screen(screen_id: str):
    """
    Dependency factory gating a route on one EMR screen. The route must carry
    a clinic_id path parameter; denials raise the matching EntitlementError.
    """
    async def dependency(
        request: Request,
        user: dict = Depends(require_auth),
        gate: EMRAccessGate = Depends(get_emr_access_gate),
    ) -> AccessDecision:
        clinic_id = request.path_params.get("clinic_id")
        decision = await gate.enforce(clinic_id, user["user_id"], screen_id)
        request.state.emr_decision = decision
        return decision

    return dependency
