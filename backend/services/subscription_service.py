"""
EMR Subscription Service - purchase, verification, upgrade and renewal of the
EMR add-on, plus the entitlement reads that gate EMR screens.

Lifecycle (see models.ALLOWED_TRANSITIONS):
    pending --verified payment--> active --time passed--> expired
    pending --signature mismatch--> cancelled

Rules:
1. A clinic has at most one live record (pending initial order or active).
   The claim is a single insert guarded by the store's unique slot index.
2. Activation starts the paid period at payment time.
3. Upgrades change plan in place and never move the dates.
4. A renewal is a new record; verifying it expires the previous active record
   and hands the slot over. A clinic has at most one open renewal order.
5. A valid callback first claims the order (records the payment); nothing
   else changes until that claim succeeds.
6. Lapsed active records are expired lazily on read and eagerly by the sweep.
   Expiry revokes the clinic's emr_enabled flag; a flag left on by a failed
   revoke is turned off by the sweep once its granted expiry has passed.
"""
import asyncio
import logging
import math
import os
import uuid
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any, Callable, Dict, List, Optional

from models import (
    AuditAction,
    ClinicRole,
    EMRSubscription,
    EMRTier,
    OrderType,
    PaymentDetails,
    PendingUpgrade,
    PlanHistoryEntry,
    SubscriptionDuration,
    SubscriptionKind,
    SubscriptionStatus,
    as_utc,
    utc_now,
)
from services.access_policy import AccessDecision, AccessPolicyEvaluator, ScreenResolution
from services.clinic_directory import clinic_directory, staff_directory
from services.entitlement_errors import (
    ClinicNotFound,
    DuplicateActiveSubscription,
    InvalidDuration,
    InvalidPlan,
    InvalidUpgradeDirection,
    NoActiveSubscription,
    NotClinicMember,
    OrderNotFound,
    PaymentGatewayUnavailable,
    RoleNotAllowed,
    SignatureMismatch,
    SubscriptionExpired,
    UpgradeAlreadyPending,
)
from services.notifier import notifier as default_notifier
from services.payment_gateway import PaymentGateway
from services.payment_verifier import PaymentVerifier
from services.plan_catalog import DEFAULT_CATALOG, PlanCatalog
from services.role_resolver import RoleResolutionChain, build_default_role_chain
from services.subscription_store import subscription_store
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PENDING_ORDER_TTL_MINUTES = int(os.getenv("EMR_PENDING_ORDER_TTL_MINUTES", "30"))
GATEWAY_ATTEMPTS = 3
GATEWAY_BACKOFF_SECONDS = 0.5

RESOURCE_TYPE = "emr_subscription"

# Fields written for each transition; everything else on the stored record is left alone
ACTIVATION_FIELDS = ("status", "holds_clinic_slot", "holds_renewal_slot", "start_date", "expiry_date", "payment_details", "updated_at")
CANCEL_FIELDS = ("status", "holds_clinic_slot", "holds_renewal_slot", "cancelled_at", "cancellation_reason", "updated_at")
EXPIRE_FIELDS = ("status", "holds_clinic_slot", "expired_at", "updated_at")


def round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def generate_invoice_number(now: datetime) -> str:
    """EMR-YYYYMMDD-XXXXXXXX"""
    return f"EMR-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


class EMRSubscriptionService:
    """Orchestrates the EMR subscription lifecycle over injected collaborators."""

    def __init__(
        self,
        catalog: PlanCatalog = DEFAULT_CATALOG,
        store=None,
        verifier: Optional[PaymentVerifier] = None,
        gateway: Optional[PaymentGateway] = None,
        clinics=None,
        roles: Optional[RoleResolutionChain] = None,
        notifier=None,
        audit: Callable = create_audit_log,
        now_fn: Callable[[], datetime] = utc_now,
        pending_order_ttl: timedelta = timedelta(minutes=PENDING_ORDER_TTL_MINUTES),
        gateway_attempts: int = GATEWAY_ATTEMPTS,
        gateway_backoff: float = GATEWAY_BACKOFF_SECONDS,
    ):
        self.catalog = catalog
        self.policy = AccessPolicyEvaluator(catalog)
        self.store = store if store is not None else subscription_store
        self.verifier = verifier or PaymentVerifier()
        self.gateway = gateway or PaymentGateway()
        self.clinics = clinics if clinics is not None else clinic_directory
        self.roles = roles or build_default_role_chain(staff_directory, clinic_directory)
        self.notifier = notifier if notifier is not None else default_notifier
        self.audit = audit
        self.now_fn = now_fn
        self.pending_order_ttl = pending_order_ttl
        self.gateway_attempts = max(1, gateway_attempts)
        self.gateway_backoff = gateway_backoff

    # =========================================================================
    # Input resolution
    # =========================================================================

    def _parse_tier(self, tier: Any) -> EMRTier:
        resolved = self.catalog.resolve_tier(tier)
        if resolved is None:
            raise InvalidPlan(tier.value if isinstance(tier, EMRTier) else tier)
        return resolved

    @staticmethod
    def _parse_duration(duration: Any) -> SubscriptionDuration:
        if isinstance(duration, SubscriptionDuration):
            return duration
        try:
            return SubscriptionDuration(str(duration).strip().lower())
        except ValueError:
            raise InvalidDuration(duration)

    async def _require_clinic(self, clinic_id: str) -> Dict[str, Any]:
        clinic = await self.clinics.get_clinic(clinic_id)
        if not clinic:
            raise ClinicNotFound(clinic_id)
        return clinic

    async def _require_role(self, clinic_id: str, user_id: str):
        role = await self.roles.resolve(clinic_id, user_id)
        if role is None:
            raise NotClinicMember(clinic_id, user_id)
        return role

    # =========================================================================
    # Gateway
    # =========================================================================

    async def _create_gateway_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Dict[str, Any],
        subscription_id: Optional[str] = None,
    ) -> str:
        """Create a gateway order, retrying transient failures with exponential backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.gateway_attempts + 1):
            try:
                return await self.gateway.create_order(amount, currency, receipt, notes)
            except PaymentGatewayUnavailable as e:
                last_error = e
                logger.warning(
                    "Gateway order attempt %s/%s failed: receipt=%s error=%s",
                    attempt, self.gateway_attempts, receipt, e,
                )
                if attempt < self.gateway_attempts:
                    await asyncio.sleep(self.gateway_backoff * (2 ** (attempt - 1)))

        logger.error("Gateway order failed after %s attempts: receipt=%s", self.gateway_attempts, receipt)
        raise PaymentGatewayUnavailable(str(last_error), subscription_id=subscription_id)

    @staticmethod
    def _receipt(prefix: str, subscription_id: str, now: datetime) -> str:
        return f"emr_{prefix}_{subscription_id}_{int(now.timestamp())}"

    async def _place_order(
        self,
        record: EMRSubscription,
        receipt: str,
        notes: Dict[str, Any],
        requested_by: Optional[str],
    ) -> str:
        """
        Gateway order for a pending purchase or renewal record. Any failure
        (outage, rejection, missing credentials) marks the attempt failed so the
        next request for the clinic can reuse or abandon it instead of waiting
        out the pending TTL.
        """
        try:
            order_id = await self._create_gateway_order(
                record.payment_details.amount,
                record.payment_details.currency,
                receipt,
                notes,
                subscription_id=record.subscription_id,
            )
        except Exception as e:
            await self.store.mark_gateway_failed(record.subscription_id, str(e) or type(e).__name__)
            await self.audit(
                action=AuditAction.EMR_ORDER_GATEWAY_FAILED,
                actor_id=requested_by,
                clinic_id=record.clinic_id,
                resource_type=RESOURCE_TYPE,
                resource_id=record.subscription_id,
                metadata={
                    "kind": record.kind.value,
                    "plan": record.plan.value,
                    "duration": record.duration.value,
                    "error": type(e).__name__,
                },
            )
            raise

        await self.store.set_gateway_order(record.subscription_id, order_id, receipt)
        record.payment_details.order_id = order_id
        record.payment_details.receipt = receipt
        return order_id

    # =========================================================================
    # Expiry
    # =========================================================================

    async def _expire(self, record: EMRSubscription, now: datetime, revoke: bool = True, notify: bool = True) -> bool:
        """active -> expired. Returns False if another caller expired it first."""
        record.expire(now)
        expired = await self.store.save_transition(
            record,
            SubscriptionStatus.ACTIVE,
            EXPIRE_FIELDS,
            extra={"reminders_sent.expired": True},
        )
        if not expired:
            return False

        logger.info(
            "EMR subscription expired: subscription_id=%s clinic_id=%s plan=%s",
            record.subscription_id, record.clinic_id, record.plan.value,
        )
        if revoke:
            try:
                await self.clinics.revoke_entitlement(record.clinic_id)
            except Exception as e:
                # The expiry is committed; revoke_lapsed_entitlements turns the flag off on the next sweep
                logger.error(
                    "Failed to revoke EMR entitlement: subscription_id=%s clinic_id=%s error=%s",
                    record.subscription_id, record.clinic_id, e,
                )
        await self.audit(
            action=AuditAction.EMR_SUBSCRIPTION_EXPIRED,
            actor_role="system",
            clinic_id=record.clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            metadata={"plan": record.plan.value, "expiry_date": record.expiry_date.isoformat() if record.expiry_date else None},
        )
        if notify:
            await self.notifier.send_expired_notice(
                record.clinic_id,
                record.subscription_id,
                {
                    "plan": record.plan.value,
                    "expired_at": now.isoformat(),
                    "renew_path": "/emr/renew",
                },
            )
        return True

    async def expire_if_lapsed(self, record: EMRSubscription, now: Optional[datetime] = None) -> bool:
        """Expire an active record whose paid period has passed. True if this call expired it."""
        now = now or self.now_fn()
        if record.status != SubscriptionStatus.ACTIVE or not record.is_expired(now):
            return False
        return await self._expire(record, now)

    async def revoke_lapsed_entitlements(self, now: Optional[datetime] = None) -> List[str]:
        """Turn off clinic flags still enabled past their granted expiry. Returns the clinic ids fixed."""
        now = now or self.now_fn()
        revoked = await self.clinics.revoke_lapsed_entitlements(now)
        for clinic_id in revoked:
            await self.audit(
                action=AuditAction.EMR_LAPSED_ENTITLEMENT_REVOKED,
                actor_role="system",
                clinic_id=clinic_id,
                resource_type="clinic",
                resource_id=clinic_id,
                reason_code="ENTITLEMENT_LAPSED",
            )
        return revoked

    async def _get_live_subscription(self, clinic_id: str, now: datetime) -> Optional[EMRSubscription]:
        """The clinic's active, unexpired record; lapsed ones are expired on the way."""
        record = await self.store.get_active_for_clinic(clinic_id)
        if record is None:
            return None
        if record.is_expired(now):
            await self.expire_if_lapsed(record, now)
            return None
        return record

    async def _require_live_subscription(self, clinic_id: str, now: datetime) -> EMRSubscription:
        record = await self.store.get_active_for_clinic(clinic_id)
        if record is None:
            raise NoActiveSubscription(clinic_id)
        if record.is_expired(now):
            await self.expire_if_lapsed(record, now)
            raise SubscriptionExpired(clinic_id, record.expiry_date.isoformat() if record.expiry_date else None)
        return record

    # =========================================================================
    # Order creation
    # =========================================================================

    async def _free_clinic_slot(self, clinic_id: str, plan: EMRTier, duration: SubscriptionDuration, now: datetime):
        """
        Clear the way for a new initial order. Returns the clinic's failed order
        attempt when it can be retried as-is (same plan and duration), else None.
        Raises DuplicateActiveSubscription while a live record holds the slot.
        """
        holder = await self.store.get_slot_holder(clinic_id)
        if holder is None:
            return None

        if holder.status == SubscriptionStatus.ACTIVE:
            if holder.is_expired(now):
                await self.expire_if_lapsed(holder, now)
                return None
            raise DuplicateActiveSubscription(clinic_id, holder.subscription_id)

        if holder.status == SubscriptionStatus.PENDING:
            failed_attempt = holder.payment_details.order_id is None and holder.gateway_error is not None
            if failed_attempt and holder.plan == plan and holder.duration == duration:
                if await self.store.claim_gateway_retry(holder.subscription_id):
                    logger.info("Retrying failed EMR order attempt: %s", holder.subscription_id)
                    return holder
                raise DuplicateActiveSubscription(clinic_id, holder.subscription_id)
            if failed_attempt or now - as_utc(holder.created_at) > self.pending_order_ttl:
                # The abandoned attempt stays pending for audit; only its claim is dropped
                await self.store.release_slot(holder.subscription_id, SubscriptionStatus.PENDING)
                logger.info(
                    "Released stale pending EMR order: subscription_id=%s clinic_id=%s",
                    holder.subscription_id, clinic_id,
                )
                return None
            raise DuplicateActiveSubscription(clinic_id, holder.subscription_id)

        # Terminal record still flagged as holder
        await self.store.release_slot(holder.subscription_id, holder.status)
        return None

    async def create_order(
        self,
        clinic_id: str,
        tier: Any,
        duration: Any,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start an initial EMR purchase.

        Returns the gateway order the client completes checkout against. The
        record is persisted as pending before the gateway is called, so a
        gateway outage leaves a retryable pending record behind.
        """
        plan = self._parse_tier(tier)
        plan_duration = self._parse_duration(duration)
        await self._require_clinic(clinic_id)
        now = self.now_fn()

        price = self.catalog.price_for(plan, plan_duration)
        record = await self._free_clinic_slot(clinic_id, plan, plan_duration, now)
        if record is None:
            record = EMRSubscription(
                clinic_id=clinic_id,
                plan=plan,
                duration=plan_duration,
                status=SubscriptionStatus.PENDING,
                holds_clinic_slot=True,
                limits=self.catalog.limits_for(plan),
                payment_details=PaymentDetails(amount=price.amount, currency=price.currency),
                created_by=requested_by,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert(record)

        order_id = await self._place_order(
            record,
            self._receipt("sub", record.subscription_id, now),
            {
                "type": OrderType.SUBSCRIPTION.value,
                "clinic_id": clinic_id,
                "subscription_id": record.subscription_id,
                "plan": plan.value,
                "duration": plan_duration.value,
            },
            requested_by,
        )

        await self.audit(
            action=AuditAction.EMR_ORDER_CREATED,
            actor_id=requested_by,
            clinic_id=clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            metadata={"order_id": order_id, "plan": plan.value, "duration": plan_duration.value, "amount": price.amount},
        )
        logger.info(
            "EMR order created: clinic_id=%s subscription_id=%s order_id=%s plan=%s duration=%s",
            clinic_id, record.subscription_id, order_id, plan.value, plan_duration.value,
        )

        return {
            "order_id": order_id,
            "subscription_id": record.subscription_id,
            "clinic_id": clinic_id,
            "amount": price.amount,
            "currency": price.currency,
            "plan": plan.value,
            "duration": plan_duration.value,
            "status": record.status.value,
            "key_id": self.gateway.key_id,
        }

    # =========================================================================
    # Payment verification
    # =========================================================================

    async def verify_and_activate(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        verified_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify a checkout callback and apply it to whichever record carries the
        order: an initial or renewal purchase (activate) or a pending upgrade.
        """
        record = await self.store.find_by_order_id(order_id)
        if record is None:
            raise OrderNotFound(order_id)

        now = self.now_fn()
        if record.pending_upgrade is not None and record.pending_upgrade.order_id == order_id:
            return await self._verify_upgrade(record, order_id, payment_id, signature, now, verified_by)

        if record.status != SubscriptionStatus.PENDING:
            raise OrderNotFound(order_id)

        if not self.verifier.verify(order_id, payment_id, signature):
            record.cancel(now, "signature_mismatch")
            # An order whose payment was already claimed by a valid callback is left alone
            cancelled = await self.store.save_transition(
                record,
                SubscriptionStatus.PENDING,
                CANCEL_FIELDS,
                match={"payment_details.payment_id": None},
            )
            logger.warning(
                "EMR payment signature mismatch: order_id=%s subscription_id=%s clinic_id=%s cancelled=%s",
                order_id, record.subscription_id, record.clinic_id, cancelled,
            )
            await self.audit(
                action=AuditAction.EMR_SIGNATURE_MISMATCH,
                actor_id=verified_by,
                clinic_id=record.clinic_id,
                resource_type=RESOURCE_TYPE,
                resource_id=record.subscription_id,
                metadata={"order_id": order_id, "payment_id": payment_id},
                reason_code="SIGNATURE_MISMATCH",
            )
            raise SignatureMismatch(order_id, record.subscription_id)

        record.payment_details.payment_id = payment_id
        record.payment_details.signature = signature
        record.payment_details.paid_at = now
        record.payment_details.invoice_number = generate_invoice_number(now)

        # Nothing is touched until this caller owns the order
        if not await self.store.claim_payment(record):
            raise OrderNotFound(order_id)

        previous_id = None
        if record.kind == SubscriptionKind.RENEWAL and record.previous_subscription_id:
            previous = await self.store.get(record.previous_subscription_id)
            if previous is not None and previous.status == SubscriptionStatus.ACTIVE:
                # Hand the slot over; the renewal re-grants the clinic flag below
                if await self._expire(previous, now, revoke=False, notify=False):
                    previous_id = previous.subscription_id

        record.activate(now)
        try:
            activated = await self.store.save_transition(record, SubscriptionStatus.PENDING, ACTIVATION_FIELDS)
        except DuplicateActiveSubscription:
            if previous_id:
                await self.clinics.revoke_entitlement(record.clinic_id)
            raise
        if not activated:
            if previous_id:
                await self.clinics.revoke_entitlement(record.clinic_id)
            raise OrderNotFound(order_id)

        await self.clinics.grant_entitlement(record.clinic_id, record.plan.value, record.expiry_date)

        action = (
            AuditAction.EMR_SUBSCRIPTION_RENEWED
            if record.kind == SubscriptionKind.RENEWAL
            else AuditAction.EMR_SUBSCRIPTION_ACTIVATED
        )
        await self.audit(
            action=action,
            actor_id=verified_by,
            clinic_id=record.clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            before_state={"status": SubscriptionStatus.PENDING.value},
            after_state={"status": record.status.value, "expiry_date": record.expiry_date.isoformat()},
            metadata={
                "order_id": order_id,
                "payment_id": payment_id,
                "invoice_number": record.payment_details.invoice_number,
                "previous_subscription_id": previous_id,
            },
        )
        logger.info(
            "EMR subscription activated: subscription_id=%s clinic_id=%s plan=%s expiry=%s",
            record.subscription_id, record.clinic_id, record.plan.value, record.expiry_date.isoformat(),
        )

        return {
            "success": True,
            "subscription_id": record.subscription_id,
            "clinic_id": record.clinic_id,
            "kind": record.kind.value,
            "status": record.status.value,
            "plan": record.plan.value,
            "duration": record.duration.value,
            "start_date": record.start_date.isoformat(),
            "expiry_date": record.expiry_date.isoformat(),
            "invoice_number": record.payment_details.invoice_number,
            "previous_subscription_id": previous_id,
        }

    async def _verify_upgrade(
        self,
        record: EMRSubscription,
        order_id: str,
        payment_id: str,
        signature: str,
        now: datetime,
        verified_by: Optional[str],
    ) -> Dict[str, Any]:
        pending = record.pending_upgrade

        if not self.verifier.verify(order_id, payment_id, signature):
            await self.store.clear_pending_upgrade(record.subscription_id, order_id)
            logger.warning(
                "EMR upgrade signature mismatch: order_id=%s subscription_id=%s clinic_id=%s",
                order_id, record.subscription_id, record.clinic_id,
            )
            await self.audit(
                action=AuditAction.EMR_SIGNATURE_MISMATCH,
                actor_id=verified_by,
                clinic_id=record.clinic_id,
                resource_type=RESOURCE_TYPE,
                resource_id=record.subscription_id,
                metadata={"order_id": order_id, "payment_id": payment_id, "type": OrderType.UPGRADE.value},
                reason_code="SIGNATURE_MISMATCH",
            )
            raise SignatureMismatch(order_id, record.subscription_id)

        if record.status != SubscriptionStatus.ACTIVE or record.is_expired(now):
            await self.store.clear_pending_upgrade(record.subscription_id, order_id)
            await self.expire_if_lapsed(record, now)
            raise SubscriptionExpired(record.clinic_id, record.expiry_date.isoformat() if record.expiry_date else None)

        entry = PlanHistoryEntry(
            from_plan=record.plan,
            to_plan=pending.to_plan,
            changed_at=now,
            reason="upgrade",
            order_id=order_id,
            payment_id=payment_id,
            amount=pending.amount,
            invoice_number=generate_invoice_number(now),
        )
        updated = await self.store.apply_upgrade(
            record.subscription_id,
            order_id,
            entry,
            self.catalog.limits_for(pending.to_plan),
        )
        if updated is None:
            raise OrderNotFound(order_id)

        await self.clinics.update_entitlement_plan(record.clinic_id, pending.to_plan.value)
        await self.audit(
            action=AuditAction.EMR_PLAN_UPGRADED,
            actor_id=verified_by,
            clinic_id=record.clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            before_state={"plan": entry.from_plan.value},
            after_state={"plan": entry.to_plan.value},
            metadata={"order_id": order_id, "payment_id": payment_id, "amount": pending.amount},
        )
        logger.info(
            "EMR plan upgraded: subscription_id=%s clinic_id=%s %s -> %s",
            record.subscription_id, record.clinic_id, entry.from_plan.value, entry.to_plan.value,
        )

        return {
            "success": True,
            "subscription_id": updated.subscription_id,
            "clinic_id": updated.clinic_id,
            "kind": OrderType.UPGRADE.value,
            "status": updated.status.value,
            "previous_plan": entry.from_plan.value,
            "plan": updated.plan.value,
            "expiry_date": updated.expiry_date.isoformat() if updated.expiry_date else None,
            "invoice_number": entry.invoice_number,
        }

    # =========================================================================
    # Upgrade
    # =========================================================================

    def calculate_prorated_amount(
        self,
        current_tier: Any,
        target_tier: Any,
        duration: Any,
        days_remaining: int,
    ) -> int:
        """
        Price difference for the rest of the paid period, in whole rupees:

            round_half_up((target_price - current_price) / total_days * days_remaining)

        Exact rational arithmetic; days_remaining is clamped to [0, total_days].
        """
        current = self._parse_tier(current_tier)
        target = self._parse_tier(target_tier)
        plan_duration = self._parse_duration(duration)
        total_days = plan_duration.total_days
        days = min(max(int(days_remaining), 0), total_days)

        current_price = self.catalog.price_for(current, plan_duration).amount
        target_price = self.catalog.price_for(target, plan_duration).amount
        daily_difference = Fraction(target_price, total_days) - Fraction(current_price, total_days)
        return round_half_up(daily_difference * days)

    async def create_upgrade_order(
        self,
        clinic_id: str,
        target_tier: Any,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        target = self._parse_tier(target_tier)
        now = self.now_fn()
        record = await self._require_live_subscription(clinic_id, now)

        if self.catalog.rank(target) <= self.catalog.rank(record.plan):
            raise InvalidUpgradeDirection(record.plan.value, target.value)

        # An unpaid upgrade order is reused for the same target and only replaced once stale
        replaces_order_id = None
        existing = record.pending_upgrade
        if existing is not None:
            if now - as_utc(existing.created_at) <= self.pending_order_ttl:
                if existing.to_plan == target:
                    return self._upgrade_order_payload(record, existing)
                raise UpgradeAlreadyPending(clinic_id, existing.order_id, existing.to_plan.value)
            replaces_order_id = existing.order_id

        days_remaining = record.days_remaining(now)
        amount = self.calculate_prorated_amount(record.plan, target, record.duration, days_remaining)
        currency = self.catalog.currency
        receipt = self._receipt("upg", record.subscription_id, now)
        order_id = await self._create_gateway_order(
            amount,
            currency,
            receipt,
            {
                "type": OrderType.UPGRADE.value,
                "clinic_id": clinic_id,
                "subscription_id": record.subscription_id,
                "from_plan": record.plan.value,
                "to_plan": target.value,
                "days_remaining": days_remaining,
            },
            subscription_id=record.subscription_id,
        )

        pending = PendingUpgrade(
            order_id=order_id,
            to_plan=target,
            amount=amount,
            currency=currency,
            days_remaining=days_remaining,
            requested_by=requested_by,
            created_at=now,
        )
        if not await self.store.set_pending_upgrade(record.subscription_id, pending, replaces_order_id=replaces_order_id):
            current = await self.store.get(record.subscription_id)
            if current is None or current.status != SubscriptionStatus.ACTIVE:
                raise NoActiveSubscription(clinic_id)
            other = current.pending_upgrade
            raise UpgradeAlreadyPending(
                clinic_id,
                other.order_id if other else None,
                other.to_plan.value if other else None,
            )

        await self.audit(
            action=AuditAction.EMR_UPGRADE_ORDER_CREATED,
            actor_id=requested_by,
            clinic_id=clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            metadata={
                "order_id": order_id,
                "from_plan": record.plan.value,
                "to_plan": target.value,
                "amount": amount,
                "days_remaining": days_remaining,
                "replaced_order_id": replaces_order_id,
            },
        )
        logger.info(
            "EMR upgrade order created: subscription_id=%s %s -> %s amount=%s days_remaining=%s replaced=%s",
            record.subscription_id, record.plan.value, target.value, amount, days_remaining, replaces_order_id,
        )
        return self._upgrade_order_payload(record, pending)

    def _upgrade_order_payload(self, record: EMRSubscription, pending: PendingUpgrade) -> Dict[str, Any]:
        return {
            "order_id": pending.order_id,
            "subscription_id": record.subscription_id,
            "clinic_id": record.clinic_id,
            "amount": pending.amount,
            "currency": pending.currency,
            "current_plan": record.plan.value,
            "target_plan": pending.to_plan.value,
            "days_remaining": pending.days_remaining,
            "key_id": self.gateway.key_id,
        }

    # =========================================================================
    # Renewal
    # =========================================================================

    async def _free_renewal_slot(
        self,
        clinic_id: str,
        previous: EMRSubscription,
        duration: SubscriptionDuration,
        now: datetime,
    ) -> Optional[EMRSubscription]:
        """
        Same rules as the initial-order slot, applied to the clinic's one open
        renewal order: a failed attempt for the same renewal is reused, a failed
        or stale one is abandoned (left pending), a fresh one blocks.
        """
        holder = await self.store.get_renewal_holder(clinic_id)
        if holder is None:
            return None

        if holder.status != SubscriptionStatus.PENDING:
            await self.store.release_slot(holder.subscription_id, holder.status, slot="holds_renewal_slot")
            return None

        failed_attempt = holder.payment_details.order_id is None and holder.gateway_error is not None
        same_renewal = (
            holder.previous_subscription_id == previous.subscription_id
            and holder.plan == previous.plan
            and holder.duration == duration
        )
        if failed_attempt and same_renewal:
            if await self.store.claim_gateway_retry(holder.subscription_id):
                logger.info("Retrying failed EMR renewal attempt: %s", holder.subscription_id)
                return holder
            raise DuplicateActiveSubscription(clinic_id, holder.subscription_id)
        if failed_attempt or now - as_utc(holder.created_at) > self.pending_order_ttl:
            await self.store.release_slot(holder.subscription_id, SubscriptionStatus.PENDING, slot="holds_renewal_slot")
            logger.info(
                "Released stale pending EMR renewal: subscription_id=%s clinic_id=%s",
                holder.subscription_id, clinic_id,
            )
            return None
        raise DuplicateActiveSubscription(clinic_id, holder.subscription_id)

    async def create_renewal_order(
        self,
        clinic_id: str,
        duration: Any,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fresh order at the current plan's price, linked to the latest active or expired record."""
        plan_duration = self._parse_duration(duration)
        await self._require_clinic(clinic_id)
        now = self.now_fn()

        previous = await self.store.get_latest_renewable(clinic_id)
        if previous is None:
            raise NoActiveSubscription(clinic_id)
        await self.expire_if_lapsed(previous, now)

        price = self.catalog.price_for(previous.plan, plan_duration)
        record = await self._free_renewal_slot(clinic_id, previous, plan_duration, now)
        if record is None:
            record = EMRSubscription(
                clinic_id=clinic_id,
                plan=previous.plan,
                duration=plan_duration,
                kind=SubscriptionKind.RENEWAL,
                previous_subscription_id=previous.subscription_id,
                status=SubscriptionStatus.PENDING,
                holds_clinic_slot=False,
                holds_renewal_slot=True,
                limits=self.catalog.limits_for(previous.plan),
                payment_details=PaymentDetails(amount=price.amount, currency=price.currency),
                auto_renew=previous.auto_renew,
                created_by=requested_by,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert(record)

        order_id = await self._place_order(
            record,
            self._receipt("ren", record.subscription_id, now),
            {
                "type": OrderType.RENEWAL.value,
                "clinic_id": clinic_id,
                "subscription_id": record.subscription_id,
                "previous_subscription_id": previous.subscription_id,
                "plan": previous.plan.value,
                "duration": plan_duration.value,
            },
            requested_by,
        )

        await self.audit(
            action=AuditAction.EMR_RENEWAL_ORDER_CREATED,
            actor_id=requested_by,
            clinic_id=clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            metadata={
                "order_id": order_id,
                "previous_subscription_id": previous.subscription_id,
                "plan": previous.plan.value,
                "duration": plan_duration.value,
                "amount": price.amount,
            },
        )
        logger.info(
            "EMR renewal order created: clinic_id=%s subscription_id=%s previous=%s",
            clinic_id, record.subscription_id, previous.subscription_id,
        )

        return {
            "order_id": order_id,
            "subscription_id": record.subscription_id,
            "previous_subscription_id": previous.subscription_id,
            "clinic_id": clinic_id,
            "amount": price.amount,
            "currency": price.currency,
            "plan": previous.plan.value,
            "duration": plan_duration.value,
            "key_id": self.gateway.key_id,
        }

    # =========================================================================
    # Access
    # =========================================================================

    def get_screens(self, role: Any, tier: Any) -> ScreenResolution:
        return self.policy.resolve_screens(role, tier)

    async def authorize_clinic_member(self, clinic_id: str, user_id: str) -> ClinicRole:
        return await self._require_role(clinic_id, user_id)

    async def authorize_clinic_admin(self, clinic_id: str, user_id: str) -> ClinicRole:
        """Purchases, renewals, auto-renew and billing history are clinic-admin actions."""
        role = await self._require_role(clinic_id, user_id)
        if role != ClinicRole.ADMIN:
            logger.warning(
                "EMR billing action denied: clinic_id=%s user_id=%s role=%s",
                clinic_id, user_id, role.value,
            )
            raise RoleNotAllowed(role.value, {ClinicRole.ADMIN.value})
        return role

    async def check_access(self, clinic_id: str, user_id: str, screen_id: str) -> AccessDecision:
        """
        Resolve the caller's role and the clinic's live plan, then evaluate.
        Raises NotClinicMember, NoActiveSubscription or SubscriptionExpired
        before evaluation; screen-level denials come back as the decision.
        """
        role = await self._require_role(clinic_id, user_id)
        record = await self._require_live_subscription(clinic_id, self.now_fn())
        return self.policy.evaluate(screen_id, record.plan, role)

    async def get_available_screens(self, clinic_id: str, user_id: str) -> Dict[str, Any]:
        role = await self._require_role(clinic_id, user_id)
        now = self.now_fn()
        record = await self._get_live_subscription(clinic_id, now)
        tier = record.plan if record else None

        resolution = self.policy.resolve_screens(role, tier)
        return {
            "clinic_id": clinic_id,
            "role": role.value,
            "plan": tier.value if tier else None,
            "has_subscription": record is not None,
            **resolution.to_dict(),
            "subscription": self._summarize(record, now) if record else None,
        }

    # =========================================================================
    # Catalog reads
    # =========================================================================

    def list_plans(self) -> Dict[str, Any]:
        return {
            "plans": [plan.to_dict() for plan in self.catalog.list_plans()],
            "currency": self.catalog.currency,
        }

    def get_plan_details(self, tier: Any) -> Dict[str, Any]:
        plan = self.catalog.get_plan(self._parse_tier(tier))
        data = plan.to_dict()
        data["screens"] = [s.to_dict() for s in self.catalog.screens_for_plan(plan.tier)]
        return data

    def list_all_screens(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            tier: [s.to_dict() for s in screens]
            for tier, screens in self.catalog.screens_grouped_by_tier().items()
        }

    # =========================================================================
    # Subscription reads and management
    # =========================================================================

    def _summarize(self, record: EMRSubscription, now: datetime) -> Dict[str, Any]:
        plan = self.catalog.get_plan(record.plan)
        summary = {
            "subscription_id": record.subscription_id,
            "clinic_id": record.clinic_id,
            "plan": record.plan.value,
            "plan_name": plan.name if plan else record.plan.value,
            "features": list(plan.features) if plan else [],
            "duration": record.duration.value,
            "status": record.status.value,
            "start_date": record.start_date.isoformat() if record.start_date else None,
            "expiry_date": record.expiry_date.isoformat() if record.expiry_date else None,
            "days_remaining": record.days_remaining(now),
            "limits": record.limits.model_dump(),
            "auto_renew": record.auto_renew,
            "invoice_number": record.payment_details.invoice_number,
        }
        if record.pending_upgrade:
            summary["pending_upgrade"] = {
                "to_plan": record.pending_upgrade.to_plan.value,
                "amount": record.pending_upgrade.amount,
            }
        return summary

    async def get_active_subscription(self, clinic_id: str) -> Dict[str, Any]:
        now = self.now_fn()
        record = await self._get_live_subscription(clinic_id, now)
        if record is None:
            return {"has_subscription": False, "clinic_id": clinic_id, "subscription": None}
        return {"has_subscription": True, "clinic_id": clinic_id, "subscription": self._summarize(record, now)}

    async def get_subscription_history(self, clinic_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        records = await self.store.list_for_clinic(clinic_id, limit=limit)
        return [
            record.model_dump(mode="json", exclude={"payment_details": {"signature"}})
            for record in records
        ]

    async def toggle_auto_renew(
        self,
        clinic_id: str,
        enabled: bool,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = await self._require_live_subscription(clinic_id, self.now_fn())
        if not await self.store.set_auto_renew(record.subscription_id, enabled):
            raise NoActiveSubscription(clinic_id)

        await self.audit(
            action=AuditAction.EMR_AUTO_RENEW_TOGGLED,
            actor_id=requested_by,
            clinic_id=clinic_id,
            resource_type=RESOURCE_TYPE,
            resource_id=record.subscription_id,
            before_state={"auto_renew": record.auto_renew},
            after_state={"auto_renew": bool(enabled)},
        )
        return {"subscription_id": record.subscription_id, "auto_renew": bool(enabled)}


emr_subscription_service = EMRSubscriptionService()
