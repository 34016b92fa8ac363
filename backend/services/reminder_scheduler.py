"""
EMR reminder and expiry sweeps.

Reminder windows are 30, 7 and 1 days before expiry, matched by the UTC
calendar day of expiry_date. Each window's flag is flipped with a
compare-and-set update before the reminder is emitted, so overlapping sweeps
and re-runs on the same day emit at most once. A notifier failure after the
flip is logged and not retried.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from models import AuditAction, EMRSubscription, ReminderWindow, UPCOMING_REMINDER_WINDOWS, utc_now
from services.subscription_store import subscription_store
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 500


class EMRReminderScheduler:
    def __init__(
        self,
        service=None,
        store=None,
        notifier=None,
        audit: Callable = create_audit_log,
        now_fn: Callable[[], datetime] = utc_now,
        batch_size: int = SWEEP_BATCH_SIZE,
    ):
        if service is None:
            from services.subscription_service import emr_subscription_service
            service = emr_subscription_service
        self.service = service
        self.store = store if store is not None else subscription_store
        self.notifier = notifier if notifier is not None else service.notifier
        self.audit = audit
        self.now_fn = now_fn
        self.batch_size = max(1, batch_size)

    async def run_expiry_sweep(self) -> int:
        """
        Expire every active record past its expiry date, then turn off any
        clinic flag still enabled past its granted expiry. Returns the number
        newly expired.
        """
        now = self.now_fn()
        logger.info("Running EMR expiry sweep...")

        expired_count = 0
        while True:
            page = await self.store.find_lapsed(now, limit=self.batch_size)
            expired_in_page = 0
            for record in page:
                try:
                    if await self.service.expire_if_lapsed(record, now):
                        expired_in_page += 1
                except Exception as e:
                    logger.error(f"Failed to expire EMR subscription {record.subscription_id}: {e}")
            expired_count += expired_in_page
            # A page where nothing could be expired would come back unchanged
            if len(page) < self.batch_size or expired_in_page == 0:
                break

        try:
            revoked = await self.service.revoke_lapsed_entitlements(now)
        except Exception as e:
            logger.error(f"Failed to revoke lapsed EMR entitlements: {e}")
        else:
            if revoked:
                logger.info(f"Revoked {len(revoked)} lapsed EMR entitlements left enabled.")

        logger.info(f"EMR expiry sweep complete. Expired {expired_count} subscriptions.")
        return expired_count

    async def run_reminder_sweep(self) -> List[Dict[str, Any]]:
        """Emit due expiry reminders. Returns one entry per reminder emitted by this run."""
        now = self.now_fn()
        logger.info("Running EMR reminder sweep...")

        emitted = []
        for window in UPCOMING_REMINDER_WINDOWS:
            while True:
                # Only records not yet flagged for this window come back
                page = await self.store.find_expiring(window, now, limit=self.batch_size)
                flipped = 0
                for record in page:
                    reminder = await self._emit_reminder(record, window, now)
                    if reminder:
                        emitted.append(reminder)
                        flipped += 1
                if len(page) < self.batch_size or flipped == 0:
                    break

        logger.info(f"EMR reminder sweep complete. Sent {len(emitted)} reminders.")
        return emitted

    async def _emit_reminder(
        self,
        record: EMRSubscription,
        window: ReminderWindow,
        now: datetime,
    ) -> Optional[Dict[str, Any]]:
        # Commit point: only the caller that flips the flag emits
        if not await self.store.flip_reminder_flag(record.subscription_id, window):
            return None

        plan = self.service.catalog.get_plan(record.plan)
        payload = {
            "plan": record.plan.value,
            "plan_name": plan.name if plan else record.plan.value,
            "expiry_date": record.expiry_date.isoformat() if record.expiry_date else None,
            "days_remaining": record.days_remaining(now),
            "auto_renew": record.auto_renew,
            "renew_path": "/emr/renew",
        }

        delivered = False
        try:
            result = await self.notifier.send_expiry_reminder(
                record.clinic_id, record.subscription_id, window, payload
            )
            delivered = result.ok
        except Exception as e:
            logger.error(f"EMR reminder delivery failed for {record.subscription_id} ({window.value}): {e}")

        await self.audit(
            action=AuditAction.EMR_REMINDER_SENT,
            actor_role="system",
            clinic_id=record.clinic_id,
            resource_type="emr_subscription",
            resource_id=record.subscription_id,
            metadata={"window": window.value, "delivered": delivered},
        )
        logger.info(
            "EMR reminder emitted: subscription_id=%s clinic_id=%s window=%s delivered=%s",
            record.subscription_id, record.clinic_id, window.value, delivered,
        )
        return {
            "subscription_id": record.subscription_id,
            "clinic_id": record.clinic_id,
            "window": window.value,
            "days_before_expiry": window.days_before_expiry,
            "delivered": delivered,
        }
