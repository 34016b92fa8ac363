"""EMR Subscription Store - persistence for EMRSubscription records.

Collection: emr_subscriptions

Every state change is a compare-and-set update filtered on the expected
current state, so concurrent requests and overlapping sweeps cannot apply the
same transition twice. The clinic's single live slot is guarded by the partial
unique index on clinic_id (holds_clinic_slot == true); an insert or update
that would give a clinic a second slot holder fails with DuplicateKeyError.
The same holds for the one open renewal order per clinic (holds_renewal_slot).

Records are never deleted.
"""
from datetime import datetime, time, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from database import database
from models import (
    EMRSubscription,
    PendingUpgrade,
    PlanHistoryEntry,
    PlanLimits,
    ReminderWindow,
    SubscriptionStatus,
    to_bson,
)
from services.entitlement_errors import DuplicateActiveSubscription, SubscriptionStoreUnavailable

logger = logging.getLogger(__name__)

COLLECTION = "emr_subscriptions"


def _store_call(func):
    """Surface connectivity faults as SubscriptionStoreUnavailable."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except ConnectionFailure as e:
            logger.error("Subscription store unavailable in %s: %s", func.__name__, e)
            raise SubscriptionStoreUnavailable(str(e)) from e
    return wrapper


def day_bucket(now: datetime, days_ahead: int):
    """[start, end) of the UTC calendar day that is days_ahead after now."""
    target = (now.astimezone(timezone.utc) + timedelta(days=days_ahead)).date()
    start = datetime.combine(target, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class SubscriptionStore:
    """Motor-backed store for EMR subscription records."""

    def __init__(self, db=None):
        self._db = db

    @property
    def collection(self):
        db = self._db if self._db is not None else database.get_db()
        return db[COLLECTION]

    @staticmethod
    def _to_record(doc: Optional[Dict[str, Any]]) -> Optional[EMRSubscription]:
        return EMRSubscription.from_document(doc) if doc else None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @_store_call
    async def get(self, subscription_id: str) -> Optional[EMRSubscription]:
        doc = await self.collection.find_one({"subscription_id": subscription_id}, {"_id": 0})
        return self._to_record(doc)

    @_store_call
    async def get_active_for_clinic(self, clinic_id: str) -> Optional[EMRSubscription]:
        """Stored status 'active'; callers decide whether it has lapsed."""
        doc = await self.collection.find_one(
            {"clinic_id": clinic_id, "status": SubscriptionStatus.ACTIVE.value},
            {"_id": 0},
        )
        return self._to_record(doc)

    @_store_call
    async def get_slot_holder(self, clinic_id: str) -> Optional[EMRSubscription]:
        doc = await self.collection.find_one(
            {"clinic_id": clinic_id, "holds_clinic_slot": True},
            {"_id": 0},
        )
        return self._to_record(doc)

    @_store_call
    async def get_renewal_holder(self, clinic_id: str) -> Optional[EMRSubscription]:
        doc = await self.collection.find_one(
            {"clinic_id": clinic_id, "holds_renewal_slot": True},
            {"_id": 0},
        )
        return self._to_record(doc)

    @_store_call
    async def find_by_order_id(self, order_id: str) -> Optional[EMRSubscription]:
        """Match either the purchase order or a pending upgrade order."""
        doc = await self.collection.find_one(
            {"$or": [
                {"payment_details.order_id": order_id},
                {"pending_upgrade.order_id": order_id},
            ]},
            {"_id": 0},
        )
        return self._to_record(doc)

    @_store_call
    async def get_latest_renewable(self, clinic_id: str) -> Optional[EMRSubscription]:
        cursor = self.collection.find(
            {
                "clinic_id": clinic_id,
                "status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.EXPIRED.value]},
            },
            {"_id": 0},
        ).sort("created_at", -1).limit(1)
        docs = await cursor.to_list(1)
        return self._to_record(docs[0]) if docs else None

    @_store_call
    async def list_for_clinic(self, clinic_id: str, limit: int = 10) -> List[EMRSubscription]:
        cursor = self.collection.find({"clinic_id": clinic_id}, {"_id": 0}).sort("created_at", -1).limit(limit)
        return [self._to_record(doc) for doc in await cursor.to_list(limit)]

    @_store_call
    async def find_expiring(self, window: ReminderWindow, now: datetime, limit: int = 1000) -> List[EMRSubscription]:
        """
        Active records whose expiry falls on the window's calendar day and that
        have not been reminded for it yet. Flipping the flag drops a record from
        the next page, so callers page by re-querying until a short page.
        """
        start, end = day_bucket(now, window.days_before_expiry)
        cursor = self.collection.find(
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "expiry_date": {"$gte": start, "$lt": end},
                f"reminders_sent.{window.value}": {"$ne": True},
            },
            {"_id": 0},
        ).sort("expiry_date", 1).limit(limit)
        return [self._to_record(doc) for doc in await cursor.to_list(limit)]

    @_store_call
    async def find_lapsed(self, now: datetime, limit: int = 1000) -> List[EMRSubscription]:
        """One page of active records past expiry; expiring them drops them from the next page."""
        cursor = self.collection.find(
            {"status": SubscriptionStatus.ACTIVE.value, "expiry_date": {"$lt": now}},
            {"_id": 0},
        ).sort("expiry_date", 1).limit(limit)
        return [self._to_record(doc) for doc in await cursor.to_list(limit)]

    # -------------------------------------------------------------------------
    # Slot claim
    # -------------------------------------------------------------------------

    @_store_call
    async def insert(self, record: EMRSubscription) -> EMRSubscription:
        """
        Insert a record. If it claims the clinic slot, the unique partial index
        makes this the atomic "no live subscription, then insert" step.
        """
        try:
            await self.collection.insert_one(record.to_document())
        except DuplicateKeyError:
            if record.holds_clinic_slot:
                holder = await self.get_slot_holder(record.clinic_id)
            else:
                holder = await self.get_renewal_holder(record.clinic_id)
            logger.warning(
                "Clinic slot already held: clinic_id=%s holder=%s",
                record.clinic_id, holder.subscription_id if holder else None,
            )
            raise DuplicateActiveSubscription(
                record.clinic_id, holder.subscription_id if holder else None
            )
        return record

    @_store_call
    async def release_slot(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        slot: str = "holds_clinic_slot",
    ) -> bool:
        result = await self.collection.update_one(
            {
                "subscription_id": subscription_id,
                "status": expected_status.value,
                slot: True,
            },
            {"$set": {slot: False, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    # -------------------------------------------------------------------------
    # Compare-and-set writes
    # -------------------------------------------------------------------------

    @_store_call
    async def set_gateway_order(self, subscription_id: str, order_id: str, receipt: str) -> bool:
        result = await self.collection.update_one(
            {"subscription_id": subscription_id, "status": SubscriptionStatus.PENDING.value},
            {"$set": {
                "payment_details.order_id": order_id,
                "payment_details.receipt": receipt,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        return result.modified_count == 1

    @_store_call
    async def mark_gateway_failed(self, subscription_id: str, error: str) -> bool:
        result = await self.collection.update_one(
            {
                "subscription_id": subscription_id,
                "status": SubscriptionStatus.PENDING.value,
                "payment_details.order_id": None,
            },
            {"$set": {"gateway_error": error[:500], "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    @_store_call
    async def claim_gateway_retry(self, subscription_id: str) -> bool:
        """Only one retry of a failed order attempt may reuse the record."""
        result = await self.collection.update_one(
            {
                "subscription_id": subscription_id,
                "status": SubscriptionStatus.PENDING.value,
                "gateway_error": {"$type": "string"},
            },
            {"$set": {"gateway_error": None, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    @_store_call
    async def claim_payment(self, record: EMRSubscription) -> bool:
        """
        Record a verified payment on a pending order that has none yet. The
        caller that wins this owns the order's activation; a forged callback or
        a second submit arriving afterwards can no longer touch it.
        """
        result = await self.collection.update_one(
            {
                "subscription_id": record.subscription_id,
                "status": SubscriptionStatus.PENDING.value,
                "payment_details.payment_id": None,
            },
            {"$set": {
                "payment_details.payment_id": record.payment_details.payment_id,
                "payment_details.signature": record.payment_details.signature,
                "payment_details.paid_at": record.payment_details.paid_at,
                "payment_details.invoice_number": record.payment_details.invoice_number,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        return result.modified_count == 1

    @_store_call
    async def save_transition(
        self,
        record: EMRSubscription,
        expected_status: SubscriptionStatus,
        fields: Iterable[str],
        extra: Optional[Dict[str, Any]] = None,
        match: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Persist the named fields of a record whose status was just changed in
        memory, only if the stored status is still `expected_status` (and the
        stored document matches `match`). Only the named fields are written so
        concurrent reminder flag flips survive. Raises
        DuplicateActiveSubscription if the record claims a clinic slot someone
        else holds.
        """
        doc = record.to_document()
        update = {name: doc[name] for name in fields}
        update.update(extra or {})
        try:
            result = await self.collection.update_one(
                {"subscription_id": record.subscription_id, "status": expected_status.value, **(match or {})},
                {"$set": update},
            )
        except DuplicateKeyError:
            holder = await self.get_slot_holder(record.clinic_id)
            raise DuplicateActiveSubscription(
                record.clinic_id, holder.subscription_id if holder else None
            )
        return result.modified_count == 1

    @_store_call
    async def set_pending_upgrade(
        self,
        subscription_id: str,
        pending: PendingUpgrade,
        replaces_order_id: Optional[str] = None,
    ) -> bool:
        """Attach an upgrade order only if the slot is free (or still holds the one being replaced)."""
        current = {"pending_upgrade.order_id": replaces_order_id} if replaces_order_id else {"pending_upgrade": None}
        result = await self.collection.update_one(
            {"subscription_id": subscription_id, "status": SubscriptionStatus.ACTIVE.value, **current},
            {"$set": {
                "pending_upgrade": to_bson(pending.model_dump(mode="python")),
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        return result.modified_count == 1

    @_store_call
    async def clear_pending_upgrade(self, subscription_id: str, order_id: str) -> bool:
        result = await self.collection.update_one(
            {"subscription_id": subscription_id, "pending_upgrade.order_id": order_id},
            {"$set": {"pending_upgrade": None, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    @_store_call
    async def apply_upgrade(
        self,
        subscription_id: str,
        order_id: str,
        history_entry: PlanHistoryEntry,
        limits: PlanLimits,
    ) -> Optional[EMRSubscription]:
        """Change plan in place and append history; dates are untouched."""
        doc = await self.collection.find_one_and_update(
            {
                "subscription_id": subscription_id,
                "status": SubscriptionStatus.ACTIVE.value,
                "pending_upgrade.order_id": order_id,
            },
            {
                "$set": {
                    "plan": history_entry.to_plan.value,
                    "limits": limits.model_dump(),
                    "pending_upgrade": None,
                    "updated_at": history_entry.changed_at,
                },
                "$push": {"plan_history": to_bson(history_entry.model_dump(mode="python"))},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_record(doc)

    @_store_call
    async def flip_reminder_flag(self, subscription_id: str, window: ReminderWindow) -> bool:
        """The durable commit point for a reminder: only one caller ever gets True."""
        flag = f"reminders_sent.{window.value}"
        result = await self.collection.update_one(
            {"subscription_id": subscription_id, flag: {"$ne": True}},
            {"$set": {flag: True, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count == 1

    @_store_call
    async def set_auto_renew(self, subscription_id: str, enabled: bool) -> bool:
        result = await self.collection.update_one(
            {"subscription_id": subscription_id, "status": SubscriptionStatus.ACTIVE.value},
            {"$set": {"auto_renew": bool(enabled), "updated_at": datetime.now(timezone.utc)}},
        )
        return result.matched_count == 1


# Store over the shared database connection
subscription_store = SubscriptionStore()
