"""
SubscriptionStore against a mocked Motor collection.
- Slot collisions (DuplicateKeyError) surface as DuplicateActiveSubscription
- Transitions are compare-and-set on status and write only the named fields
- Reminder flag flip filters on the flag not already being true
- Sweep reads skip already-reminded records and page by expiry
- A payment is claimed only once per pending order
- Connection failures surface as SubscriptionStoreUnavailable
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import (  # noqa: E402
    EMRSubscription,
    EMRTier,
    PendingUpgrade,
    PlanLimits,
    ReminderWindow,
    SubscriptionDuration,
    SubscriptionKind,
    SubscriptionStatus,
)
from services.entitlement_errors import DuplicateActiveSubscription, SubscriptionStoreUnavailable  # noqa: E402
from services.subscription_store import COLLECTION, SubscriptionStore, day_bucket  # noqa: E402

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _record(**overrides) -> EMRSubscription:
    data = dict(
        clinic_id="clinic_1",
        plan=EMRTier.BASIC,
        duration=SubscriptionDuration.ONE_YEAR,
        status=SubscriptionStatus.PENDING,
        holds_clinic_slot=True,
        limits=PlanLimits(max_doctors=2, max_staff=5),
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return EMRSubscription(**data)


def _store():
    collection = MagicMock()
    collection.update_one = AsyncMock(return_value=MagicMock(modified_count=1, matched_count=1))
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    db = MagicMock()
    db.__getitem__.return_value = collection
    return SubscriptionStore(db=db), collection, db


def _cursor(collection, docs):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    collection.find.return_value = cursor
    return cursor


class TestSlotClaim:
    @pytest.mark.asyncio
    async def test_insert_writes_enum_values(self):
        store, collection, db = _store()
        record = _record()
        await store.insert(record)

        db.__getitem__.assert_called_with(COLLECTION)
        doc = collection.insert_one.call_args[0][0]
        assert doc["status"] == "pending"
        assert doc["plan"] == "basic"
        assert doc["holds_clinic_slot"] is True
        assert doc["limits"] == {"max_doctors": 2, "max_staff": 5}

    @pytest.mark.asyncio
    async def test_duplicate_key_maps_to_duplicate_active_subscription(self):
        store, collection, _ = _store()
        holder = _record(status=SubscriptionStatus.ACTIVE)
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        collection.find_one = AsyncMock(return_value=holder.to_document())

        with pytest.raises(DuplicateActiveSubscription) as exc_info:
            await store.insert(_record())
        assert exc_info.value.details["existing_subscription_id"] == holder.subscription_id
        assert collection.find_one.call_args[0][0] == {"clinic_id": "clinic_1", "holds_clinic_slot": True}

    @pytest.mark.asyncio
    async def test_release_slot_is_conditional(self):
        store, collection, _ = _store()
        assert await store.release_slot("EMRS-1", SubscriptionStatus.PENDING) is True
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-1", "status": "pending", "holds_clinic_slot": True}
        assert update["$set"]["holds_clinic_slot"] is False

    @pytest.mark.asyncio
    async def test_duplicate_renewal_reports_the_open_renewal(self):
        store, collection, _ = _store()
        holder = _record(kind=SubscriptionKind.RENEWAL, holds_clinic_slot=False, holds_renewal_slot=True)
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        collection.find_one = AsyncMock(return_value=holder.to_document())

        renewal = _record(kind=SubscriptionKind.RENEWAL, holds_clinic_slot=False, holds_renewal_slot=True)
        with pytest.raises(DuplicateActiveSubscription) as exc_info:
            await store.insert(renewal)
        assert exc_info.value.details["existing_subscription_id"] == holder.subscription_id
        assert collection.find_one.call_args[0][0] == {"clinic_id": "clinic_1", "holds_renewal_slot": True}

    @pytest.mark.asyncio
    async def test_release_renewal_slot(self):
        store, collection, _ = _store()
        assert await store.release_slot("EMRS-2", SubscriptionStatus.PENDING, slot="holds_renewal_slot") is True
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-2", "status": "pending", "holds_renewal_slot": True}
        assert update["$set"]["holds_renewal_slot"] is False


class TestTransitions:
    @pytest.mark.asyncio
    async def test_save_transition_writes_only_named_fields(self):
        store, collection, _ = _store()
        record = _record()
        record.activate(NOW)

        ok = await store.save_transition(
            record,
            SubscriptionStatus.PENDING,
            ("status", "holds_clinic_slot", "start_date", "expiry_date"),
            extra={"reminders_sent.expired": False},
        )

        assert ok is True
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": record.subscription_id, "status": "pending"}
        assert set(update["$set"]) == {
            "status", "holds_clinic_slot", "start_date", "expiry_date", "reminders_sent.expired",
        }
        assert update["$set"]["status"] == "active"
        assert update["$set"]["expiry_date"] == NOW + timedelta(days=365)

    @pytest.mark.asyncio
    async def test_save_transition_reports_lost_race(self):
        store, collection, _ = _store()
        collection.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
        record = _record(status=SubscriptionStatus.ACTIVE, expiry_date=NOW)
        record.expire(NOW)
        assert await store.save_transition(record, SubscriptionStatus.ACTIVE, ("status",)) is False

    @pytest.mark.asyncio
    async def test_save_transition_slot_collision(self):
        store, collection, _ = _store()
        collection.update_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        record = _record()
        record.activate(NOW)
        with pytest.raises(DuplicateActiveSubscription):
            await store.save_transition(record, SubscriptionStatus.PENDING, ("status", "holds_clinic_slot"))

    @pytest.mark.asyncio
    async def test_save_transition_extra_match(self):
        store, collection, _ = _store()
        record = _record()
        record.cancel(NOW, "signature mismatch")
        await store.save_transition(
            record,
            SubscriptionStatus.PENDING,
            ("status",),
            match={"payment_details.payment_id": None},
        )
        filt, _ = collection.update_one.call_args[0]
        assert filt == {
            "subscription_id": record.subscription_id,
            "status": "pending",
            "payment_details.payment_id": None,
        }

    @pytest.mark.asyncio
    async def test_claim_payment_only_once(self):
        store, collection, _ = _store()
        record = _record()
        record.payment_details.payment_id = "pay_1"
        record.payment_details.signature = "sig"
        record.payment_details.paid_at = NOW

        assert await store.claim_payment(record) is True
        filt, update = collection.update_one.call_args[0]
        assert filt == {
            "subscription_id": record.subscription_id,
            "status": "pending",
            "payment_details.payment_id": None,
        }
        assert update["$set"]["payment_details.payment_id"] == "pay_1"
        assert update["$set"]["payment_details.paid_at"] == NOW

        collection.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
        assert await store.claim_payment(record) is False

    @pytest.mark.asyncio
    async def test_set_pending_upgrade_needs_free_slot(self):
        store, collection, _ = _store()
        pending = PendingUpgrade(order_id="order_new", to_plan=EMRTier.ADVANCED, amount=100, days_remaining=90)

        await store.set_pending_upgrade("EMRS-1", pending)
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-1", "status": "active", "pending_upgrade": None}
        assert update["$set"]["pending_upgrade"]["order_id"] == "order_new"

        await store.set_pending_upgrade("EMRS-1", pending, replaces_order_id="order_old")
        filt, _ = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-1", "status": "active", "pending_upgrade.order_id": "order_old"}

    @pytest.mark.asyncio
    async def test_flip_reminder_flag_filters_on_unset_flag(self):
        store, collection, _ = _store()
        assert await store.flip_reminder_flag("EMRS-1", ReminderWindow.SEVEN_DAYS) is True
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-1", "reminders_sent.seven_days": {"$ne": True}}
        assert update["$set"]["reminders_sent.seven_days"] is True

        collection.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
        assert await store.flip_reminder_flag("EMRS-1", ReminderWindow.SEVEN_DAYS) is False

    @pytest.mark.asyncio
    async def test_gateway_failure_marker(self):
        store, collection, _ = _store()
        await store.mark_gateway_failed("EMRS-1", "x" * 900)
        filt, update = collection.update_one.call_args[0]
        assert filt == {"subscription_id": "EMRS-1", "status": "pending", "payment_details.order_id": None}
        assert len(update["$set"]["gateway_error"]) == 500

        await store.claim_gateway_retry("EMRS-1")
        filt, update = collection.update_one.call_args[0]
        assert filt["gateway_error"] == {"$type": "string"}
        assert update["$set"]["gateway_error"] is None


class TestReads:
    @pytest.mark.asyncio
    async def test_find_by_order_id_matches_purchase_or_upgrade(self):
        store, collection, _ = _store()
        record = _record(status=SubscriptionStatus.ACTIVE)
        collection.find_one = AsyncMock(return_value={"_id": "mongo-id", **record.to_document()})

        found = await store.find_by_order_id("order_1")
        assert found.subscription_id == record.subscription_id
        assert collection.find_one.call_args[0][0] == {"$or": [
            {"payment_details.order_id": "order_1"},
            {"pending_upgrade.order_id": "order_1"},
        ]}

    @pytest.mark.asyncio
    async def test_naive_datetimes_from_mongo_are_treated_as_utc(self):
        store, collection, _ = _store()
        doc = _record(status=SubscriptionStatus.ACTIVE).to_document()
        doc["expiry_date"] = datetime(2026, 3, 1, 9, 0)
        collection.find_one = AsyncMock(return_value=doc)

        record = await store.get_active_for_clinic("clinic_1")
        assert record.is_expired(NOW) is True
        assert record.days_remaining(NOW) == 0

    @pytest.mark.asyncio
    async def test_get_latest_renewable_sorts_newest_first(self):
        store, collection, _ = _store()
        record = _record(status=SubscriptionStatus.EXPIRED)
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[record.to_document()])
        collection.find.return_value = cursor

        found = await store.get_latest_renewable("clinic_1")
        assert found.subscription_id == record.subscription_id
        assert collection.find.call_args[0][0]["status"] == {"$in": ["active", "expired"]}
        cursor.sort.assert_called_with("created_at", -1)

    @pytest.mark.asyncio
    async def test_find_expiring_skips_reminded_and_pages(self):
        store, collection, _ = _store()
        cursor = _cursor(collection, [_record(status=SubscriptionStatus.ACTIVE, expiry_date=NOW).to_document()])

        found = await store.find_expiring(ReminderWindow.SEVEN_DAYS, NOW, limit=50)

        assert len(found) == 1
        filt = collection.find.call_args[0][0]
        assert filt["status"] == "active"
        assert filt["reminders_sent.seven_days"] == {"$ne": True}
        assert filt["expiry_date"] == {
            "$gte": datetime(2026, 3, 8, tzinfo=timezone.utc),
            "$lt": datetime(2026, 3, 9, tzinfo=timezone.utc),
        }
        cursor.sort.assert_called_with("expiry_date", 1)
        cursor.limit.assert_called_with(50)
        cursor.to_list.assert_awaited_with(50)

    @pytest.mark.asyncio
    async def test_find_lapsed_pages_oldest_first(self):
        store, collection, _ = _store()
        cursor = _cursor(collection, [])

        assert await store.find_lapsed(NOW, limit=20) == []
        assert collection.find.call_args[0][0] == {"status": "active", "expiry_date": {"$lt": NOW}}
        cursor.sort.assert_called_with("expiry_date", 1)
        cursor.limit.assert_called_with(20)

    @pytest.mark.asyncio
    async def test_connection_failure_maps_to_store_unavailable(self):
        store, collection, _ = _store()
        collection.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
        with pytest.raises(SubscriptionStoreUnavailable):
            await store.get("EMRS-1")


def test_day_bucket_is_utc_calendar_day():
    start, end = day_bucket(datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc), 7)
    assert start == datetime(2026, 3, 8, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 9, tzinfo=timezone.utc)

    # Non-UTC input is normalised first
    ist = timezone(timedelta(hours=5, minutes=30))
    start, _ = day_bucket(datetime(2026, 3, 2, 2, 0, tzinfo=ist), 1)
    assert start == datetime(2026, 3, 2, tzinfo=timezone.utc)
