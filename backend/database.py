from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so expiry comparisons never mix naive and aware datetimes
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes for EMR entitlement lookups."""
        await create_emr_indexes(self.db)


async def create_emr_indexes(db):
    # One live slot per clinic: a pending initial order or the active subscription.
    # This is the atomic guard behind "at most one active subscription per clinic".
    await db.emr_subscriptions.create_index(
        "clinic_id",
        unique=True,
        partialFilterExpression={"holds_clinic_slot": True},
        name="uniq_clinic_live_slot",
    )
    # One open renewal order per clinic
    await db.emr_subscriptions.create_index(
        [("clinic_id", 1), ("kind", 1)],
        unique=True,
        partialFilterExpression={"holds_renewal_slot": True},
        name="uniq_clinic_open_renewal",
    )
    await db.emr_subscriptions.create_index("subscription_id", unique=True)
    # order_id is null until the gateway answers, so only index real ids
    await db.emr_subscriptions.create_index(
        "payment_details.order_id",
        unique=True,
        partialFilterExpression={"payment_details.order_id": {"$type": "string"}},
    )
    await db.emr_subscriptions.create_index(
        "pending_upgrade.order_id",
        partialFilterExpression={"pending_upgrade.order_id": {"$type": "string"}},
    )
    await db.emr_subscriptions.create_index([("clinic_id", 1), ("created_at", -1)])
    # Sweeps scan active records by expiry
    await db.emr_subscriptions.create_index([("status", 1), ("expiry_date", 1)])

    await db.clinics.create_index("clinic_id", unique=True)
    await db.clinic_staff.create_index([("clinic_id", 1), ("user_id", 1)])

    await db.audit_logs.create_index([("clinic_id", 1), ("timestamp", -1)])
    await db.notification_messages.create_index([("clinic_id", 1), ("created_at", -1)])
    logger.info("EMR indexes ensured")


database = Database()
