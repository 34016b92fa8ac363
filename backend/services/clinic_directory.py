"""Clinic and staff directory lookups used by the EMR entitlement engine.

Collections:
- clinics: clinic_id, owner_id, emr_enabled, emr_plan, emr_expiry_date
- clinic_staff: clinic_id, user_id, role, is_active

The emr_* fields on the clinic are the clinic-level entitlement flag that other
parts of the platform read. They are written here on activation, upgrade and
expiry; a stale emr_enabled=True after expiry would grant EMR access for free.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database

logger = logging.getLogger(__name__)


class ClinicDirectory:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else database.get_db()

    async def get_clinic(self, clinic_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.clinics.find_one({"clinic_id": clinic_id}, {"_id": 0})

    async def get_owner_id(self, clinic_id: str) -> Optional[str]:
        clinic = await self.db.clinics.find_one({"clinic_id": clinic_id}, {"_id": 0, "owner_id": 1})
        return clinic.get("owner_id") if clinic else None

    async def grant_entitlement(self, clinic_id: str, plan: str, expiry_date: datetime) -> None:
        await self.db.clinics.update_one(
            {"clinic_id": clinic_id},
            {"$set": {
                "emr_enabled": True,
                "emr_plan": plan,
                "emr_expiry_date": expiry_date,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        logger.info("EMR entitlement granted: clinic_id=%s plan=%s", clinic_id, plan)

    async def update_entitlement_plan(self, clinic_id: str, plan: str) -> None:
        await self.db.clinics.update_one(
            {"clinic_id": clinic_id},
            {"$set": {"emr_plan": plan, "updated_at": datetime.now(timezone.utc)}},
        )

    async def revoke_entitlement(self, clinic_id: str) -> None:
        await self.db.clinics.update_one(
            {"clinic_id": clinic_id},
            {"$set": {"emr_enabled": False, "updated_at": datetime.now(timezone.utc)}},
        )
        logger.info("EMR entitlement revoked: clinic_id=%s", clinic_id)

    async def revoke_lapsed_entitlements(self, now: datetime, limit: int = 1000) -> List[str]:
        """
        Turn off emr_enabled wherever the granted period has passed. Catches flags
        left on when a revoke failed after the record was expired. A renewal's
        grant moves emr_expiry_date forward, so it never matches.
        """
        lapsed = {"emr_enabled": True, "emr_expiry_date": {"$lt": now}}
        cursor = self.db.clinics.find(lapsed, {"_id": 0, "clinic_id": 1})
        revoked = []
        for clinic in await cursor.to_list(limit):
            result = await self.db.clinics.update_one(
                {"clinic_id": clinic["clinic_id"], **lapsed},
                {"$set": {"emr_enabled": False, "updated_at": datetime.now(timezone.utc)}},
            )
            if result.modified_count == 1:
                revoked.append(clinic["clinic_id"])
        if revoked:
            logger.warning("Revoked lapsed EMR entitlements left enabled: %s", revoked)
        return revoked


class StaffDirectory:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else database.get_db()

    async def get_active_role(self, clinic_id: str, user_id: str) -> Optional[str]:
        staff = await self.db.clinic_staff.find_one(
            {"clinic_id": clinic_id, "user_id": user_id, "is_active": True},
            {"_id": 0, "role": 1},
        )
        return staff.get("role") if staff else None


clinic_directory = ClinicDirectory()
staff_directory = StaffDirectory()
