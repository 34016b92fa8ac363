"""
EMR Notifier - fire-and-forget outbound events.
Expiry reminders, expired notices and upgrade prompts are written to the
notification_messages outbox; the platform's transport drains it.
A failure here is logged and reported in the result, never raised: the caller
has already committed its state change.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from database import database
from models import NotificationMessage, ReminderWindow, to_bson

logger = logging.getLogger(__name__)

EVENT_EXPIRY_REMINDER = "emr.expiry_reminder"
EVENT_EXPIRED = "emr.expired"
EVENT_UPGRADE_PROMPT = "emr.upgrade_prompt"


@dataclass
class NotifyResult:
    outcome: str  # queued | failed
    message_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == "queued"


class EMRNotifier:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        return self._db if self._db is not None else database.get_db()

    async def send(self, message: NotificationMessage) -> NotifyResult:
        try:
            await self.db.notification_messages.insert_one(to_bson(message.model_dump(mode="python")))
        except Exception as e:
            logger.error(
                "EMR notification failed: event=%s clinic_id=%s error=%s",
                message.event_type, message.clinic_id, e,
            )
            return NotifyResult(outcome="failed", message_id=message.message_id, error_message=str(e))

        logger.info(
            "EMR notification queued: event=%s clinic_id=%s message_id=%s",
            message.event_type, message.clinic_id, message.message_id,
        )
        return NotifyResult(outcome="queued", message_id=message.message_id)

    async def send_expiry_reminder(
        self,
        clinic_id: str,
        subscription_id: str,
        window: ReminderWindow,
        payload: Dict[str, Any],
    ) -> NotifyResult:
        return await self.send(NotificationMessage(
            clinic_id=clinic_id,
            subscription_id=subscription_id,
            event_type=EVENT_EXPIRY_REMINDER,
            reminder_window=window,
            days_before_expiry=window.days_before_expiry,
            payload=payload,
        ))

    async def send_expired_notice(self, clinic_id: str, subscription_id: str, payload: Dict[str, Any]) -> NotifyResult:
        return await self.send(NotificationMessage(
            clinic_id=clinic_id,
            subscription_id=subscription_id,
            event_type=EVENT_EXPIRED,
            reminder_window=ReminderWindow.EXPIRED,
            payload=payload,
        ))

    async def send_upgrade_prompt(self, clinic_id: str, user_id: str, hint: Dict[str, Any]) -> NotifyResult:
        return await self.send(NotificationMessage(
            clinic_id=clinic_id,
            event_type=EVENT_UPGRADE_PROMPT,
            payload={"user_id": user_id, **hint},
        ))


notifier = EMRNotifier()
