"""
Shared job runner for scheduled EMR background jobs.
Used by server (scheduler) and admin routes (manual run).
Each run_* returns a dict with "message" and "count" for the admin toast.
"""
import logging

logger = logging.getLogger(__name__)


async def run_emr_expiry_sweep():
    try:
        from services.reminder_scheduler import EMRReminderScheduler
        count = await EMRReminderScheduler().run_expiry_sweep()
        logger.info(f"EMR expiry sweep job completed: {count} subscriptions expired")
        return {"message": f"EMR subscriptions expired: {count}", "count": count}
    except Exception as e:
        logger.error(f"EMR expiry sweep job failed: {e}")
        raise


async def run_emr_reminder_sweep():
    try:
        from services.reminder_scheduler import EMRReminderScheduler
        reminders = await EMRReminderScheduler().run_reminder_sweep()
        logger.info(f"EMR reminder sweep job completed: {len(reminders)} reminders sent")
        return {"message": f"EMR reminders sent: {len(reminders)}", "count": len(reminders)}
    except Exception as e:
        logger.error(f"EMR reminder sweep job failed: {e}")
        raise
