"""
Scheduled tasks for HomeXpert
- Subscription expiry (hourly)
- Support tickets past their response SLA (hourly)
- Subscription expiry reminders (daily at 09:00)
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import SCHEDULER_TIMEZONE

logger = logging.getLogger("scheduler")


class TaskScheduler:
    """Scheduled job manager"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)

    def start(self):
        """Register every job and start the scheduler"""
        self.scheduler.add_job(
            self.expire_subscriptions,
            CronTrigger(minute=5),
            id="expire_subscriptions",
            name="Expire subscriptions",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.flag_overdue_tickets,
            CronTrigger(minute=35),
            id="flag_overdue_tickets",
            name="Flag overdue support tickets",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.send_expiry_reminders,
            CronTrigger(hour=9, minute=0),
            id="send_expiry_reminders",
            name="Subscription expiry reminders",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info(f"[SCHEDULER] Started ({SCHEDULER_TIMEZONE})")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("[SCHEDULER] Stopped")

    # ==================== JOBS ====================

    async def _run(self, name: str, job):
        """Run one job. A failure is logged and mailed to the admin, never re-raised."""
        try:
            return await job()
        except Exception as e:
            logger.error(f"[SCHEDULER] {name} failed: {str(e)}")
            from email_service import email_service
            email_service.send_admin_alert("SCHEDULER_ERROR", f"Job {name} failed", {"error": str(e)})
            return None

    async def expire_subscriptions(self):
        from services.subscription_service import expire_subscriptions

        result = await self._run("expire_subscriptions", expire_subscriptions)
        if result is not None:
            logger.info(f"[SCHEDULER] expire_subscriptions: {result}")

    async def flag_overdue_tickets(self):
        from services.support_service import flag_overdue_tickets

        flagged = await self._run("flag_overdue_tickets", flag_overdue_tickets)
        if flagged is not None:
            logger.info(f"[SCHEDULER] flag_overdue_tickets: {len(flagged)} flagged")

    async def send_expiry_reminders(self):
        from services.subscription_service import send_expiry_reminders

        sent = await self._run("send_expiry_reminders", send_expiry_reminders)
        if sent is not None:
            logger.info(f"[SCHEDULER] send_expiry_reminders: {sent} reminder(s)")


task_scheduler = TaskScheduler()
