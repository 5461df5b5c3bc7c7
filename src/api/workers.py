import asyncio
import logging

from api import state
from schedule_ai.models import DueReminder

logger = logging.getLogger(__name__)


async def _log_dispatcher(reminder: DueReminder) -> None:
    # Delivery channels live outside this service; the log line is the hand-off.
    logger.info(
        f"Reminder [{reminder.delivery_method}] for {reminder.user_id}: "
        f"{reminder.title} ({reminder.target} {reminder.target_id})"
    )


async def _notification_worker() -> None:
    """Background worker that dispatches due reminders."""
    logger.info("Notification worker started")

    while True:
        services = state.services
        if services is None:
            await asyncio.sleep(1.0)
            continue

        try:
            sent = await services.notifications.dispatch_due(_log_dispatcher)
            if sent > 0:
                logger.info(f"Dispatched {sent} reminders")
        except Exception as e:
            logger.exception(f"Error in notification worker: {e}")

        await asyncio.sleep(services.settings.notification_poll_interval_s)


async def _stale_recovery_worker() -> None:
    """Periodically release AI analysis claims held past the timeout."""
    logger.info("Stale recovery worker started")

    while True:
        services = state.services
        if services is None:
            await asyncio.sleep(1.0)
            continue

        await asyncio.sleep(services.settings.stale_recovery_interval_s)

        try:
            recovered = await services.recovery.recover_stale(services.settings.stale_claim_timeout_min)
            if recovered > 0:
                logger.warning(f"Recovered {recovered} stale analysis claims")
        except Exception as e:
            logger.error(f"Error in stale recovery worker: {e}")
