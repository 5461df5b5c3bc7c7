"""
Reminder selection and at-most-once marking.

``due_notifications`` is a pure read and safe to poll. Only the ``mark_*``
calls mutate, each as a conditional update on ``notification_sent = false``,
so two schedulers racing on the same reminder get exactly one ``True``.
Callers mark after dispatching; a failed dispatch leaves the reminder due.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from schedule_ai.metrics import NOTIFICATIONS_MARKED_TOTAL
from schedule_ai.models import Clock, DeliveryMethod, DueReminder, Event, OptimizedScheduleSlot
from storage.base import AnalysisStore, EventQuery, EventStore, SlotQuery

logger = logging.getLogger(__name__)

PRIORITY_LEVELS = {"critical": 1, "high": 2, "medium": 3, "low": 4}

Dispatcher = Callable[[DueReminder], Awaitable[None]]


def delivery_method_for(priority: str) -> DeliveryMethod:
    if priority == "critical":
        return "push"
    if priority == "high":
        return "email"
    return "in_app"


def _event_label(priority: int) -> str:
    if priority <= 1:
        return "critical"
    if priority == 2:
        return "high"
    if priority == 3:
        return "medium"
    return "low"


def _until(start: datetime, now: datetime) -> str:
    minutes = int((start - now).total_seconds() // 60)
    if minutes <= 0:
        return "now"
    if minutes < 60:
        return f"in {minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"in {hours}h {rest:02d}m" if rest else f"in {hours}h"


def reminder_title(title: str, priority: str, start: datetime, now: datetime) -> str:
    when = _until(start, now)
    if priority == "critical":
        return f"URGENT: {title} {when}"
    if priority == "high":
        return f"Important: {title} {when}"
    return f"Reminder: {title} {when}"


def slot_message(slot: OptimizedScheduleSlot) -> str:
    message = f"'{slot.task_title}' from {slot.start_time:%H:%M} to {slot.end_time:%H:%M}"
    if slot.location:
        message += f" at {slot.location}"
    if slot.task_description:
        message += f"\n\nDetails: {slot.task_description}"
    if slot.reasoning:
        message += f"\n\nWhy this time: {slot.reasoning}"
    return message


def event_message(event: Event) -> str:
    message = f"'{event.title}' starts at {event.start_at:%H:%M}"
    if event.location:
        message += f" at {event.location}"
    if event.description:
        message += f"\n\nDetails: {event.description}"
    return message


class NotificationScheduler:
    def __init__(self, analyses: AnalysisStore, events: EventStore, clock: Clock = datetime.now):
        self.analyses = analyses
        self.events = events
        self.clock = clock

    async def due_notifications(self, now: Optional[datetime] = None) -> List[DueReminder]:
        now = now or self.clock()
        due: List[DueReminder] = []

        for slot in await self.analyses.list_slots(SlotQuery(status="scheduled", notification_sent=False)):
            if now < slot.reminder_at:
                continue
            due.append(
                DueReminder(
                    target="slot",
                    target_id=slot.id,
                    user_id=slot.user_id,
                    title=reminder_title(slot.task_title, slot.priority, slot.start_datetime, now),
                    message=slot_message(slot),
                    start_at=slot.start_datetime,
                    trigger_at=slot.reminder_at,
                    priority_level=PRIORITY_LEVELS[slot.priority],
                    delivery_method=delivery_method_for(slot.priority),
                )
            )

        events = await self.events.list_events(
            EventQuery(status="scheduled", notification_sent=False, has_reminder=True)
        )
        for event in events:
            if event.start_at is None:
                continue
            trigger_at = event.start_at - timedelta(minutes=event.reminder_minutes_before or 0)
            if now < trigger_at:
                continue
            label = _event_label(event.priority)
            due.append(
                DueReminder(
                    target="event",
                    target_id=event.id,
                    user_id=event.user_id,
                    title=reminder_title(event.title, label, event.start_at, now),
                    message=event_message(event),
                    start_at=event.start_at,
                    trigger_at=trigger_at,
                    priority_level=PRIORITY_LEVELS[label],
                    delivery_method=delivery_method_for(label),
                )
            )

        due.sort(key=lambda r: r.trigger_at)
        return due

    async def mark_slot_sent(self, slot_id: str, now: Optional[datetime] = None) -> bool:
        changed = await self.analyses.mark_slot_notified(slot_id, now or self.clock())
        if changed:
            NOTIFICATIONS_MARKED_TOTAL.labels(target="slot").inc()
        else:
            logger.info(f"Slot {slot_id} reminder was already marked sent")
        return changed

    async def mark_event_sent(self, event_id: str, now: Optional[datetime] = None) -> bool:
        changed = await self.events.mark_event_notified(event_id, now or self.clock())
        if changed:
            NOTIFICATIONS_MARKED_TOTAL.labels(target="event").inc()
        else:
            logger.info(f"Event {event_id} reminder was already marked sent")
        return changed

    async def mark_sent(self, reminder: DueReminder, now: Optional[datetime] = None) -> bool:
        if reminder.target == "slot":
            return await self.mark_slot_sent(reminder.target_id, now)
        return await self.mark_event_sent(reminder.target_id, now)

    async def dispatch_due(self, dispatcher: Dispatcher, now: Optional[datetime] = None) -> int:
        """Dispatch every due reminder, marking each one only after it went out."""
        sent = 0
        for reminder in await self.due_notifications(now):
            try:
                await dispatcher(reminder)
            except Exception:
                logger.exception(f"Dispatch failed for {reminder.target} {reminder.target_id}; will retry")
                continue
            if await self.mark_sent(reminder, now):
                sent += 1
        return sent
