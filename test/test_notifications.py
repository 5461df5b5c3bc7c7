import asyncio
from datetime import date, datetime, time, timedelta, timezone

import pytest

from api.state import build_services
from conftest import NOW
from llm.llm_client import LLMClient, LLMScheduleOptimizer, LLMTextAnalyzer
from schedule_ai.models import AiScheduleAnalysis, Event, OptimizedScheduleSlot
from scheduling.notifications import NotificationScheduler, delivery_method_for, reminder_title
from storage.base import EventQuery
from storage.preferences_store import PreferencesStore


async def _slot(analyses, start, priority="medium", reminder=15, **kw):
    analysis = await analyses.create_analysis(AiScheduleAnalysis(user_id="u1", target_date=start.date()))
    slot = OptimizedScheduleSlot(
        analysis_id=analysis.id,
        user_id="u1",
        date=start.date(),
        start_time=start.time(),
        end_time=(start + timedelta(minutes=30)).time(),
        task_title="Write report",
        priority=priority,
        reminder_minutes_before=reminder,
        **kw,
    )
    await analyses.save_result(analysis, [slot])
    return slot


def _scheduler(stores, clock):
    _, events, analyses, _ = stores
    return NotificationScheduler(analyses, events, clock=clock)


@pytest.mark.asyncio
async def test_due_selection(stores, clock):
    _, events, analyses, _ = stores
    due_slot = await _slot(analyses, NOW + timedelta(minutes=10))
    await _slot(analyses, NOW + timedelta(hours=2))
    await _slot(analyses, NOW + timedelta(minutes=5), status="cancelled")
    await _slot(analyses, NOW + timedelta(minutes=5), notification_sent=True)
    due_event = await events.create_event(
        Event(user_id="u1", title="Dentist", start_at=NOW + timedelta(minutes=20), reminder_minutes_before=30, priority=1)
    )
    await events.create_event(Event(user_id="u1", title="No reminder", start_at=NOW))
    await events.create_event(Event(user_id="u1", title="Undated", reminder_minutes_before=10))

    due = await _scheduler(stores, clock).due_notifications()

    assert [(r.target, r.target_id) for r in due] == [("event", due_event.id), ("slot", due_slot.id)]
    event_reminder, slot_reminder = due
    assert event_reminder.title == "URGENT: Dentist in 20 min"
    assert event_reminder.delivery_method == "push"
    assert slot_reminder.title == "Reminder: Write report in 10 min"
    assert slot_reminder.priority_level == 3


@pytest.mark.asyncio
async def test_due_selection_does_not_mutate(stores, clock):
    _, _, analyses, _ = stores
    slot = await _slot(analyses, NOW)
    scheduler = _scheduler(stores, clock)
    assert len(await scheduler.due_notifications()) == 1
    assert len(await scheduler.due_notifications()) == 1
    assert not (await analyses.get_slot(slot.id)).notification_sent


@pytest.mark.asyncio
async def test_concurrent_mark_sent_only_one_wins(stores, clock):
    _, _, analyses, _ = stores
    slot = await _slot(analyses, NOW)
    scheduler = _scheduler(stores, clock)

    results = await asyncio.gather(scheduler.mark_slot_sent(slot.id), scheduler.mark_slot_sent(slot.id))

    assert sorted(results) == [False, True]
    stored = await analyses.get_slot(slot.id)
    assert stored.notification_sent
    assert stored.notification_sent_at == NOW
    assert await scheduler.due_notifications() == []


@pytest.mark.asyncio
async def test_mark_event_sent(stores, clock):
    _, events, _, _ = stores
    event = await events.create_event(Event(user_id="u1", title="Call", start_at=NOW, reminder_minutes_before=5))
    scheduler = _scheduler(stores, clock)
    assert await scheduler.mark_event_sent(event.id)
    assert not await scheduler.mark_event_sent(event.id)


@pytest.mark.asyncio
async def test_dispatch_marks_only_successful_sends(stores, clock):
    _, _, analyses, _ = stores
    ok = await _slot(analyses, NOW, priority="high")
    broken = await _slot(analyses, NOW + timedelta(minutes=1))
    sent = []

    async def dispatcher(reminder):
        if reminder.target_id == broken.id:
            raise ConnectionError("smtp down")
        sent.append(reminder.target_id)

    scheduler = _scheduler(stores, clock)
    assert await scheduler.dispatch_due(dispatcher) == 1
    assert sent == [ok.id]
    assert (await analyses.get_slot(ok.id)).notification_sent
    assert not (await analyses.get_slot(broken.id)).notification_sent
    assert [r.target_id for r in await scheduler.due_notifications()] == [broken.id]


def test_reminder_wording():
    start = datetime(2024, 3, 8, 10, 0)
    assert reminder_title("Sync", "high", start, start - timedelta(minutes=90)) == "Important: Sync in 1h 30m"
    assert reminder_title("Sync", "low", start, start - timedelta(hours=2)) == "Reminder: Sync in 2h"
    assert reminder_title("Sync", "medium", start, start) == "Reminder: Sync now"


def test_delivery_methods():
    assert [delivery_method_for(p) for p in ("critical", "high", "medium", "low")] == ["push", "email", "in_app", "in_app"]


@pytest.mark.asyncio
async def test_ai_timestamp_with_offset_is_stored_as_local_time(stores, settings, clock, tmp_path, fake_provider_factory):
    provider = fake_provider_factory('{"title":"Team meeting","start_at":"2024-03-08T09:00:00Z","confidence":0.92}')
    client = LLMClient(provider=provider)
    services = build_services(
        stores,
        analyzer=LLMTextAnalyzer(client, clock=clock),
        optimizer_ai=LLMScheduleOptimizer(client),
        settings=settings,
        preferences=PreferencesStore(str(tmp_path / "preferences")),
        clock=clock,
    )
    await services.events.create_event(Event(user_id="u1", title="Lunch", start_at=NOW + timedelta(hours=4)))
    batch = await services.import_service.create_batch("u1", "Team meeting 9am UTC")
    await services.pipeline.process_batch(batch.id)
    assert (await services.conversion.convert(batch.id, min_confidence=0.9)).succeeded == 1

    expected = datetime(2024, 3, 8, 9, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    events = await services.events.list_events(EventQuery(user_id="u1"))
    meeting = next(e for e in events if e.title == "Team meeting")
    assert meeting.start_at == expected
    assert meeting.start_at.tzinfo is None

    due = await services.notifications.due_notifications(now=expected - timedelta(minutes=5))
    assert meeting.id in [n.target_id for n in due]


def test_event_times_are_normalised_to_naive_local():
    aware = datetime(2024, 3, 8, 9, 0, tzinfo=timezone(timedelta(hours=2)))
    event = Event(user_id="u1", title="Call", start_at=aware, end_at=aware + timedelta(hours=1))
    assert event.start_at == aware.astimezone().replace(tzinfo=None)
    assert event.end_at.tzinfo is None
