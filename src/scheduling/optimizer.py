"""
Orchestration of AI schedule optimization runs.

Every call creates a new ``AiScheduleAnalysis`` row; earlier runs for the
same user and date are never touched. Slots are written together with the
finished analysis, so a completed run always has all of its slots and a
failed run has none.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from llm.collaborators import OptimizationOutcome, ScheduleOptimizerAI, run_bounded
from scheduling.conflicts import SlotConflict, find_conflicts
from schedule_ai import transitions
from schedule_ai.config import PipelineSettings
from schedule_ai.errors import CollaboratorError, ConflictError, StorageError, ValidationError
from schedule_ai.metrics import ANALYSES_TOTAL
from schedule_ai.models import (
    AiScheduleAnalysis,
    AnalysisMetrics,
    Clock,
    Event,
    OptimizedScheduleSlot,
    SchedulePreferences,
    TaskInput,
)
from storage.base import AnalysisQuery, AnalysisStore, EventStore, SlotQuery

logger = logging.getLogger(__name__)

PRIORITY_TO_EVENT_PRIORITY = {"critical": 1, "high": 2, "medium": 3, "low": 4}


def compute_metrics(
    slots: Sequence[OptimizedScheduleSlot],
    preferences: SchedulePreferences,
    unplaced_task_ids: Sequence[str],
    recommendations: Sequence[str] = (),
) -> AnalysisMetrics:
    total = sum(s.duration_minutes for s in slots)
    available = preferences.available_minutes
    return AnalysisMetrics(
        total_scheduled_minutes=total,
        available_minutes=available,
        utilization_rate=round(total / available, 4) if available > 0 else 0.0,
        unplaced_task_ids=list(unplaced_task_ids),
        recommendations=list(recommendations),
    )


def build_slots(
    analysis: AiScheduleAnalysis,
    outcome: OptimizationOutcome,
) -> List[OptimizedScheduleSlot]:
    """Turn AI slot payloads into slots; an unknown task id is a bad response."""
    tasks: Dict[str, TaskInput] = {t.id: t for t in analysis.tasks}
    slots: List[OptimizedScheduleSlot] = []
    for payload in outcome.slots:
        task = tasks.get(payload.task_id)
        if task is None:
            raise CollaboratorError("bad_response", f"slot references unknown task {payload.task_id!r}")
        reminder = payload.reminder_minutes_before
        if reminder is None:
            reminder = analysis.preferences.default_reminder_minutes
        slots.append(
            OptimizedScheduleSlot(
                analysis_id=analysis.id,
                user_id=analysis.user_id,
                date=analysis.target_date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                duration_minutes=payload.minutes,
                task_id=task.id,
                task_title=payload.task_title or task.title,
                task_description=task.description or None,
                location=payload.location,
                priority=payload.priority,
                category=payload.category or task.category,
                reasoning=payload.reasoning,
                suitability_score=payload.suitability_score,
                is_flexible=payload.can_be_rescheduled,
                reminder_minutes_before=reminder,
            )
        )
    return slots


class ScheduleOptimizer:
    def __init__(
        self,
        analyses: AnalysisStore,
        ai: ScheduleOptimizerAI,
        events: Optional[EventStore] = None,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = datetime.now,
    ):
        self.analyses = analyses
        self.ai = ai
        self.events = events
        self.settings = settings or PipelineSettings()
        self.clock = clock

    async def optimize(
        self,
        user_id: str,
        tasks: Sequence[TaskInput],
        preferences: Optional[SchedulePreferences] = None,
        target_date: Optional[date] = None,
        timeout_s: Optional[float] = None,
        *,
        retry_count: int = 0,
        retried_from_id: Optional[str] = None,
    ) -> AiScheduleAnalysis:
        if not tasks:
            raise ValidationError("At least one task is required", field="tasks")
        duplicates = sorted(task_id for task_id, n in Counter(t.id for t in tasks).items() if n > 1)
        if duplicates:
            raise ValidationError(f"Task ids must be unique, repeated: {', '.join(duplicates)}", field="tasks")
        preferences = preferences or SchedulePreferences()
        target_date = target_date or self.clock().date()

        analysis = await self.analyses.create_analysis(
            AiScheduleAnalysis(
                user_id=user_id,
                target_date=target_date,
                tasks=list(tasks),
                preferences=preferences,
                retry_count=retry_count,
                retried_from_id=retried_from_id,
                created_at=self.clock(),
            )
        )
        analysis = await self.analyses.update_analysis(transitions.start_analysis(analysis))
        logger.info(f"Analysis {analysis.id}: optimizing {len(tasks)} tasks for {user_id} on {target_date}")

        started = time.perf_counter()
        try:
            outcome = await run_bounded(
                "optimize", self.ai.optimize, list(tasks), preferences, target_date,
                timeout_s=timeout_s or self.settings.optimizer_timeout_s,
            )
            slots = build_slots(analysis, outcome)
        except CollaboratorError as e:
            return await self._fail(analysis, e, started)
        except BaseException:
            await self._fail_quietly(analysis, started)
            raise

        known = {t.id for t in tasks}
        unplaced = [tid for tid in outcome.unplaced_task_ids if tid in known]
        if len(unplaced) != len(outcome.unplaced_task_ids):
            logger.warning(f"Analysis {analysis.id}: AI reported unplaced ids that are not in the task list")

        metrics = compute_metrics(slots, preferences, unplaced, outcome.summary.recommendations)
        finished = transitions.complete_analysis(
            analysis,
            response=outcome.raw_payload,
            metrics=metrics,
            ai_model=outcome.model,
            processing_time_ms=_elapsed_ms(started),
            now=self.clock(),
        )
        try:
            saved = await self.analyses.save_result(finished, slots)
        except StorageError as e:
            await self._fail_quietly(analysis, started, e)
            raise

        ANALYSES_TOTAL.labels(status=saved.status).inc()
        logger.info(
            f"Analysis {saved.id} {saved.status}: {len(slots)} slots, "
            f"utilization {metrics.utilization_rate:.2%}, {len(unplaced)} unplaced"
        )
        return saved

    async def _fail(self, analysis: AiScheduleAnalysis, error: CollaboratorError, started: float) -> AiScheduleAnalysis:
        logger.error(f"Analysis {analysis.id} failed: {error}")
        ANALYSES_TOTAL.labels(status="failed").inc()
        return await self.analyses.update_analysis(
            transitions.fail_analysis(analysis, error, self.clock(), _elapsed_ms(started))
        )

    async def _fail_quietly(self, analysis: AiScheduleAnalysis, started: float, cause: Optional[Exception] = None) -> None:
        error = CollaboratorError("unknown", f"optimization aborted: {cause}" if cause else "optimization aborted")
        try:
            await self._fail(analysis, error, started)
        except Exception:
            logger.exception(f"Could not mark analysis {analysis.id} as failed")

    async def retry(self, analysis_id: str, timeout_s: Optional[float] = None) -> AiScheduleAnalysis:
        """Re-run a failed analysis from its snapshots as a new analysis row."""
        previous = await self.analyses.get_analysis(analysis_id)
        if previous.status != "failed":
            raise ConflictError(f"Analysis {analysis_id} is {previous.status}; only failed analyses can be retried")
        return await self.optimize(
            previous.user_id,
            previous.tasks,
            previous.preferences,
            previous.target_date,
            timeout_s,
            retry_count=previous.retry_count + 1,
            retried_from_id=previous.id,
        )

    async def approve(self, analysis_id: str, rating: Optional[int] = None, feedback: Optional[str] = None) -> AiScheduleAnalysis:
        analysis = await self.analyses.get_analysis(analysis_id)
        return await self.analyses.update_analysis(transitions.approve_analysis(analysis, rating, feedback))

    async def latest_completed(self, user_id: str, target_date: date) -> Optional[AiScheduleAnalysis]:
        found = await self.analyses.list_analyses(
            AnalysisQuery(user_id=user_id, target_date=target_date, statuses=("completed",), limit=1)
        )
        return found[0] if found else None

    async def slots_for(self, analysis_id: str) -> List[OptimizedScheduleSlot]:
        return await self.analyses.list_slots(SlotQuery(analysis_id=analysis_id))

    async def conflicts(self, user_id: str, target_date: date) -> List[SlotConflict]:
        slots = await self.analyses.list_slots(SlotQuery(user_id=user_id, date=target_date, status="scheduled"))
        return find_conflicts(slots)

    # -- slot lifecycle -------------------------------------------------------

    async def confirm_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        slot = await self.analyses.get_slot(slot_id)
        return await self.analyses.update_slot(transitions.confirm_slot(slot, self.clock()))

    async def complete_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        slot = await self.analyses.get_slot(slot_id)
        return await self.analyses.update_slot(transitions.complete_slot(slot, self.clock()))

    async def cancel_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        slot = await self.analyses.get_slot(slot_id)
        return await self.analyses.update_slot(transitions.cancel_slot(slot))

    async def materialize_event(self, slot_id: str) -> Event:
        """Create the calendar event for a slot; a slot gets at most one event."""
        if self.events is None:
            raise RuntimeError("ScheduleOptimizer was built without an EventStore")
        slot = await self.analyses.get_slot(slot_id)
        if slot.event_id is not None:
            return await self.events.get_event(slot.event_id)
        if slot.status == "cancelled":
            raise ConflictError(f"Slot {slot_id} is cancelled")

        event = Event(
            user_id=slot.user_id,
            title=slot.task_title,
            description=slot.task_description,
            location=slot.location,
            start_at=slot.start_datetime,
            end_at=slot.end_datetime,
            priority=PRIORITY_TO_EVENT_PRIORITY[slot.priority],
            category=slot.category,
            source="ai_optimization",
            source_slot_id=slot.id,
            metadata={"analysis_id": slot.analysis_id, "task_id": slot.task_id},
            reminder_minutes_before=slot.reminder_minutes_before,
            created_at=self.clock(),
        )
        try:
            return await self.analyses.attach_slot_event(slot, event)
        except ConflictError:
            current = await self.analyses.get_slot(slot_id)
            if current.event_id is None:
                raise
            return await self.events.get_event(current.event_id)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
