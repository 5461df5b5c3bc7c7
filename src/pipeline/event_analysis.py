from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from llm.collaborators import TextAnalysis, TextAnalyzer, run_bounded
from schedule_ai import transitions
from schedule_ai.config import PipelineSettings
from schedule_ai.errors import CollaboratorError
from schedule_ai.models import Clock, Event, new_id
from storage.base import EventStore

logger = logging.getLogger(__name__)


def _result_payload(analysis: TextAnalysis) -> Dict[str, Any]:
    return {
        "confidence": analysis.confidence,
        "category": analysis.category,
        "importance": analysis.importance,
        "keywords": list(analysis.keywords),
        "fields": analysis.fields.model_dump(mode="json", exclude_none=True),
        "raw_payload": analysis.raw_payload,
    }


class EventAnalysisService:
    """AI re-analysis of an existing event, guarded by the event's claim lock."""

    def __init__(
        self,
        events: EventStore,
        analyzer: TextAnalyzer,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = datetime.now,
    ):
        self.events = events
        self.analyzer = analyzer
        self.settings = settings or PipelineSettings()
        self.clock = clock

    async def analyze_event(
        self,
        event_id: str,
        timeout_s: Optional[float] = None,
        profession: Optional[str] = None,
    ) -> Event:
        """Raises ConflictError when the event is already claimed or analyzed."""
        event = await self.events.get_event(event_id)
        claimed = await self.events.update_event(
            transitions.claim_event(event, new_id(), self.clock())
        )
        logger.info(f"Event {event_id} claimed for analysis {claimed.ai_analysis_id}")

        text = claimed.title if not claimed.description else f"{claimed.title}\n{claimed.description}"
        hints = {"category": claimed.category, "priority": claimed.priority}
        try:
            analysis = await run_bounded(
                "analyze_event", self.analyzer.analyze, text, hints, profession,
                timeout_s=timeout_s or self.settings.ai_call_timeout_s,
            )
        except CollaboratorError as e:
            logger.error(f"Analysis of event {event_id} failed: {e}")
            return await self.events.update_event(transitions.event_analysis_failed(claimed, e))
        except BaseException:
            await self._release(claimed)
            raise

        return await self.events.update_event(
            transitions.event_analyzed(claimed, _result_payload(analysis), self.clock())
        )

    async def reset_analysis(self, event_id: str) -> Event:
        event = await self.events.get_event(event_id)
        return await self.events.update_event(transitions.reset_event_analysis(event))

    async def _release(self, claimed: Event) -> None:
        try:
            await self.events.update_event(
                transitions.event_analysis_failed(claimed, CollaboratorError("unknown", "analysis aborted"))
            )
        except Exception:
            logger.exception(f"Could not release analysis claim on event {claimed.id}")
