import json
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Optional, Sequence

import httpx
from pydantic import ValidationError as PydanticValidationError

from llm.collaborators import (
    OptimizationOutcome,
    ScheduleOptimizerAI,
    TextAnalysis,
    TextAnalyzer,
)
from llm.providers.base import LLMProvider
from llm.schemas import RecordAnalysisResult, ScheduleOptimizationResult
from schedule_ai.config import LLM_PROVIDER
from schedule_ai.errors import CollaboratorError
from schedule_ai.models import Clock, ParsedFields, SchedulePreferences, TaskInput

logger = logging.getLogger(__name__)

ANALYSIS_MARKER = "Schedule entry:"
OPTIMIZATION_MARKER = "Tasks to schedule (JSON):"

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def get_provider(name: Optional[str] = None, timeout_s: Optional[float] = None) -> LLMProvider:
    """Build the provider named by ``LLM_PROVIDER`` (openai | ollama | mock)."""
    name = (name or LLM_PROVIDER).strip().lower()
    if name == "openai":
        from llm.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(timeout_s=timeout_s or 30.0)
    if name == "ollama":
        from llm.providers.ollama_provider import OllamaProvider
        return OllamaProvider(timeout_s=timeout_s or 60.0)
    if name == "mock":
        from llm.providers.mock_provider import MockProvider
        return MockProvider()
    raise RuntimeError(f"Unknown LLM_PROVIDER: {name}")


def extract_json(text: str) -> Dict[str, Any]:
    """Parse the JSON object in a model reply, tolerating chatter around it."""
    text = (text or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if match is None:
            raise CollaboratorError("bad_response", "model output contains no JSON object")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise CollaboratorError("bad_response", f"model output is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise CollaboratorError("bad_response", "model output is not a JSON object")
    return data


class LLMClient:
    """Thin wrapper over a provider that maps transport failures to CollaboratorError."""

    def __init__(self, provider: Optional[LLMProvider] = None):
        self.provider = provider or get_provider()

    @property
    def model_name(self) -> str:
        return getattr(self.provider, "model", type(self.provider).__name__)

    def generate(self, *, system: str, user: str) -> str:
        try:
            return self.provider.generate(system=system, user=user)
        except httpx.TimeoutException as e:
            raise CollaboratorError("timeout", f"LLM request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise CollaboratorError("rate_limited", "LLM provider rate limit hit") from e
            raise CollaboratorError("bad_response", f"LLM provider returned HTTP {status}") from e
        except httpx.HTTPError as e:
            raise CollaboratorError("unknown", f"LLM request failed: {e}") from e
        except (KeyError, IndexError, TypeError) as e:
            # unexpected envelope shape from the provider
            raise CollaboratorError("bad_response", f"unexpected LLM response envelope: {e!r}") from e

    def complete_json(self, *, system: str, user: str) -> Dict[str, Any]:
        return extract_json(self.generate(system=system, user=user))


ANALYSIS_SYSTEM_PROMPT = """You turn one line of a personal or professional schedule into a calendar entry.
Return ONLY a JSON object with these keys:
  title (string), description (string or null),
  start_at (ISO 8601 datetime or null), end_at (ISO 8601 datetime or null),
  location (string or null), priority (integer 1-5 where 1 is most urgent, or null),
  category (string or null, e.g. meeting, work, personal, health, learning),
  importance (number 0-1 or null), keywords (array of strings),
  confidence (number 0-1: how sure you are that the fields are right).
Resolve relative dates such as "Friday" or "tomorrow" against the reference date.
Prefer the hints when they do not contradict the entry text."""


class LLMTextAnalyzer(TextAnalyzer):
    def __init__(self, client: Optional[LLMClient] = None, clock: Clock = datetime.now):
        self.client = client or LLMClient()
        self.clock = clock

    def _build_prompt(self, text: str, hints: Dict[str, Any], profession: Optional[str]) -> str:
        return (
            f"Reference date: {self.clock().date().isoformat()}\n"
            f"Profession: {profession or 'unknown'}\n"
            f"Hints from rule matching: {json.dumps(hints, default=str, ensure_ascii=False)}\n"
            f"{ANALYSIS_MARKER}\n{text}"
        )

    def analyze(self, text: str, hints: Dict[str, Any], profession: Optional[str]) -> TextAnalysis:
        payload = self.client.complete_json(
            system=ANALYSIS_SYSTEM_PROMPT,
            user=self._build_prompt(text, hints, profession),
        )
        try:
            result = RecordAnalysisResult.model_validate(payload)
        except PydanticValidationError as e:
            raise CollaboratorError(
                "bad_response", f"analysis payload failed validation ({e.error_count()} errors)"
            ) from e

        return TextAnalysis(
            fields=ParsedFields(
                title=result.title,
                description=result.description,
                start_at=result.start_at,
                end_at=result.end_at,
                location=result.location,
                priority=result.priority,
            ),
            confidence=result.confidence,
            category=result.category,
            importance=result.importance,
            keywords=result.keywords,
            raw_payload=payload,
        )


def _optimization_system_prompt(preferences: SchedulePreferences) -> str:
    return f"""You are an expert schedule optimizer. Build an optimal daily schedule from a task list.
Consider task priority (critical > high > medium > low), energy levels (focus work in the
morning, routine work in the afternoon), task duration, natural breaks, and 5-10 minutes of
buffer between tasks. Work hours are {preferences.work_start:%H:%M} to {preferences.work_end:%H:%M},
with a {preferences.break_duration_min} minute lunch break around noon.
Return ONLY a JSON object:
  schedule_slots: array of {{task_id, task_title, start_time "HH:MM", end_time "HH:MM",
    duration_minutes, priority (critical|high|medium|low), location, category, reasoning,
    suitability_score (0-1), can_be_rescheduled (bool), reminder_minutes_before (int)}},
  optimization_summary: {{total_productive_time, break_time, utilization_rate,
    high_priority_coverage, recommendations (array of strings)}},
  unplaced_task_ids: array of ids of tasks that could not be placed.
Every slot must reference a task_id from the input."""


class LLMScheduleOptimizer(ScheduleOptimizerAI):
    def __init__(self, client: Optional[LLMClient] = None):
        self.client = client or LLMClient()

    def _build_prompt(
        self,
        tasks: Sequence[TaskInput],
        preferences: SchedulePreferences,
        target_date: date,
    ) -> str:
        lines = [
            f"Date: {target_date.isoformat()}",
            f"Work hours: {preferences.work_start:%H:%M} to {preferences.work_end:%H:%M}",
        ]
        for slot in preferences.excluded_slots:
            lines.append(f"Unavailable: {slot.start:%H:%M}-{slot.end:%H:%M} {slot.reason}".rstrip())
        for constraint in preferences.constraints:
            lines.append(f"Constraint: {constraint}")
        tasks_json = json.dumps([t.model_dump() for t in tasks], ensure_ascii=False, indent=2)
        lines.append(f"{OPTIMIZATION_MARKER}\n{tasks_json}")
        return "\n".join(lines)

    def optimize(
        self,
        tasks: Sequence[TaskInput],
        preferences: SchedulePreferences,
        target_date: date,
    ) -> OptimizationOutcome:
        payload = self.client.complete_json(
            system=_optimization_system_prompt(preferences),
            user=self._build_prompt(tasks, preferences, target_date),
        )
        try:
            result = ScheduleOptimizationResult.model_validate(payload)
        except PydanticValidationError as e:
            raise CollaboratorError(
                "bad_response", f"schedule payload failed validation ({e.error_count()} errors)"
            ) from e

        return OptimizationOutcome(
            slots=result.schedule_slots,
            summary=result.optimization_summary,
            unplaced_task_ids=result.unplaced_task_ids,
            raw_payload=payload,
            model=self.client.model_name,
        )
