import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

import pytest

from api.state import build_services, memory_stores
from llm.collaborators import OptimizationOutcome, ScheduleOptimizerAI, TextAnalysis, TextAnalyzer
from llm.schemas import OptimizationSummary, SlotPayload
from schedule_ai.config import PipelineSettings
from schedule_ai.models import ParsedFields
from storage.preferences_store import PreferencesStore

# Friday
NOW = datetime(2024, 3, 8, 8, 0)


class FakeProvider:
    def __init__(self, response_text: str):
        self._response_text = response_text
        self.calls: List[Dict[str, str]] = []

    def generate(self, *, system: str, user: str) -> str:
        self.calls.append({"system": system, "user": user})
        return self._response_text


class RaisingProvider:
    def __init__(self, exc: Exception):
        self._exc = exc

    def generate(self, *, system: str, user: str) -> str:
        raise self._exc


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


AnalyzerAnswer = Union[TextAnalysis, Exception]


class FakeAnalyzer(TextAnalyzer):
    """Answers by exact text; unknown text gets a confident echo of itself."""

    def __init__(self, answers: Optional[Dict[str, AnalyzerAnswer]] = None):
        self.answers = answers or {}
        self.calls: List[Dict[str, object]] = []

    def analyze(self, text, hints, profession):
        self.calls.append({"text": text, "hints": hints, "profession": profession})
        answer = self.answers.get(text)
        if isinstance(answer, Exception):
            raise answer
        if answer is not None:
            return answer
        return TextAnalysis(fields=ParsedFields(title=text), confidence=0.8)


class BlockingAnalyzer(TextAnalyzer):
    """Never answers within any timeout a test uses."""

    def __init__(self, hold_s: float = 1.0):
        self.hold_s = hold_s
        self.released = threading.Event()

    def analyze(self, text, hints, profession):
        self.released.wait(self.hold_s)
        return TextAnalysis(fields=ParsedFields(title=text), confidence=0.9)


class FakeOptimizerAI(ScheduleOptimizerAI):
    def __init__(self, respond: Union[Callable, OptimizationOutcome, Exception, None] = None):
        self.respond = respond
        self.calls = 0

    def optimize(self, tasks, preferences, target_date):
        self.calls += 1
        if isinstance(self.respond, Exception):
            raise self.respond
        if isinstance(self.respond, OptimizationOutcome):
            return self.respond
        if callable(self.respond):
            return self.respond(tasks, preferences, target_date)
        return back_to_back(tasks)


def back_to_back(tasks, start_minute: int = 9 * 60, gap: int = 10, place: Optional[int] = None) -> OptimizationOutcome:
    """Place the first ``place`` tasks one after another, reporting the rest unplaced."""
    chosen = list(tasks) if place is None else list(tasks)[:place]
    slots = []
    cursor = start_minute
    for task in chosen:
        end = cursor + task.duration_minutes
        slots.append(
            SlotPayload(
                task_id=task.id,
                task_title=task.title,
                start_time=f"{cursor // 60:02d}:{cursor % 60:02d}",
                end_time=f"{end // 60:02d}:{end % 60:02d}",
                duration_minutes=task.duration_minutes,
                priority=task.priority,
            )
        )
        cursor = end + gap
    placed = {s.task_id for s in slots}
    return OptimizationOutcome(
        slots=slots,
        summary=OptimizationSummary(recommendations=["Keep mornings for focus work"]),
        unplaced_task_ids=[t.id for t in tasks if t.id not in placed],
        raw_payload={"schedule_slots": [s.model_dump(mode="json") for s in slots]},
        model="fake",
    )


@pytest.fixture
def fake_provider_factory():
    def _make(response_text: str):
        return FakeProvider(response_text)
    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return PipelineSettings(ai_call_timeout_s=5.0, optimizer_timeout_s=5.0)


@pytest.fixture
def stores():
    return memory_stores()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def optimizer_ai():
    return FakeOptimizerAI()


@pytest.fixture
def services(stores, analyzer, optimizer_ai, settings, clock, tmp_path):
    return build_services(
        stores,
        analyzer=analyzer,
        optimizer_ai=optimizer_ai,
        settings=settings,
        preferences=PreferencesStore(str(tmp_path / "preferences")),
        clock=clock,
    )
