import pytest

from conftest import NOW, BlockingAnalyzer, FakeAnalyzer
from llm.collaborators import TextAnalysis
from pipeline.event_analysis import EventAnalysisService
from schedule_ai.errors import CollaboratorError, ConflictError
from schedule_ai.models import Event, ParsedFields


@pytest.mark.asyncio
async def test_analysis_completes_and_stays_locked(stores, settings, clock):
    _, events, _, _ = stores
    analyzer = FakeAnalyzer(
        {"Budget review\nQ2 numbers": TextAnalysis(fields=ParsedFields(title="Budget review"), confidence=0.85, category="work")}
    )
    event = await events.create_event(Event(user_id="u1", title="Budget review", description="Q2 numbers"))
    service = EventAnalysisService(events, analyzer, settings=settings, clock=clock)

    done = await service.analyze_event(event.id)

    assert done.ai_analysis_status == "completed"
    assert done.ai_analysis_locked
    assert done.ai_analysis_result["confidence"] == 0.85
    assert done.ai_analysis_result["fields"] == {"title": "Budget review"}
    assert done.ai_analyzed_at == NOW
    with pytest.raises(ConflictError):
        await service.analyze_event(event.id)

    reset = await service.reset_analysis(event.id)
    assert reset.ai_analysis_status == "pending"
    assert (await service.analyze_event(event.id)).ai_analysis_status == "completed"


@pytest.mark.asyncio
async def test_failed_analysis_unlocks(stores, settings, clock):
    _, events, _, _ = stores
    analyzer = FakeAnalyzer({"Standup": CollaboratorError("bad_response", "garbage")})
    event = await events.create_event(Event(user_id="u1", title="Standup"))
    service = EventAnalysisService(events, analyzer, settings=settings, clock=clock)

    failed = await service.analyze_event(event.id)

    assert failed.ai_analysis_status == "failed"
    assert not failed.ai_analysis_locked
    assert failed.ai_analysis_result == {"error": "garbage", "kind": "bad_response"}


@pytest.mark.asyncio
async def test_timeout_unlocks_event(stores, settings, clock):
    _, events, _, _ = stores
    analyzer = BlockingAnalyzer(hold_s=1.0)
    event = await events.create_event(Event(user_id="u1", title="Standup"))

    failed = await EventAnalysisService(events, analyzer, settings=settings, clock=clock).analyze_event(
        event.id, timeout_s=0.05
    )
    analyzer.released.set()

    assert failed.ai_analysis_status == "failed"
    assert failed.ai_analysis_result["kind"] == "timeout"
    assert failed.available_for_analysis
