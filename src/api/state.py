from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from extraction.rules import ParsingEngine
from llm.collaborators import ScheduleOptimizerAI, TextAnalyzer
from pipeline.ai_analysis import AiAnalysisPipeline
from pipeline.conversion import ConversionEngine
from pipeline.event_analysis import EventAnalysisService
from pipeline.imports import ImportService
from pipeline.recovery import StaleClaimRecovery
from schedule_ai.config import PREFERENCES_DIR, PipelineSettings
from schedule_ai.models import Clock
from scheduling.notifications import NotificationScheduler
from scheduling.optimizer import ScheduleOptimizer
from storage.base import AnalysisStore, EventStore, ImportStore, RuleStore
from storage.memory import (
    InMemoryAnalysisStore,
    InMemoryDatabase,
    InMemoryEventStore,
    InMemoryImportStore,
    InMemoryRuleStore,
)
from storage.preferences_store import PreferencesStore


@dataclass
class Services:
    settings: PipelineSettings
    imports: ImportStore
    events: EventStore
    analyses: AnalysisStore
    rules: RuleStore
    preferences: PreferencesStore
    import_service: ImportService
    parsing_engine: ParsingEngine
    pipeline: AiAnalysisPipeline
    conversion: ConversionEngine
    event_analysis: EventAnalysisService
    optimizer: ScheduleOptimizer
    notifications: NotificationScheduler
    recovery: StaleClaimRecovery


Stores = Tuple[ImportStore, EventStore, AnalysisStore, RuleStore]


def memory_stores() -> Stores:
    database = InMemoryDatabase()
    return (
        InMemoryImportStore(database),
        InMemoryEventStore(database),
        InMemoryAnalysisStore(database),
        InMemoryRuleStore(database),
    )


def postgres_stores() -> Stores:
    from storage.postgres import (
        PostgresAnalysisStore,
        PostgresEventStore,
        PostgresImportStore,
        PostgresRuleStore,
    )

    return PostgresImportStore(), PostgresEventStore(), PostgresAnalysisStore(), PostgresRuleStore()


def build_services(
    stores: Stores,
    analyzer: TextAnalyzer,
    optimizer_ai: ScheduleOptimizerAI,
    settings: Optional[PipelineSettings] = None,
    preferences: Optional[PreferencesStore] = None,
    clock: Clock = datetime.now,
) -> Services:
    settings = settings or PipelineSettings.from_env()
    imports, events, analyses, rules = stores
    engine = ParsingEngine(rules)
    return Services(
        settings=settings,
        imports=imports,
        events=events,
        analyses=analyses,
        rules=rules,
        preferences=preferences or PreferencesStore(PREFERENCES_DIR),
        import_service=ImportService(imports, clock=clock),
        parsing_engine=engine,
        pipeline=AiAnalysisPipeline(imports, engine, analyzer, settings=settings, clock=clock),
        conversion=ConversionEngine(imports, rules, settings=settings, clock=clock),
        event_analysis=EventAnalysisService(events, analyzer, settings=settings, clock=clock),
        optimizer=ScheduleOptimizer(analyses, optimizer_ai, events=events, settings=settings, clock=clock),
        notifications=NotificationScheduler(analyses, events, clock=clock),
        recovery=StaleClaimRecovery(imports, events, clock=clock),
    )


# Global instance initialized at startup (or injected by tests)
services: Optional[Services] = None
