"""
AI enrichment of import records.

Each record goes through: claim (conditional update) -> rule matching ->
TextAnalyzer call under a timeout -> merged fields written back. Records
are handled independently; one record failing never stops its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from extraction.rules import ParsingEngine, RuleApplication
from llm.collaborators import TextAnalyzer, run_bounded
from schedule_ai import transitions
from schedule_ai.config import PipelineSettings
from schedule_ai.errors import CollaboratorError, ConflictError, ValidationError
from schedule_ai.metrics import RECORDS_PROCESSED_TOTAL
from schedule_ai.models import (
    AiAnalysisBlock,
    BatchError,
    Clock,
    ImportBatch,
    ParsedFields,
    ParsingRule,
    ScheduleRecord,
)
from storage.base import ImportStore, RecordQuery

logger = logging.getLogger(__name__)

# attempts at a batch counter write before giving up on a busy batch
_BATCH_WRITE_ATTEMPTS = 5


@dataclass
class ProcessOptions:
    # review threshold for this run; results below it are kept but flagged
    min_confidence: Optional[float] = None
    limit: Optional[int] = None
    max_attempts: Optional[int] = None
    timeout_s: Optional[float] = None
    concurrency: Optional[int] = None


@dataclass
class ProcessingResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


def merge_fields(columnar: ParsedFields, rules: ParsedFields, ai: ParsedFields) -> ParsedFields:
    """Field precedence: columnar < rules < AI. A layer only overrides with non-null values."""
    return columnar.overlaid_with(rules).overlaid_with(ai)


def _union(*groups: Sequence[str]) -> List[str]:
    out: List[str] = []
    for group in groups:
        for item in group:
            if item not in out:
                out.append(item)
    return out


async def update_batch_with_retry(
    imports: ImportStore,
    batch_id: str,
    step: Callable[[ImportBatch], ImportBatch],
) -> ImportBatch:
    """Read-transform-write a batch, re-reading when a concurrent writer wins."""
    for _ in range(_BATCH_WRITE_ATTEMPTS):
        batch = await imports.get_batch(batch_id)
        nxt = step(batch)
        if nxt is batch:
            return batch
        try:
            return await imports.update_batch(nxt)
        except ConflictError:
            logger.debug(f"Batch {batch_id} changed concurrently, retrying counter update")
    raise ConflictError(f"ImportBatch {batch_id} kept changing; counters not updated")


async def summarize(imports: ImportStore, batch_id: str, clock: Clock) -> ImportBatch:
    for _ in range(_BATCH_WRITE_ATTEMPTS):
        batch = await imports.get_batch(batch_id)
        records = await imports.list_records(RecordQuery(batch_id=batch_id))
        try:
            updated = await imports.update_batch(transitions.summarize_batch(batch, records, clock()))
        except ConflictError:
            continue
        if updated.is_terminal and not batch.is_terminal:
            logger.info(
                f"Batch {batch_id} finished as {updated.status}: "
                f"{updated.succeeded} succeeded, {updated.failed} failed of {updated.total_found}"
            )
        return updated
    raise ConflictError(f"ImportBatch {batch_id} kept changing; summary not written")


class AiAnalysisPipeline:
    def __init__(
        self,
        imports: ImportStore,
        engine: ParsingEngine,
        analyzer: TextAnalyzer,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = datetime.now,
    ):
        self.imports = imports
        self.engine = engine
        self.analyzer = analyzer
        self.settings = settings or PipelineSettings()
        self.clock = clock

    def _resolve(self, options: Optional[ProcessOptions]) -> ProcessOptions:
        options = options or ProcessOptions()
        s = self.settings
        return ProcessOptions(
            min_confidence=s.review_threshold if options.min_confidence is None else options.min_confidence,
            limit=options.limit,
            max_attempts=max(1, options.max_attempts or s.max_attempts),
            timeout_s=options.timeout_s or s.ai_call_timeout_s,
            concurrency=max(1, options.concurrency or s.processing_concurrency),
        )

    async def process_batch(self, batch_id: str, options: Optional[ProcessOptions] = None) -> ProcessingResult:
        opts = self._resolve(options)
        batch = await self.imports.get_batch(batch_id)
        result = ProcessingResult()

        records = await self.imports.list_records(
            RecordQuery(batch_id=batch_id, processing_statuses=("pending", "parsed", "converted"))
        )
        candidates: List[ScheduleRecord] = []
        for record in records:
            if record.is_converted or record.processing_status == "converted":
                # conversion is one-way
                result.skipped += 1
            elif record.ai_analysis_locked or record.ai_analysis_status == "in_progress":
                result.skipped += 1
            else:
                candidates.append(record)
        if opts.limit is not None:
            candidates = candidates[: opts.limit]

        if not records and not batch.is_terminal:
            # an empty import still has to end in a terminal status
            await update_batch_with_retry(
                self.imports, batch_id, lambda b: transitions.start_batch(b, self.clock())
            )
            await summarize(self.imports, batch_id, self.clock)
            logger.info(f"Batch {batch_id}: no records to analyze")
            return result
        if not candidates:
            logger.info(f"Batch {batch_id}: nothing to analyze ({result.skipped} skipped)")
            return result

        await update_batch_with_retry(
            self.imports, batch_id, lambda b: transitions.start_batch(b, self.clock())
        )
        rules = await self.engine.load_rules(batch.profession)
        logger.info(
            f"Batch {batch_id}: analyzing {len(candidates)} records "
            f"(concurrency={opts.concurrency}, timeout={opts.timeout_s}s)"
        )

        semaphore = asyncio.Semaphore(opts.concurrency)

        async def _guarded(record: ScheduleRecord) -> Tuple[str, Optional[BatchError]]:
            async with semaphore:
                return await self._process_record(record, rules, batch.profession, opts)

        outcomes = await asyncio.gather(*(_guarded(r) for r in candidates))

        errors: List[BatchError] = []
        for outcome, error in outcomes:
            RECORDS_PROCESSED_TOTAL.labels(outcome=outcome).inc()
            if outcome == "skipped":
                result.skipped += 1
                continue
            result.processed += 1
            if outcome == "succeeded":
                result.succeeded += 1
            else:
                result.failed += 1
            if error is not None:
                errors.append(error)

        if errors:
            await self.imports.append_batch_errors(batch_id, errors)
        await summarize(self.imports, batch_id, self.clock)

        logger.info(
            f"Batch {batch_id}: processed={result.processed} succeeded={result.succeeded} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        return result

    async def _process_record(
        self,
        record: ScheduleRecord,
        rules: Sequence[ParsingRule],
        profession: Optional[str],
        opts: ProcessOptions,
    ) -> Tuple[str, Optional[BatchError]]:
        try:
            claimed = await self.imports.update_record(transitions.claim_record(record, self.clock()))
        except ConflictError:
            logger.info(f"Record {record.id} claimed elsewhere, skipping")
            return "skipped", None

        try:
            nxt, error = await self._analyze(claimed, rules, profession, opts)
        except BaseException:
            await self._release_claim(claimed, opts)
            raise

        try:
            await self.imports.update_record(nxt)
        except ConflictError:
            logger.warning(f"Record {record.id} changed while being analyzed; result dropped")
            return "skipped", None

        if nxt.processing_status == "failed" or nxt.ai_analysis_status == "failed":
            return "failed", error
        return "succeeded", None

    async def _analyze(
        self,
        record: ScheduleRecord,
        rules: Sequence[ParsingRule],
        profession: Optional[str],
        opts: ProcessOptions,
    ) -> Tuple[ScheduleRecord, Optional[BatchError]]:
        try:
            if not record.raw_text.strip():
                raise ValidationError("Record has no text to analyze", field="raw_text")

            application = await self.engine.run(record.raw_text, rules=rules)
            hint_map = RuleApplication(
                fields=record.parsed.overlaid_with(application.fields),
                keywords=application.keywords,
                category=application.category,
                importance=application.importance,
            ).as_hints()

            analysis = await run_bounded(
                "analyze", self.analyzer.analyze, record.raw_text, hint_map, profession,
                timeout_s=opts.timeout_s,
            )
        except ValidationError as e:
            logger.warning(f"Record {record.id} (row {record.row_number}) is invalid: {e.message}")
            return (
                transitions.record_invalid(record, e, self.clock()),
                BatchError(record_ref=record.id, message=e.message, kind=e.kind, at=self.clock()),
            )
        except CollaboratorError as e:
            nxt = transitions.record_analysis_failed(
                record, e, max_attempts=opts.max_attempts, now=self.clock()
            )
            return nxt, BatchError(record_ref=record.id, message=e.message, kind=e.kind, at=self.clock())

        now = self.clock()
        ai = AiAnalysisBlock(
            confidence=analysis.confidence,
            category=analysis.category or application.category,
            importance=analysis.importance if analysis.importance is not None else application.importance,
            raw_payload=analysis.raw_payload,
            analyzed_at=now,
        )
        if ai.confidence < opts.min_confidence:
            logger.warning(
                f"Record {record.id} analyzed with low confidence {ai.confidence:.2f}; flagged for review"
            )
        nxt = transitions.record_analyzed(
            record,
            parsed=merge_fields(record.parsed, application.fields, analysis.fields),
            ai=ai,
            keywords=_union(application.keywords, analysis.keywords),
            matched_rule_ids=application.matched_rule_ids,
            review_threshold=opts.min_confidence,
            now=now,
        )
        return nxt, None

    async def _release_claim(self, claimed: ScheduleRecord, opts: ProcessOptions) -> None:
        released = transitions.record_analysis_failed(
            claimed,
            CollaboratorError("unknown", "analysis aborted"),
            max_attempts=opts.max_attempts,
            now=self.clock(),
        )
        try:
            await self.imports.update_record(released)
        except Exception:
            logger.exception(f"Could not release analysis claim on record {claimed.id}")
