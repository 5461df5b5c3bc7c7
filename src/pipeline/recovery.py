from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Set

from pipeline.ai_analysis import summarize
from schedule_ai import transitions
from schedule_ai.errors import CollaboratorError, ConflictError
from schedule_ai.models import BatchError, Clock
from storage.base import EventQuery, EventStore, ImportStore, RecordQuery

logger = logging.getLogger(__name__)


class StaleClaimRecovery:
    """Releases analysis claims left behind by a crashed or killed worker."""

    def __init__(self, imports: ImportStore, events: EventStore, clock: Clock = datetime.now):
        self.imports = imports
        self.events = events
        self.clock = clock

    async def recover_stale(self, older_than_minutes: int = 5) -> int:
        """
        Moves records and events whose claim is older than the cutoff to
        ``failed`` with a timeout error. Returns how many were released.
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=older_than_minutes)
        recovered = 0
        touched_batches: Set[str] = set()

        for record in await self.imports.list_records(RecordQuery(claimed_before=cutoff)):
            try:
                await self.imports.update_record(transitions.record_claim_expired(record, now))
            except ConflictError:
                # finished or re-claimed in the meantime
                continue
            recovered += 1
            touched_batches.add(record.batch_id)
            await self.imports.append_batch_errors(
                record.batch_id,
                [BatchError(record_ref=record.id, message="analysis claim expired", kind="timeout", at=now)],
            )

        expired = CollaboratorError("timeout", "analysis claim expired")
        for event in await self.events.list_events(EventQuery(claimed_before=cutoff)):
            try:
                await self.events.update_event(transitions.event_analysis_failed(event, expired))
            except ConflictError:
                continue
            recovered += 1

        for batch_id in touched_batches:
            await summarize(self.imports, batch_id, self.clock)

        if recovered:
            logger.warning(f"Recovered {recovered} stale analysis claims older than {older_than_minutes} min")
        return recovered
