"""
Interfaces of the two AI collaborators the pipeline depends on.

Implementations are synchronous and may block on network I/O; callers run
them in a worker thread under a timeout. Failures are reported by raising
``CollaboratorError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from llm.schemas import OptimizationSummary, SlotPayload
from schedule_ai.errors import CollaboratorError
from schedule_ai.metrics import AI_CALL_LATENCY_SECONDS, AI_CALLS_TOTAL
from schedule_ai.models import ParsedFields, SchedulePreferences, TaskInput

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TextAnalysis:
    fields: ParsedFields
    confidence: float
    category: Optional[str] = None
    importance: Optional[float] = None
    keywords: List[str] = field(default_factory=list)
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OptimizationOutcome:
    slots: List[SlotPayload]
    summary: OptimizationSummary = field(default_factory=OptimizationSummary)
    unplaced_task_ids: List[str] = field(default_factory=list)
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


class TextAnalyzer(ABC):
    @abstractmethod
    def analyze(
        self,
        text: str,
        hints: Dict[str, Any],
        profession: Optional[str],
    ) -> TextAnalysis:
        """Turn one raw schedule line into structured fields plus a confidence."""
        raise NotImplementedError


class ScheduleOptimizerAI(ABC):
    @abstractmethod
    def optimize(
        self,
        tasks: Sequence[TaskInput],
        preferences: SchedulePreferences,
        target_date: date,
    ) -> OptimizationOutcome:
        """Place tasks into time slots for ``target_date``."""
        raise NotImplementedError


async def run_bounded(operation: str, func: Callable[..., T], *args: Any, timeout_s: float) -> T:
    """Run a blocking collaborator call in a worker thread, bounded by ``timeout_s``.

    Anything other than a ``CollaboratorError`` escaping the call is wrapped
    as kind ``unknown``; running out of time becomes kind ``timeout``. The
    worker thread itself cannot be interrupted and is left to finish on its own.
    """
    started = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout_s)
    except asyncio.TimeoutError:
        AI_CALLS_TOTAL.labels(operation=operation, outcome="timeout").inc()
        logger.error(f"AI {operation} call timed out after {timeout_s}s")
        raise CollaboratorError("timeout", f"{operation} did not finish within {timeout_s}s") from None
    except CollaboratorError as e:
        AI_CALLS_TOTAL.labels(operation=operation, outcome=e.kind).inc()
        logger.error(f"AI {operation} call failed: {e}")
        raise
    except Exception as e:
        AI_CALLS_TOTAL.labels(operation=operation, outcome="unknown").inc()
        logger.exception(f"AI {operation} call raised unexpectedly")
        raise CollaboratorError("unknown", f"{type(e).__name__}: {e}") from e
    finally:
        AI_CALL_LATENCY_SECONDS.labels(operation=operation).observe(time.perf_counter() - started)

    AI_CALLS_TOTAL.labels(operation=operation, outcome="ok").inc()
    return result
