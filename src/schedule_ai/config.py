from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for the import, optimization and notification pipeline."""

    review_threshold: float = 0.7
    default_min_confidence: float = 0.7
    ai_call_timeout_s: float = 30.0
    optimizer_timeout_s: float = 60.0
    max_attempts: int = 1
    processing_concurrency: int = 1
    stale_claim_timeout_min: int = 5
    notification_poll_interval_s: float = 30.0
    stale_recovery_interval_s: float = 60.0
    default_reminder_minutes: int = 15

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            review_threshold=float(os.getenv("REVIEW_CONFIDENCE_THRESHOLD", "0.7")),
            default_min_confidence=float(os.getenv("DEFAULT_MIN_CONFIDENCE", "0.7")),
            ai_call_timeout_s=float(os.getenv("AI_CALL_TIMEOUT_S", "30")),
            optimizer_timeout_s=float(os.getenv("OPTIMIZER_TIMEOUT_S", "60")),
            max_attempts=max(1, int(os.getenv("AI_MAX_ATTEMPTS", "1"))),
            processing_concurrency=max(1, int(os.getenv("PROCESSING_CONCURRENCY", "1"))),
            stale_claim_timeout_min=int(os.getenv("STALE_CLAIM_TIMEOUT_MIN", "5")),
            notification_poll_interval_s=float(os.getenv("NOTIFICATION_POLL_INTERVAL_S", "30")),
            stale_recovery_interval_s=float(os.getenv("STALE_RECOVERY_INTERVAL_S", "60")),
            default_reminder_minutes=int(os.getenv("DEFAULT_REMINDER_MINUTES", "15")),
        )


USE_POSTGRES = _env_bool("USE_POSTGRES", "false")
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "mock").strip().lower()
PREFERENCES_DIR = os.getenv("PREFERENCES_DIR", "data/preferences")
