"""
Consent Engine - Prompt Fatigue

Decides whether the consent prompt should be shown again. Each showing
and each rejection raises the fatigue level, and the minimum gap between
prompts doubles per level up to a ceiling. Prompts are delayed, never
suppressed for good.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from consent_engine.core.config import ConsentEngineConfig, get_consent_config
from consent_engine.core.enums import InteractionType
from consent_engine.core.models import ConsentRecord, ShowHistory, is_expired, utc_now

logger = structlog.get_logger(__name__)

SHOW_WEIGHT = 0.5
REJECTION_WEIGHT = 2.0
MAX_BACKOFF_EXPONENT = 5

BASE_SHOW_DELAY_SECONDS = 2.0
SHOW_DELAY_GROWTH = 1.5
MAX_SHOW_DELAY_SECONDS = 10.0


class FatiguePolicy:
    """Exponential prompt backoff driven by the show history."""

    def __init__(self, config: ConsentEngineConfig | None = None):
        self.config = config if config is not None else get_consent_config()

    def fatigue_level(self, history: ShowHistory) -> float:
        raw = history.show_count * SHOW_WEIGHT + history.rejection_count * REJECTION_WEIGHT
        return min(raw, self.config.max_fatigue_level)

    def required_delay(self, history: ShowHistory) -> timedelta:
        """Minimum gap since the last showing before prompting again."""
        exponent = min(self.fatigue_level(history), MAX_BACKOFF_EXPONENT)
        return min(self.config.fatigue_base_delay * 2 ** exponent, self.config.fatigue_max_delay)

    def should_prompt(
        self,
        history: ShowHistory,
        now: datetime | None = None,
        record: ConsentRecord | None = None,
    ) -> bool:
        """
        Check if the prompt should be shown.

        Never while a live consent record exists. Otherwise only when the
        prompt has not been shown yet or the backoff delay has passed.
        """
        now = now or utc_now()
        if record is not None and not is_expired(record, now, self.config.consent_expiry_months):
            return False
        if history.last_shown is None:
            return True
        return now - history.last_shown > self.required_delay(history)

    def next_prompt_at(self, history: ShowHistory) -> datetime | None:
        """Earliest moment the prompt may show again; None means now."""
        if history.last_shown is None:
            return None
        return history.last_shown + self.required_delay(history)

    def optimal_show_delay(self, history: ShowHistory) -> float:
        """Seconds to wait after page load before showing the prompt."""
        delay = BASE_SHOW_DELAY_SECONDS * SHOW_DELAY_GROWTH ** self.fatigue_level(history)
        return min(delay, MAX_SHOW_DELAY_SECONDS)

    def record_shown(self, history: ShowHistory, now: datetime | None = None) -> ShowHistory:
        now = now or utc_now()
        updated = history.model_copy(update={
            "show_count": history.show_count + 1,
            "last_shown": now,
        })
        logger.debug("consent_prompt_shown", show_count=updated.show_count)
        return updated

    def record_decision(
        self,
        history: ShowHistory,
        interaction: InteractionType,
        now: datetime | None = None,
        decision_ms: float | None = None,
    ) -> ShowHistory:
        """Fold an answered prompt into the history."""
        now = now or utc_now()
        average = history.average_decision_ms
        if decision_ms is not None:
            average = decision_ms if average is None else (average + decision_ms) / 2

        rejections = history.rejection_count
        if interaction is InteractionType.REJECT:
            rejections += 1

        return history.model_copy(update={
            "rejection_count": rejections,
            "last_interaction": now,
            "average_decision_ms": average,
            "preferred_interaction": interaction,
        })
