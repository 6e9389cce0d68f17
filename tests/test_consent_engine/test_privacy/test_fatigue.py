"""
Tests for consent_engine.privacy.fatigue module.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from consent_engine.core.enums import InteractionType
from consent_engine.core.models import ConsentRecord, ShowHistory, add_months
from consent_engine.privacy.fatigue import FatiguePolicy

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class TestFatiguePolicy:
    """Tests for prompt fatigue backoff."""

    @pytest.fixture
    def policy(self, config):
        return FatiguePolicy(config)

    def test_fresh_user_is_prompted(self, policy):
        assert policy.should_prompt(ShowHistory(), NOW) is True
        assert policy.next_prompt_at(ShowHistory()) is None

    def test_live_consent_suppresses_prompt(self, policy):
        record = ConsentRecord(granted_at=NOW - timedelta(days=1), analytics=True)
        assert policy.should_prompt(ShowHistory(), NOW, record) is False

    def test_expired_consent_prompts_again(self, policy):
        record = ConsentRecord(granted_at=add_months(NOW, -25))
        assert policy.should_prompt(ShowHistory(), NOW, record) is True

    @pytest.mark.parametrize(
        "shows,rejections,expected",
        [
            (0, 0, 0.0),
            (2, 0, 1.0),
            (1, 1, 2.5),
            (10, 10, 10.0),
        ],
    )
    def test_fatigue_level(self, policy, shows, rejections, expected):
        history = ShowHistory(show_count=shows, rejection_count=rejections)
        assert policy.fatigue_level(history) == expected

    def test_required_delay_doubles_per_level(self, policy):
        assert policy.required_delay(ShowHistory()) == timedelta(hours=24)
        assert policy.required_delay(ShowHistory(show_count=2)) == timedelta(hours=48)
        assert policy.required_delay(ShowHistory(rejection_count=1)) == timedelta(hours=96)

    def test_required_delay_is_capped(self, policy):
        history = ShowHistory(show_count=4, rejection_count=4)
        assert policy.required_delay(history) == timedelta(days=7)

    def test_backoff_after_showing(self, policy):
        """Test that a shown prompt waits out the delay, then returns."""
        history = ShowHistory(show_count=2, last_shown=NOW)

        assert policy.should_prompt(history, NOW + timedelta(hours=47)) is False
        assert policy.should_prompt(history, NOW + timedelta(hours=49)) is True
        assert policy.next_prompt_at(history) == NOW + timedelta(hours=48)

    def test_never_permanently_suppressed(self, policy):
        history = ShowHistory(show_count=100, rejection_count=100, last_shown=NOW)
        assert policy.should_prompt(history, NOW + timedelta(days=7, seconds=1)) is True

    def test_optimal_show_delay(self, policy):
        assert policy.optimal_show_delay(ShowHistory()) == pytest.approx(2.0)
        assert policy.optimal_show_delay(ShowHistory(show_count=2)) == pytest.approx(3.0)
        assert policy.optimal_show_delay(ShowHistory(rejection_count=5)) == pytest.approx(10.0)

    def test_record_shown(self, policy):
        history = policy.record_shown(ShowHistory(), NOW)

        assert history.show_count == 1
        assert history.last_shown == NOW

    def test_record_decision(self, policy):
        history = policy.record_decision(ShowHistory(), InteractionType.REJECT, NOW, decision_ms=4000)
        history = policy.record_decision(history, InteractionType.ACCEPT, NOW, decision_ms=2000)

        assert history.rejection_count == 1
        assert history.average_decision_ms == 3000
        assert history.preferred_interaction is InteractionType.ACCEPT
        assert history.last_interaction == NOW
