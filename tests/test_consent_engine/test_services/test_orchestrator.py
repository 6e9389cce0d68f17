"""
Tests for consent_engine.services.orchestrator module.

Drives the orchestrator with a ManualScheduler and recording fake
integrations through grant, withdrawal, retry with backoff, timeouts,
dependency deferral, superseded loads and health checks.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from consent_engine.core.enums import ConsentCategory, ServiceStatus
from consent_engine.core.errors import UnknownServiceError
from consent_engine.core.models import ConsentRecord, ServiceDescriptor, grant, withdraw
from consent_engine.core.scheduler import AsyncioScheduler, ManualScheduler
from consent_engine.services.orchestrator import ServiceOrchestrator, diff_consent
from consent_engine.services.registry import ServiceRegistry

START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
ALL = {"analytics": True, "marketing": True, "preferences": True}


def status_of(orchestrator: ServiceOrchestrator, service_id: str) -> ServiceStatus:
    return orchestrator.get_service_status(service_id).status


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# DIFF
# =============================================================================


class TestDiffConsent:
    """Tests for diff_consent."""

    def test_enabled_and_disabled(self):
        old = grant({"analytics": True, "marketing": True}, START).categories()
        new = grant({"marketing": True, "preferences": True}, START).categories()

        diff = diff_consent(old, new)

        assert diff.enabled == (ConsentCategory.PREFERENCES,)
        assert diff.disabled == (ConsentCategory.ANALYTICS,)

    def test_identical_records_yield_empty_diff(self):
        record = grant(ALL, START)
        assert diff_consent(record.categories(), record.categories()).is_empty

    def test_necessary_never_diffs(self):
        diff = diff_consent(ConsentRecord().categories(), grant({}, START).categories())
        assert diff.is_empty


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestStartAndGrant:
    """Tests for start() and consent grants."""

    @pytest.mark.asyncio
    async def test_start_loads_only_necessary(self, orchestrator, integrations):
        await orchestrator.start()

        assert status_of(orchestrator, "errors") is ServiceStatus.LOADED
        for service_id in ("stats", "heatmap", "ads", "pixel", "theme"):
            assert status_of(orchestrator, service_id) is ServiceStatus.PENDING
            assert integrations[service_id].load_calls == 0

    @pytest.mark.asyncio
    async def test_accept_all_loads_everything(self, orchestrator, integrations):
        await orchestrator.start(grant(ALL, START))

        statuses = {sid: s.status for sid, s in orchestrator.get_service_status().items()}
        assert set(statuses.values()) == {ServiceStatus.LOADED}
        assert all(i.load_calls == 1 for i in integrations.values())

        state = orchestrator.get_service_status("stats")
        assert state.load_time_ms is not None
        assert state.retry_count == 0

    @pytest.mark.asyncio
    async def test_repeated_identical_consent_is_noop(self, orchestrator, integrations):
        record = grant(ALL, START)
        await orchestrator.start(record)

        diff = await orchestrator.apply_consent(grant(ALL, START, previous=record))

        assert diff.is_empty
        assert all(i.load_calls == 1 for i in integrations.values())
        assert all(i.cleanup_calls == 0 for i in integrations.values())

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator, integrations):
        await orchestrator.start()
        await orchestrator.start()
        assert integrations["errors"].load_calls == 1


class TestWithdrawal:
    """Tests for consent withdrawal."""

    @pytest.mark.asyncio
    async def test_withdraw_analytics_only(self, orchestrator, integrations):
        """Test that only analytics services are disabled and cleaned up."""
        await orchestrator.start(grant(ALL, START))

        await orchestrator.apply_consent(grant({"marketing": True, "preferences": True}, START))

        for service_id in ("stats", "heatmap"):
            assert status_of(orchestrator, service_id) is ServiceStatus.DISABLED
            assert integrations[service_id].cleanup_calls == 1
            assert integrations[service_id].running is False
        for service_id in ("ads", "pixel", "theme", "errors"):
            assert status_of(orchestrator, service_id) is ServiceStatus.LOADED
            assert integrations[service_id].cleanup_calls == 0

    @pytest.mark.asyncio
    async def test_full_withdrawal_keeps_necessary(self, orchestrator, integrations):
        record = grant(ALL, START)
        await orchestrator.start(record)

        await orchestrator.apply_consent(withdraw(record, START))

        assert status_of(orchestrator, "errors") is ServiceStatus.LOADED
        assert integrations["errors"].cleanup_calls == 0
        assert orchestrator.services_in([ServiceStatus.DISABLED]) == ["stats", "ads", "heatmap", "theme", "pixel"]

    @pytest.mark.asyncio
    async def test_regrant_reloads_disabled_service(self, orchestrator, integrations):
        await orchestrator.start(grant({"analytics": True}, START))
        await orchestrator.apply_consent(grant({}, START))
        await orchestrator.apply_consent(grant({"analytics": True}, START))

        assert status_of(orchestrator, "stats") is ServiceStatus.LOADED
        assert integrations["stats"].load_calls == 2

    @pytest.mark.asyncio
    async def test_withdraw_tears_down_failed_service(self, orchestrator, integrations, scheduler):
        integrations["pixel"].fail_times = 5
        await orchestrator.start(grant({"marketing": True}, START))
        assert status_of(orchestrator, "pixel") is ServiceStatus.ERROR

        await orchestrator.apply_consent(grant({}, START))
        await scheduler.run_all()

        assert status_of(orchestrator, "pixel") is ServiceStatus.DISABLED
        assert integrations["pixel"].cleanup_calls == 1
        assert integrations["pixel"].load_calls == 1

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_recorded(self, orchestrator, integrations):
        async def broken_cleanup():
            raise RuntimeError("cannot remove script")

        integrations["theme"].cleanup = broken_cleanup
        await orchestrator.start(grant({"preferences": True}, START))

        await orchestrator.apply_consent(grant({}, START))

        state = orchestrator.get_service_status("theme")
        assert state.status is ServiceStatus.DISABLED
        assert "cannot remove script" in state.last_error


# =============================================================================
# FAILURES
# =============================================================================


class TestRetries:
    """Tests for load failures, retries and timeouts."""

    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(self, orchestrator, integrations, scheduler):
        """Test error -> pending -> loading retries with 1s then 2s delays."""
        integrations["stats"].fail_times = 2
        await orchestrator.start(grant({"analytics": True}, START))

        state = orchestrator.get_service_status("stats")
        assert state.status is ServiceStatus.ERROR
        assert state.retry_count == 1
        assert state.last_retry_at == START
        assert "load failure #1" in state.last_error

        await scheduler.advance(1)
        state = orchestrator.get_service_status("stats")
        assert state.status is ServiceStatus.ERROR
        assert state.retry_count == 2

        await scheduler.advance(1)
        assert integrations["stats"].load_calls == 2

        await scheduler.advance(1)
        state = orchestrator.get_service_status("stats")
        assert state.status is ServiceStatus.LOADED
        assert state.retry_count == 0
        assert integrations["stats"].load_calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_stay_in_error(self, orchestrator, integrations, scheduler):
        integrations["pixel"].fail_times = 10
        await orchestrator.start(grant({"marketing": True, "preferences": True}, START))

        await scheduler.run_all()

        state = orchestrator.get_service_status("pixel")
        assert state.status is ServiceStatus.ERROR
        assert integrations["pixel"].load_calls == 2
        assert status_of(orchestrator, "theme") is ServiceStatus.LOADED

    @pytest.mark.asyncio
    async def test_load_timeout(self, config):
        descriptor = ServiceDescriptor(
            id="slow",
            name="Slow",
            category=ConsentCategory.ANALYTICS,
            load_timeout_ms=20,
            max_retries=0,
        )

        class Hanging:
            cleaned = False

            async def load(self):
                await asyncio.sleep(10)

            async def cleanup(self):
                self.cleaned = True

            async def health_check(self):
                return True

        orchestrator = ServiceOrchestrator(
            ServiceRegistry([descriptor]),
            {"slow": Hanging()},
            ManualScheduler(start=START),
            config,
        )

        await orchestrator.start(grant({"analytics": True}, START))

        state = orchestrator.get_service_status("slow")
        assert state.status is ServiceStatus.ERROR
        assert "timed out after 20ms" in state.last_error

    @pytest.mark.asyncio
    async def test_missing_integration_is_a_load_error(self, config):
        descriptor = ServiceDescriptor(id="orphan", name="Orphan", category="analytics", max_retries=0)
        orchestrator = ServiceOrchestrator(ServiceRegistry([descriptor]), {}, ManualScheduler(start=START), config)

        await orchestrator.start(grant({"analytics": True}, START))

        assert "no integration registered" in orchestrator.get_service_status("orphan").last_error

    def test_unknown_integration_rejected(self, registry, config):
        with pytest.raises(UnknownServiceError):
            ServiceOrchestrator(registry, {"ghost": object()}, ManualScheduler(), config)

    @pytest.mark.asyncio
    async def test_reinitialize_retries_failed_services(self, orchestrator, integrations, scheduler):
        integrations["pixel"].fail_times = 2
        await orchestrator.start(grant({"marketing": True}, START))
        await scheduler.advance(1)
        assert status_of(orchestrator, "pixel") is ServiceStatus.ERROR

        await orchestrator.reinitialize_all()
        await orchestrator.reinitialize_all()

        assert status_of(orchestrator, "pixel") is ServiceStatus.LOADED
        assert integrations["pixel"].load_calls == 3

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_retries(self, orchestrator, integrations, scheduler):
        integrations["stats"].fail_times = 5
        await orchestrator.start(grant({"analytics": True}, START))

        await orchestrator.shutdown()
        await scheduler.run_all()

        assert integrations["stats"].load_calls == 1
        assert scheduler.pending_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_releases_default_scheduler(self, registry, integrations, config):
        integrations["stats"].fail_times = 5
        orchestrator = ServiceOrchestrator(registry, integrations, config=config)
        await orchestrator.start(grant({"analytics": True}, START))
        default_scheduler = orchestrator._scheduler
        assert isinstance(default_scheduler, AsyncioScheduler)
        assert default_scheduler.pending_count > 0

        await orchestrator.shutdown()
        await asyncio.sleep(0.05)

        assert default_scheduler.pending_count == 0
        assert not default_scheduler._handles
        assert integrations["stats"].load_calls == 1


# =============================================================================
# DEPENDENCIES
# =============================================================================


class TestDependencies:
    """Tests for dependency ordering and deferral."""

    @pytest.mark.asyncio
    async def test_dependency_loads_first(self, orchestrator, integrations):
        order = []
        for service_id in ("stats", "ads"):
            original = integrations[service_id].load

            async def recording(original=original, service_id=service_id):
                order.append(service_id)
                await original()

            integrations[service_id].load = recording

        await orchestrator.start(grant(ALL, START))

        assert order == ["stats", "ads"]

    @pytest.mark.asyncio
    async def test_deferred_until_dependency_loads(self, orchestrator, integrations, scheduler):
        await orchestrator.start(grant({"marketing": True}, START))

        assert status_of(orchestrator, "ads") is ServiceStatus.PENDING
        assert status_of(orchestrator, "pixel") is ServiceStatus.LOADED
        assert integrations["ads"].load_calls == 0

        await orchestrator.apply_consent(grant({"marketing": True, "analytics": True}, START))
        await scheduler.advance(1)

        assert status_of(orchestrator, "ads") is ServiceStatus.LOADED

    @pytest.mark.asyncio
    async def test_deferral_is_bounded(self, orchestrator, integrations, scheduler):
        await orchestrator.start(grant({"marketing": True}, START))

        await scheduler.advance(3)

        state = orchestrator.get_service_status("ads")
        assert state.status is ServiceStatus.ERROR
        assert state.last_error == "dependency not loaded: stats"
        assert integrations["ads"].load_calls == 0

    @pytest.mark.asyncio
    async def test_dependent_loads_once_dependency_is_granted_later(self, orchestrator, integrations, scheduler):
        """Test that a dependent that gave up waiting loads when its dependency arrives."""
        await orchestrator.start(grant({"marketing": True}, START))
        await scheduler.advance(10)
        assert status_of(orchestrator, "ads") is ServiceStatus.ERROR

        await orchestrator.apply_consent(grant({"marketing": True, "analytics": True}, START))
        await scheduler.run_all()

        state = orchestrator.get_service_status("ads")
        assert status_of(orchestrator, "stats") is ServiceStatus.LOADED
        assert state.status is ServiceStatus.LOADED
        assert state.last_error is None
        assert integrations["ads"].load_calls == 1

    @pytest.mark.asyncio
    async def test_failed_dependent_is_not_resumed(self, orchestrator, integrations, scheduler):
        """Test that only dependency waits are resumed, not exhausted load failures."""
        integrations["ads"].fail_times = 10
        await orchestrator.start(grant(ALL, START))
        await scheduler.run_all()
        assert status_of(orchestrator, "ads") is ServiceStatus.ERROR
        calls = integrations["ads"].load_calls

        await orchestrator.apply_consent(grant({"marketing": True, "preferences": True}, START))
        await orchestrator.apply_consent(grant(ALL, START))
        await scheduler.run_all()

        assert status_of(orchestrator, "stats") is ServiceStatus.LOADED
        assert status_of(orchestrator, "ads") is ServiceStatus.ERROR
        assert integrations["ads"].load_calls == calls


# =============================================================================
# SUPERSEDED LOADS
# =============================================================================


class TestSupersededLoads:
    """Tests for loads that resolve after their consent was withdrawn."""

    @pytest.mark.asyncio
    async def test_load_resolving_after_withdrawal_is_discarded(self, orchestrator, integrations):
        integrations["stats"].block = True
        await orchestrator.start()

        granting = asyncio.create_task(orchestrator.apply_consent(grant({"analytics": True}, START)))
        await settle()
        assert status_of(orchestrator, "stats") is ServiceStatus.LOADING

        withdrawing = asyncio.create_task(orchestrator.apply_consent(grant({}, START)))
        await settle()

        integrations["stats"].release.set()
        await asyncio.gather(granting, withdrawing)

        assert status_of(orchestrator, "stats") is ServiceStatus.DISABLED
        assert status_of(orchestrator, "heatmap") is ServiceStatus.DISABLED
        assert integrations["stats"].running is False
        assert integrations["stats"].cleanup_calls >= 1

    @pytest.mark.asyncio
    async def test_diffs_are_applied_in_order(self, orchestrator, integrations):
        integrations["theme"].block = True
        await orchestrator.start()

        first = asyncio.create_task(orchestrator.apply_consent(grant({"preferences": True}, START)))
        await settle()
        second = asyncio.create_task(orchestrator.apply_consent(grant({"preferences": True, "analytics": True}, START)))
        await settle()

        assert integrations["stats"].load_calls == 0

        integrations["theme"].release.set()
        await asyncio.gather(first, second)

        assert status_of(orchestrator, "theme") is ServiceStatus.LOADED
        assert status_of(orchestrator, "stats") is ServiceStatus.LOADED


# =============================================================================
# HEALTH & QUERIES
# =============================================================================


class TestHealthAndQueries:
    """Tests for health checks and status queries."""

    @pytest.mark.asyncio
    async def test_delayed_health_check(self, orchestrator, integrations, scheduler):
        await orchestrator.start(grant({"analytics": True}, START))
        assert orchestrator.get_service_status("stats").healthy is None

        await scheduler.advance(2)

        state = orchestrator.get_service_status("stats")
        assert state.healthy is True
        assert state.last_health_check_at == START + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_unhealthy_service_is_reported_not_retried(self, orchestrator, integrations, scheduler):
        """Test that a failed health check only shows up in the status."""
        integrations["theme"].healthy = False
        await orchestrator.start(grant({"preferences": True}, START))

        await scheduler.advance(2)
        await scheduler.advance(1)
        await scheduler.run_all()

        state = orchestrator.get_service_status("theme")
        assert state.status is ServiceStatus.LOADED
        assert state.healthy is False
        assert state.last_health_check_at == START + timedelta(seconds=2)
        assert state.retry_count == 0
        assert integrations["theme"].load_calls == 1

    @pytest.mark.asyncio
    async def test_full_health_check(self, orchestrator, integrations):
        integrations["heatmap"].healthy = False
        await orchestrator.start(grant({"analytics": True}, START))

        results = await orchestrator.perform_full_health_check()

        assert results == {"errors": True, "stats": True, "heatmap": False}
        assert status_of(orchestrator, "heatmap") is ServiceStatus.LOADED
        assert orchestrator.get_service_status("heatmap").healthy is False
        assert integrations["heatmap"].load_calls == 1

    @pytest.mark.asyncio
    async def test_status_snapshots_are_copies(self, orchestrator):
        await orchestrator.start()

        snapshot = orchestrator.get_service_status()
        snapshot["errors"].status = ServiceStatus.DISABLED

        assert status_of(orchestrator, "errors") is ServiceStatus.LOADED

    @pytest.mark.asyncio
    async def test_services_by_category(self, orchestrator):
        await orchestrator.start(grant({"analytics": True}, START))

        grouped = orchestrator.get_services_by_category()

        assert [s.service_id for s in grouped[ConsentCategory.ANALYTICS]] == ["stats", "heatmap"]
        assert all(s.status is ServiceStatus.LOADED for s in grouped[ConsentCategory.ANALYTICS])
        assert all(s.status is ServiceStatus.PENDING for s in grouped[ConsentCategory.MARKETING])

    @pytest.mark.asyncio
    async def test_loading_progress(self, orchestrator, integrations):
        integrations["pixel"].fail_times = 5
        await orchestrator.start(grant({"marketing": True}, START))

        progress = orchestrator.get_loading_progress()

        assert progress.total == 3
        assert progress.loaded == 1
        assert progress.failed == 1
        assert progress.pending == 1
        assert progress.percentage == pytest.approx(33.3)

    @pytest.mark.asyncio
    async def test_is_enabled(self, orchestrator):
        await orchestrator.start(grant({"analytics": True}, START))

        assert orchestrator.is_enabled("stats")
        assert orchestrator.is_enabled("errors")
        assert not orchestrator.is_enabled("pixel")
