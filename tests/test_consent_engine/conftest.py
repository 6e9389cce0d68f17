"""
Shared fixtures for consent engine tests.

Provides a controllable clock, a deterministic scheduler, an in-memory
store, a small service registry with recording fake integrations, and
fully wired orchestrator and consent service instances.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from consent_engine.audit.trail import AuditTrail
from consent_engine.core.config import ConsentEngineConfig
from consent_engine.core.enums import ConsentCategory
from consent_engine.core.models import ServiceDescriptor
from consent_engine.core.scheduler import ManualScheduler
from consent_engine.privacy.consent_service import ConsentService
from consent_engine.services.orchestrator import ServiceOrchestrator
from consent_engine.services.registry import ServiceRegistry
from consent_engine.store.adapter import ConsentStore
from consent_engine.store.backends import MemoryBackend

START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeIntegration:
    """
    Recording integration.

    ``fail_times`` makes the first N loads raise. ``block`` makes loads
    wait on ``release`` before completing.
    """

    def __init__(self, fail_times: int = 0, healthy: bool = True, block: bool = False):
        self.fail_times = fail_times
        self.healthy = healthy
        self.block = block
        self.release = asyncio.Event()
        self.load_calls = 0
        self.cleanup_calls = 0
        self.health_calls = 0
        self.running = False

    async def load(self) -> None:
        self.load_calls += 1
        if self.block:
            await self.release.wait()
        if self.load_calls <= self.fail_times:
            raise RuntimeError(f"load failure #{self.load_calls}")
        self.running = True

    async def cleanup(self) -> None:
        self.cleanup_calls += 1
        self.running = False

    async def health_check(self) -> bool:
        self.health_calls += 1
        return self.healthy


# =============================================================================
# CONFIG & TIME
# =============================================================================


@pytest.fixture
def config() -> ConsentEngineConfig:
    """ConsentEngineConfig with test defaults, ignoring the environment file."""
    return ConsentEngineConfig(
        _env_file=None,
        health_check_delay_seconds=2.0,
        dependency_recheck_interval_seconds=1.0,
        dependency_recheck_max_attempts=3,
        retry_base_seconds=1.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=START)


# =============================================================================
# STORE & AUDIT
# =============================================================================


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend: MemoryBackend, clock: FakeClock) -> ConsentStore:
    return ConsentStore(backend, clock=clock)


@pytest.fixture
def audit(clock: FakeClock) -> AuditTrail:
    return AuditTrail(clock=clock)


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def descriptors() -> list[ServiceDescriptor]:
    """
    A small catalog covering every category.

    ``ads`` depends on ``stats`` the way Google Ads reuses the Analytics
    runtime.
    """
    return [
        ServiceDescriptor(id="stats", name="Stats", category=ConsentCategory.ANALYTICS, priority=8, max_retries=2),
        ServiceDescriptor(id="heatmap", name="Heatmap", category=ConsentCategory.ANALYTICS, priority=6, max_retries=2),
        ServiceDescriptor(
            id="ads",
            name="Ads",
            category=ConsentCategory.MARKETING,
            priority=7,
            max_retries=2,
            dependencies=("stats",),
        ),
        ServiceDescriptor(id="pixel", name="Pixel", category=ConsentCategory.MARKETING, priority=5, max_retries=1),
        ServiceDescriptor(id="theme", name="Theme", category=ConsentCategory.PREFERENCES, priority=6, max_retries=1),
        ServiceDescriptor(
            id="errors",
            name="Error Tracking",
            category=ConsentCategory.NECESSARY,
            priority=10,
            is_essential=True,
            max_retries=3,
        ),
    ]


@pytest.fixture
def registry(descriptors: list[ServiceDescriptor]) -> ServiceRegistry:
    return ServiceRegistry(descriptors)


@pytest.fixture
def integrations(descriptors: list[ServiceDescriptor]) -> dict[str, FakeIntegration]:
    return {d.id: FakeIntegration() for d in descriptors}


@pytest.fixture
def orchestrator(
    registry: ServiceRegistry,
    integrations: dict[str, FakeIntegration],
    scheduler: ManualScheduler,
    config: ConsentEngineConfig,
) -> ServiceOrchestrator:
    return ServiceOrchestrator(registry, integrations, scheduler, config)


@pytest.fixture
def consent_service(
    store: ConsentStore,
    orchestrator: ServiceOrchestrator,
    audit: AuditTrail,
    config: ConsentEngineConfig,
    clock: FakeClock,
) -> ConsentService:
    return ConsentService(
        store=store,
        orchestrator=orchestrator,
        audit=audit,
        config=config,
        clock=clock,
    )
