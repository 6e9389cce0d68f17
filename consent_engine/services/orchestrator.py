"""
Consent Engine - Service Orchestrator

Drives every registered service through its lifecycle according to the
current consent:

    pending -> loading -> loaded | error
    loaded  -> disabled          (consent withdrawn)
    disabled -> loading          (consent granted again)
    error   -> pending           (retry with exponential backoff)
    error   -> disabled          (consent withdrawn)

Consent diffs are applied one at a time. A load still in flight when
its category is withdrawn is not aborted; when it resolves the result is
discarded and the service is cleaned up.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from consent_engine.core.config import ConsentEngineConfig, get_consent_config
from consent_engine.core.enums import ConsentCategory, ServiceStatus
from consent_engine.core.errors import (
    ServiceLoadError,
    ServiceLoadTimeoutError,
    UnknownServiceError,
)
from consent_engine.core.models import ConsentRecord, ServiceDescriptor, ServiceRuntimeState
from consent_engine.core.scheduler import AsyncioScheduler, ScheduledHandle, Scheduler
from consent_engine.services.integrations import ServiceIntegration
from consent_engine.services.registry import ServiceRegistry

logger = structlog.get_logger(__name__)

DEPENDENCY_ERROR_PREFIX = "dependency not loaded"


def _baseline() -> dict[ConsentCategory, bool]:
    return {c: not c.is_optional for c in ConsentCategory}


@dataclass(frozen=True)
class ConsentDiff:
    """Categories whose effective consent changed between two records."""
    enabled: tuple[ConsentCategory, ...] = ()
    disabled: tuple[ConsentCategory, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.enabled and not self.disabled


def diff_consent(
    old: Mapping[ConsentCategory, bool],
    new: Mapping[ConsentCategory, bool],
) -> ConsentDiff:
    optional = ConsentCategory.optional()
    return ConsentDiff(
        enabled=tuple(c for c in optional if new.get(c, False) and not old.get(c, False)),
        disabled=tuple(c for c in optional if old.get(c, False) and not new.get(c, False)),
    )


@dataclass
class LoadingProgress:
    """Aggregate load state over the currently enabled services."""
    total: int = 0
    loaded: int = 0
    failed: int = 0
    pending: int = 0
    percentage: float = 0.0
    services: dict[str, str] = field(default_factory=dict)


class ServiceOrchestrator:
    """
    Consent-driven lifecycle manager for third-party services.

    Usage:
        orchestrator = ServiceOrchestrator(registry, integrations, scheduler)
        await orchestrator.start(record)
        consent_service.on_consent_changed(lambda e: orchestrator.apply_consent(e.record))
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        integrations: Mapping[str, ServiceIntegration],
        scheduler: Scheduler | None = None,
        config: ConsentEngineConfig | None = None,
    ):
        for service_id in integrations:
            if service_id not in registry:
                raise UnknownServiceError(service_id)

        self.registry = registry
        self._integrations = dict(integrations)
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self._config = config if config is not None else get_consent_config()

        self._states: dict[str, ServiceRuntimeState] = {
            d.id: ServiceRuntimeState(service_id=d.id) for d in registry
        }
        # Bumped on every teardown; a load that finishes under an older
        # generation is stale.
        self._generation: dict[str, int] = dict.fromkeys(self._states, 0)
        self._timers: dict[tuple[str, str], ScheduledHandle] = {}

        self._applied = _baseline()
        self._requested = _baseline()
        self._lock = asyncio.Lock()
        self._started = False

    # ═══════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    async def start(self, record: ConsentRecord | None = None) -> None:
        """Load the always-on services, then apply the initial consent."""
        if not self._started:
            self._started = True
            async with self._lock:
                await self._load_by_levels(lambda d: d.always_on)
            logger.info("service_orchestrator_started", services=len(self._states))

        if record is not None:
            await self.apply_consent(record)

    async def apply_consent(self, record: ConsentRecord) -> ConsentDiff:
        """
        Apply a new consent record.

        Withdrawn categories are torn down first, then newly granted
        categories are loaded level by level along the dependency graph.
        """
        new = record.categories()
        self._requested = new

        async with self._lock:
            diff = diff_consent(self._applied, new)
            self._applied = new
            if diff.is_empty:
                return diff

            logger.info(
                "consent_diff_applied",
                enabled=[c.value for c in diff.enabled],
                disabled=[c.value for c in diff.disabled],
                version=record.version,
            )

            if diff.disabled:
                targets = [
                    d for d in self.registry
                    if d.category in diff.disabled and not d.always_on
                ]
                await asyncio.gather(*(self._teardown(d, "consent_withdrawn") for d in targets))

            if diff.enabled:
                enabled = set(diff.enabled)
                await self._load_by_levels(lambda d: d.category in enabled)

            return diff

    async def reinitialize_all(self) -> None:
        """Reset failed services and reload everything consent allows."""
        async with self._lock:
            for descriptor in self.registry:
                state = self._states[descriptor.id]
                if not self._is_wanted(descriptor):
                    continue
                if state.status in (ServiceStatus.ERROR, ServiceStatus.DISABLED):
                    self._cancel_timers(descriptor.id)
                    state.status = ServiceStatus.PENDING
                    state.retry_count = 0
                    state.last_error = None
            await self._load_by_levels(self._is_wanted)
        logger.info("services_reinitialized")

    async def shutdown(self) -> None:
        """Cancel pending retries, dependency re-checks and health checks."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._owns_scheduler:
            assert isinstance(self._scheduler, AsyncioScheduler)
            await self._scheduler.shutdown()
        logger.info("service_orchestrator_shutdown")

    # ═══════════════════════════════════════════════════════════════
    # LOADING
    # ═══════════════════════════════════════════════════════════════

    def _is_wanted(self, descriptor: ServiceDescriptor) -> bool:
        return descriptor.always_on or self._requested.get(descriptor.category, False)

    async def _load_by_levels(self, predicate: Callable[[ServiceDescriptor], bool]) -> None:
        for level in self.registry.load_levels():
            targets = [d for d in level if predicate(d)]
            if targets:
                await asyncio.gather(*(self._attempt_load(d) for d in targets))

    def _unmet_dependencies(self, descriptor: ServiceDescriptor) -> list[str]:
        return [
            dep_id for dep_id in descriptor.dependencies
            if self._states[dep_id].status is not ServiceStatus.LOADED
        ]

    async def _attempt_load(self, descriptor: ServiceDescriptor) -> None:
        state = self._states[descriptor.id]
        if state.status.is_active or not self._is_wanted(descriptor):
            return

        unmet = self._unmet_dependencies(descriptor)
        if unmet:
            state.status = ServiceStatus.PENDING
            self._schedule_recheck(descriptor, attempt=1)
            logger.debug("service_dependency_deferred", service_id=descriptor.id, waiting_on=unmet)
            return

        integration = self._integrations.get(descriptor.id)
        generation = self._generation[descriptor.id]
        state.status = ServiceStatus.LOADING
        logger.debug("service_load_started", service_id=descriptor.id, retry_count=state.retry_count)

        error: ServiceLoadError | None = None
        started = time.perf_counter()
        try:
            if integration is None:
                raise ServiceLoadError(descriptor.id, "no integration registered")
            await asyncio.wait_for(integration.load(), timeout=descriptor.load_timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = ServiceLoadTimeoutError(descriptor.id, descriptor.load_timeout_ms)
        except ServiceLoadError as e:
            error = e
        except Exception as e:
            error = ServiceLoadError(descriptor.id, str(e))
        elapsed_ms = (time.perf_counter() - started) * 1000

        if generation != self._generation[descriptor.id]:
            # A newer teardown owns this service now
            if not self._is_wanted(descriptor) and error is None:
                await self._cleanup(descriptor)
            logger.debug("service_load_superseded", service_id=descriptor.id)
            return

        if not self._is_wanted(descriptor):
            logger.info("service_load_discarded", service_id=descriptor.id)
            await self._teardown(descriptor, "consent_withdrawn_during_load")
            return

        if error is not None:
            self._handle_failure(descriptor, error)
            return

        state.status = ServiceStatus.LOADED
        state.load_time_ms = round(elapsed_ms, 2)
        state.last_error = None
        state.retry_count = 0
        self._schedule(
            descriptor.id,
            "health",
            self._config.health_check_delay_seconds,
            lambda: self._delayed_health_check(descriptor, generation),
        )
        logger.info("service_loaded", service_id=descriptor.id, load_time_ms=state.load_time_ms)
        await self._resume_dependents(descriptor)

    async def _resume_dependents(self, descriptor: ServiceDescriptor) -> None:
        """
        Load wanted dependents that gave up waiting on ``descriptor``.

        Dependents still pending are left to their own re-check timer.
        """
        parked = []
        for dependent in self.registry.dependents_of(descriptor.id):
            state = self._states[dependent.id]
            if not self._is_wanted(dependent) or self._unmet_dependencies(dependent):
                continue
            if state.status is ServiceStatus.ERROR and (state.last_error or "").startswith(DEPENDENCY_ERROR_PREFIX):
                parked.append(dependent)

        if parked:
            logger.info(
                "service_dependents_resumed",
                service_id=descriptor.id,
                dependents=[d.id for d in parked],
            )
            await asyncio.gather(*(self._attempt_load(d) for d in parked))

    def _handle_failure(self, descriptor: ServiceDescriptor, error: Exception) -> None:
        state = self._states[descriptor.id]
        state.status = ServiceStatus.ERROR
        state.last_error = str(error)

        if state.retry_count >= descriptor.max_retries:
            logger.error(
                "service_retries_exhausted",
                service_id=descriptor.id,
                retries=state.retry_count,
                error=state.last_error,
            )
            return

        delay = self._config.retry_base_seconds * 2 ** state.retry_count
        state.retry_count += 1
        state.last_retry_at = self._scheduler.now()
        generation = self._generation[descriptor.id]
        self._schedule(descriptor.id, "retry", delay, lambda: self._retry(descriptor, generation))
        logger.warning(
            "service_load_failed",
            service_id=descriptor.id,
            error=state.last_error,
            retry_count=state.retry_count,
            retry_in_seconds=delay,
        )

    async def _retry(self, descriptor: ServiceDescriptor, generation: int) -> None:
        state = self._states[descriptor.id]
        if generation != self._generation[descriptor.id] or state.status is not ServiceStatus.ERROR:
            return
        if not self._is_wanted(descriptor):
            return
        state.status = ServiceStatus.PENDING
        await self._attempt_load(descriptor)

    def _schedule_recheck(self, descriptor: ServiceDescriptor, attempt: int) -> None:
        generation = self._generation[descriptor.id]
        self._schedule(
            descriptor.id,
            "dependency",
            self._config.dependency_recheck_interval_seconds,
            lambda: self._recheck_dependencies(descriptor, generation, attempt),
        )

    async def _recheck_dependencies(self, descriptor: ServiceDescriptor, generation: int, attempt: int) -> None:
        state = self._states[descriptor.id]
        if generation != self._generation[descriptor.id] or state.status is not ServiceStatus.PENDING:
            return
        if not self._is_wanted(descriptor):
            return

        unmet = self._unmet_dependencies(descriptor)
        if not unmet:
            await self._attempt_load(descriptor)
            return

        if attempt >= self._config.dependency_recheck_max_attempts:
            state.status = ServiceStatus.ERROR
            state.last_error = f"{DEPENDENCY_ERROR_PREFIX}: {', '.join(unmet)}"
            logger.error("service_dependency_timeout", service_id=descriptor.id, waiting_on=unmet)
            return

        self._schedule_recheck(descriptor, attempt + 1)

    # ═══════════════════════════════════════════════════════════════
    # TEARDOWN
    # ═══════════════════════════════════════════════════════════════

    async def _cleanup(self, descriptor: ServiceDescriptor) -> None:
        integration = self._integrations.get(descriptor.id)
        if integration is None:
            return
        state = self._states[descriptor.id]
        try:
            await asyncio.wait_for(integration.cleanup(), timeout=descriptor.load_timeout_ms / 1000)
        except Exception as e:
            state.last_error = f"cleanup failed: {e}"
            logger.error("service_cleanup_failed", service_id=descriptor.id, error=str(e))

    async def _teardown(self, descriptor: ServiceDescriptor, reason: str) -> None:
        """Clean up a service and mark it disabled, whatever its prior state."""
        self._generation[descriptor.id] += 1
        self._cancel_timers(descriptor.id)

        state = self._states[descriptor.id]
        previous = state.status
        await self._cleanup(descriptor)

        state.status = ServiceStatus.DISABLED
        state.retry_count = 0
        state.healthy = None
        logger.info(
            "service_disabled",
            service_id=descriptor.id,
            previous_status=previous.value,
            reason=reason,
        )

    # ═══════════════════════════════════════════════════════════════
    # HEALTH
    # ═══════════════════════════════════════════════════════════════

    async def _check_health(self, descriptor: ServiceDescriptor) -> bool:
        state = self._states[descriptor.id]
        integration = self._integrations.get(descriptor.id)
        try:
            healthy = integration is not None and bool(await integration.health_check())
        except Exception as e:
            logger.warning("service_health_check_error", service_id=descriptor.id, error=str(e))
            healthy = False
        state.healthy = healthy
        state.last_health_check_at = self._scheduler.now()
        return healthy

    async def _delayed_health_check(self, descriptor: ServiceDescriptor, generation: int) -> None:
        state = self._states[descriptor.id]
        if generation != self._generation[descriptor.id] or state.status is not ServiceStatus.LOADED:
            return
        if not await self._check_health(descriptor):
            logger.warning("service_health_check_failed", service_id=descriptor.id)

    async def perform_full_health_check(self) -> dict[str, bool]:
        """Check every loaded service now. Results are reported, never retried."""
        loaded = [d for d in self.registry if self._states[d.id].status is ServiceStatus.LOADED]
        outcomes = await asyncio.gather(*(self._check_health(d) for d in loaded))
        results = {}
        for descriptor, healthy in zip(loaded, outcomes):
            results[descriptor.id] = healthy
        logger.info(
            "services_health_checked",
            checked=len(results),
            unhealthy=[sid for sid, ok in results.items() if not ok],
        )
        return results

    # ═══════════════════════════════════════════════════════════════
    # TIMERS
    # ═══════════════════════════════════════════════════════════════

    def _schedule(self, service_id: str, kind: str, delay: float, callback: Callable[[], Any]) -> None:
        key = (service_id, kind)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()

        async def fire() -> None:
            self._timers.pop(key, None)
            await callback()

        self._timers[key] = self._scheduler.schedule_after(delay, fire)

    def _cancel_timers(self, service_id: str) -> None:
        for key in [k for k in self._timers if k[0] == service_id]:
            self._timers.pop(key).cancel()

    # ═══════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════

    def get_service_status(self, service_id: str | None = None) -> Any:
        """
        Snapshot of runtime state.

        Returns a copy for one service, or a dict of copies for all of
        them. Mutating a snapshot never affects the orchestrator.
        """
        if service_id is not None:
            if service_id not in self._states:
                raise UnknownServiceError(service_id)
            return dataclasses.replace(self._states[service_id])
        return {sid: dataclasses.replace(state) for sid, state in self._states.items()}

    def get_services_by_category(self) -> dict[ConsentCategory, list[ServiceRuntimeState]]:
        grouped: dict[ConsentCategory, list[ServiceRuntimeState]] = {c: [] for c in ConsentCategory}
        for descriptor in self.registry:
            grouped[descriptor.category].append(dataclasses.replace(self._states[descriptor.id]))
        return grouped

    def get_loading_progress(self) -> LoadingProgress:
        progress = LoadingProgress()
        for descriptor in self.registry:
            if not self._is_wanted(descriptor):
                continue
            status = self._states[descriptor.id].status
            progress.total += 1
            progress.services[descriptor.id] = status.value
            if status is ServiceStatus.LOADED:
                progress.loaded += 1
            elif status is ServiceStatus.ERROR:
                progress.failed += 1
            else:
                progress.pending += 1
        if progress.total:
            progress.percentage = round(progress.loaded / progress.total * 100, 1)
        return progress

    def is_enabled(self, service_id: str) -> bool:
        """Whether current consent allows the service to run."""
        return self._is_wanted(self.registry.get(service_id))

    def services_in(self, statuses: Iterable[ServiceStatus]) -> list[str]:
        wanted = set(statuses)
        return [d.id for d in self.registry if self._states[d.id].status in wanted]
