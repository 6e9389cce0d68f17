"""
Consent Engine - Consent Service

UI-facing facade over the consent engine:
- Current consent status per category
- The single update path (rate limit, persist, audit, broadcast)
- Withdrawal, expiry detection and reset
- Prompt fatigue and banner timing
- Audit history export for compliance requests

Every consent write goes through one asyncio lock, so the rate
limiter, the stored record and the audit chain always agree and
subscribers see changes in the order they were made.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from consent_engine.audit.rate_limiter import UpdateRateLimiter
from consent_engine.audit.trail import AuditTrail, JsonlAuditSink, RequestMetadata
from consent_engine.core.config import ConsentEngineConfig, get_consent_config
from consent_engine.core.enums import AuditAction, ConsentCategory, ConsentSource
from consent_engine.core.errors import (
    ConsentEngineError,
    ConsentValidationError,
    FieldError,
    RateLimitExceededError,
    StoreError,
)
from consent_engine.core.models import (
    AuditEntry,
    ConsentRecord,
    ShowHistory,
    grant,
    is_expired,
    withdraw,
)
from consent_engine.core.scheduler import AsyncioScheduler, Clock, ScheduledHandle, Scheduler, system_clock
from consent_engine.monitoring.logging import configure_logging
from consent_engine.privacy.fatigue import FatiguePolicy
from consent_engine.services.catalog import DEFAULT_SERVICES
from consent_engine.services.integrations import (
    HttpScriptLoader,
    PageContext,
    ScriptLoader,
    ServiceIntegration,
    build_default_integrations,
)
from consent_engine.services.orchestrator import ServiceOrchestrator
from consent_engine.services.registry import ServiceRegistry
from consent_engine.store.adapter import ConsentStore
from consent_engine.store.backends import KeyValueBackend, MemoryBackend, RemoteBackend

logger = structlog.get_logger(__name__)


# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class ConsentChanged:
    """Published after every applied consent change."""
    record: ConsentRecord
    source: ConsentSource
    timestamp: datetime


@dataclass(frozen=True)
class ConsentWithdrawn:
    """Published when the user withdraws all optional consent."""
    reason: str | None
    timestamp: datetime
    previous: ConsentRecord | None


Handler = Callable[[Any], Awaitable[None] | None]


@dataclass(frozen=True)
class ConsentUpdateResult:
    """
    Outcome of an update.

    ``ok`` is true when the decision was applied. ``store_error`` is set
    when it was applied but could not be persisted; it then lasts for
    the session only.
    """
    ok: bool
    record: ConsentRecord | None = None
    entry: AuditEntry | None = None
    error: ConsentEngineError | None = None
    store_error: StoreError | None = None


def _normalize_flags(
    flags: ConsentRecord | Mapping[ConsentCategory | str, Any],
) -> dict[ConsentCategory, bool]:
    """Turn UI input into per-category booleans, raising on bad input."""
    if isinstance(flags, ConsentRecord):
        return {c: flags.allows(c) for c in ConsentCategory.optional()}
    if not isinstance(flags, Mapping):
        raise ConsentValidationError([
            FieldError(field="__root__", message="Consent must be a mapping", value=flags),
        ])

    errors: list[FieldError] = []
    normalized: dict[ConsentCategory, bool] = {}
    for key, value in flags.items():
        try:
            category = ConsentCategory(key)
        except ValueError:
            errors.append(FieldError(field=str(key), message="Unknown consent category", value=value))
            continue
        if not isinstance(value, bool):
            errors.append(FieldError(field=category.value, message="Consent flag must be a boolean", value=value))
            continue
        if category.is_optional:
            normalized[category] = value

    if errors:
        raise ConsentValidationError(errors)
    return {c: normalized.get(c, False) for c in ConsentCategory.optional()}


class ConsentService:
    """
    Consent facade for the UI layer.

    Public methods return booleans or result objects; only construction
    can raise.
    """

    def __init__(
        self,
        store: ConsentStore,
        orchestrator: ServiceOrchestrator | None = None,
        audit: AuditTrail | None = None,
        rate_limiter: UpdateRateLimiter | None = None,
        fatigue: FatiguePolicy | None = None,
        config: ConsentEngineConfig | None = None,
        clock: Clock = system_clock,
        scheduler: Scheduler | None = None,
        on_shutdown: Iterable[Callable[[], Awaitable[None] | None]] = (),
    ):
        self.config = config if config is not None else get_consent_config()
        self._clock = clock
        self.store = store
        self.orchestrator = orchestrator
        self.audit = audit if audit is not None else AuditTrail(clock=clock, expiry_months=self.config.consent_expiry_months)
        if rate_limiter is None:
            rate_limiter = UpdateRateLimiter(
                max_updates=self.config.rate_limit_max_updates,
                window_seconds=self.config.rate_limit_window_seconds,
                clock=clock,
            )
        self.rate_limiter = rate_limiter
        self.fatigue = fatigue if fatigue is not None else FatiguePolicy(self.config)

        self._record: ConsentRecord | None = None
        self._history = ShowHistory()
        self._lock = asyncio.Lock()
        self._initialized = False

        # Without a scheduler, expiry is only noticed on refresh()
        self._scheduler = scheduler
        self._expiry_handle: ScheduledHandle | None = None
        self._on_shutdown = list(on_shutdown)

        self._changed_handlers: list[Handler] = []
        self._withdrawn_handlers: list[Handler] = []

        self.store.set_expiry_listener(self._on_expired)
        if orchestrator is not None:
            self.on_consent_changed(self._forward_to_orchestrator)

    # ═══════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════

    async def initialize(self) -> ConsentRecord | None:
        """Load persisted state and start the always-on services."""
        async with self._lock:
            if not self._initialized:
                await self.audit.restore()
            self._record = await self.store.read()
            self._history = await self.store.read_history()
            self._watch_expiry()

        if self.orchestrator is not None:
            await self.orchestrator.start(self._record or ConsentRecord())

        self._initialized = True
        logger.info(
            "consent_service_initialized",
            has_consent=self._record is not None,
            version=self._record.version if self._record else None,
        )
        return self._record

    async def refresh(self) -> ConsentRecord | None:
        """Re-read the store, applying expiry and external changes."""
        async with self._lock:
            current = self._record
            record = await self.store.read()
            self._record = record
            self._watch_expiry()
            if record is None and current is None:
                return None
            if record is not None and current is not None and record == current:
                return record
            await self._publish_changed(record or ConsentRecord(), ConsentSource.STORE)
            return record

    async def shutdown(self) -> None:
        """Stop timers and services, then release the resources handed over at construction."""
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        for close in self._on_shutdown:
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "consent_service_shutdown_step_failed",
                    step=getattr(close, "__qualname__", repr(close)),
                    error=str(e),
                )
        self._on_shutdown.clear()
        logger.info("consent_service_shutdown")

    def _watch_expiry(self) -> None:
        """Schedule a refresh just after the current record lapses."""
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
        record = self._record
        if self._scheduler is None or record is None or record.expires_at is None:
            return
        delay = (record.expires_at - self._clock()).total_seconds() + 1.0
        self._expiry_handle = self._scheduler.schedule_after(max(delay, 0.0), self._expiry_due)

    async def _expiry_due(self) -> None:
        self._expiry_handle = None
        await self.refresh()

    # ═══════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════

    @property
    def current_record(self) -> ConsentRecord | None:
        return self._record

    def _live_record(self) -> ConsentRecord | None:
        record = self._record
        if record is None or is_expired(record, self._clock(), self.config.consent_expiry_months):
            return None
        return record

    def get_consent_status(self, category: ConsentCategory | str) -> bool:
        """Check if a category is currently consented."""
        try:
            category = ConsentCategory(category)
        except ValueError:
            return False
        if category is ConsentCategory.NECESSARY:
            return True
        record = self._live_record()
        return record is not None and record.allows(category)

    def get_consent_age(self) -> int | None:
        """Days since the current decision, or None without one."""
        record = self._live_record()
        if record is None:
            return None
        return record.age_days(self._clock())

    def get_service_status(self) -> dict[str, Any]:
        if self.orchestrator is None:
            return {}
        return self.orchestrator.get_service_status()

    # ═══════════════════════════════════════════════════════════════
    # UPDATES
    # ═══════════════════════════════════════════════════════════════

    async def apply_update(
        self,
        flags: ConsentRecord | Mapping[ConsentCategory | str, Any],
        source: ConsentSource | str = ConsentSource.BANNER,
        identity: str | None = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
        decision_ms: float | None = None,
    ) -> ConsentUpdateResult:
        """
        Apply a consent decision through the single update path.

        Order: validate, rate limit, persist, audit, broadcast. A rate
        limited or invalid update changes nothing and leaves no audit
        entry.
        """
        try:
            normalized = _normalize_flags(flags)
            source = ConsentSource(source)
        except ConsentValidationError as e:
            logger.warning("consent_update_invalid", errors=[err.to_dict() for err in e.errors])
            return ConsentUpdateResult(ok=False, error=e)
        except ValueError:
            error = ConsentValidationError([FieldError(field="source", message="Unknown consent source", value=source)])
            return ConsentUpdateResult(ok=False, error=error)

        async with self._lock:
            if not self.rate_limiter.check_and_record(identity):
                error = RateLimitExceededError(
                    identity,
                    self.rate_limiter.max_updates,
                    self.rate_limiter.window.total_seconds(),
                    self.rate_limiter.retry_after(identity),
                )
                return ConsentUpdateResult(ok=False, error=error)

            now = self._clock()
            record = grant(
                normalized,
                now,
                policy_version=self.config.policy_version,
                previous=self._record,
                expiry_months=self.config.consent_expiry_months,
            )

            store_result = await self.store.write(record)
            entry = await self.audit.append(record, AuditAction.GRANTED, metadata, identity, source)
            self._record = record
            self._watch_expiry()

            self._history = self.fatigue.record_decision(
                self._history, record.interaction_type(), now, decision_ms
            )
            await self.store.write_history(self._history)

            logger.info(
                "consent_updated",
                version=record.version,
                source=source.value,
                interaction=record.interaction_type().value,
                persisted=store_result.ok,
            )
            await self._publish_changed(record, source)

        return ConsentUpdateResult(
            ok=True,
            record=record,
            entry=entry,
            store_error=store_result.error,
        )

    async def update_consent(
        self,
        flags: ConsentRecord | Mapping[ConsentCategory | str, Any],
        source: ConsentSource | str = ConsentSource.BANNER,
        identity: str | None = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
    ) -> bool:
        """Apply a consent decision. Returns True if it was applied."""
        result = await self.apply_update(flags, source, identity, metadata)
        return result.ok

    async def withdraw_consent(
        self,
        reason: str | None = None,
        identity: str | None = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Withdraw every optional category.

        Withdrawal is never rate limited; it is still audited and
        serialized with other updates.
        """
        if not isinstance(metadata, RequestMetadata):
            metadata = RequestMetadata.from_mapping(metadata)
        if reason is not None:
            metadata = RequestMetadata(metadata.ip_address, metadata.user_agent, reason)

        async with self._lock:
            now = self._clock()
            previous = self._record
            record = withdraw(
                previous,
                now,
                policy_version=self.config.policy_version,
                expiry_months=self.config.consent_expiry_months,
            )
            store_result = await self.store.write(record)
            await self.audit.append(record, AuditAction.WITHDRAWN, metadata, identity, ConsentSource.WITHDRAWAL)
            self._record = record
            self._watch_expiry()

            logger.info("consent_withdrawn", version=record.version, reason=reason, persisted=store_result.ok)

            await self._publish(
                self._withdrawn_handlers,
                ConsentWithdrawn(reason=reason, timestamp=now, previous=previous),
            )
            await self._publish_changed(record, ConsentSource.WITHDRAWAL)
        return True

    async def reset_consent(self) -> bool:
        """Forget the decision and the show history so the prompt returns."""
        async with self._lock:
            previous = self._record
            result = await self.store.clear()
            if previous is not None:
                await self.audit.append(
                    withdraw(previous, self._clock(), expiry_months=self.config.consent_expiry_months),
                    AuditAction.WITHDRAWN,
                    RequestMetadata(reason="reset"),
                    source=ConsentSource.MANUAL,
                )
            self._record = None
            self._watch_expiry()
            self._history = ShowHistory()
            logger.info("consent_reset", cleared=result.ok)
            await self._publish_changed(ConsentRecord(), ConsentSource.MANUAL)
        return result.ok

    async def _on_expired(self, record: ConsentRecord) -> None:
        # Runs inside store.read(), which is always called under the update lock
        await self.audit.append(
            record,
            AuditAction.EXPIRED,
            RequestMetadata(reason="consent expired"),
            source=ConsentSource.EXPIRY,
        )
        if self._record is not None and self._record == record:
            self._record = None

    # ═══════════════════════════════════════════════════════════════
    # BANNER
    # ═══════════════════════════════════════════════════════════════

    def should_show_banner(self, now: datetime | None = None) -> bool:
        return self.fatigue.should_prompt(self._history, now or self._clock(), self._record)

    async def record_banner_shown(self) -> ShowHistory:
        self._history = self.fatigue.record_shown(self._history, self._clock())
        await self.store.write_history(self._history)
        return self._history

    def get_fatigue_level(self) -> float:
        return self.fatigue.fatigue_level(self._history)

    def get_optimal_show_delay(self) -> float:
        return self.fatigue.optimal_show_delay(self._history)

    @property
    def show_history(self) -> ShowHistory:
        return self._history

    # ═══════════════════════════════════════════════════════════════
    # AUDIT
    # ═══════════════════════════════════════════════════════════════

    def get_consent_history(self, identity: str | None = None) -> list[AuditEntry]:
        """Audit entries newest-first, optionally for one identity."""
        return self.audit.history(identity)

    def export_consent_history(self, identity: str | None = None) -> str:
        return self.audit.export_json(identity)

    # ═══════════════════════════════════════════════════════════════
    # EVENTS
    # ═══════════════════════════════════════════════════════════════

    def on_consent_changed(self, handler: Handler) -> Callable[[], None]:
        """Subscribe to consent changes. Returns an unsubscribe callable."""
        self._changed_handlers.append(handler)
        return lambda: self._unsubscribe(self._changed_handlers, handler)

    def on_consent_withdrawn(self, handler: Handler) -> Callable[[], None]:
        self._withdrawn_handlers.append(handler)
        return lambda: self._unsubscribe(self._withdrawn_handlers, handler)

    @staticmethod
    def _unsubscribe(handlers: list[Handler], handler: Handler) -> None:
        if handler in handlers:
            handlers.remove(handler)

    async def _publish(self, handlers: list[Handler], event: Any) -> None:
        for handler in list(handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "consent_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )

    async def _publish_changed(self, record: ConsentRecord, source: ConsentSource) -> None:
        await self._publish(
            self._changed_handlers,
            ConsentChanged(record=record, source=source, timestamp=self._clock()),
        )

    async def _forward_to_orchestrator(self, event: ConsentChanged) -> None:
        assert self.orchestrator is not None
        await self.orchestrator.apply_consent(event.record)


# =============================================================================
# Assembly
# =============================================================================


def create_consent_service(
    config: ConsentEngineConfig | None = None,
    backend: KeyValueBackend | None = None,
    integrations: Mapping[str, ServiceIntegration] | None = None,
    page: PageContext | None = None,
    scheduler: Scheduler | None = None,
    script_loader: ScriptLoader | None = None,
    clock: Clock = system_clock,
) -> ConsentService:
    """
    Wire a consent service with the default catalog and configured backends.

    Clients and schedulers created here are released by the service's
    shutdown(); injected ones stay owned by the caller.
    """
    config = config if config is not None else get_consent_config()
    on_shutdown: list[Callable[[], Awaitable[None] | None]] = []

    if backend is None:
        if config.remote_store_url:
            remote = RemoteBackend(config.remote_store_url, timeout_seconds=config.remote_store_timeout_seconds)
            on_shutdown.append(remote.close)
            backend = remote
        else:
            backend = MemoryBackend()

    registry = ServiceRegistry(DEFAULT_SERVICES)
    if integrations is None:
        if script_loader is None:
            http_loader = HttpScriptLoader()
            on_shutdown.append(http_loader.close)
            script_loader = http_loader
        integrations = build_default_integrations(
            registry,
            page if page is not None else PageContext(),
            script_loader,
        )

    if scheduler is None:
        owned_scheduler = AsyncioScheduler(clock)
        on_shutdown.append(owned_scheduler.shutdown)
        scheduler = owned_scheduler

    sink = JsonlAuditSink(config.audit_log_path) if config.audit_log_path else None

    return ConsentService(
        store=ConsentStore(
            backend,
            key=config.storage_key,
            history_key=config.history_key,
            expiry_months=config.consent_expiry_months,
            clock=clock,
        ),
        orchestrator=ServiceOrchestrator(registry, integrations, scheduler, config),
        audit=AuditTrail(sink, clock=clock, expiry_months=config.consent_expiry_months),
        config=config,
        clock=clock,
        scheduler=scheduler,
        on_shutdown=on_shutdown,
    )


# Global service instance
_consent_service: ConsentService | None = None


def get_consent_service() -> ConsentService:
    """Get the global consent service."""
    global _consent_service
    if _consent_service is None:
        config = get_consent_config()
        configure_logging(level=config.log_level, json_output=config.log_json)
        _consent_service = create_consent_service(config)
    return _consent_service
