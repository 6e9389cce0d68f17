"""
Consent Engine - Core Module

Core components shared by every consent engine area:
- Configuration
- Enumerations
- Error taxonomy
- Models
- Scheduling
"""

from consent_engine.core.config import ConsentEngineConfig, get_consent_config
from consent_engine.core.enums import (
    AuditAction,
    ConsentCategory,
    ConsentSource,
    InteractionType,
    ServiceStatus,
)
from consent_engine.core.errors import (
    ConsentEngineError,
    ConsentValidationError,
    FieldError,
    RateLimitExceededError,
    RegistryCycleError,
    RegistryError,
    ServiceLoadError,
    ServiceLoadTimeoutError,
    StorageQuotaExceededError,
    StoreError,
    UnknownServiceError,
)
from consent_engine.core.models import (
    AuditEntry,
    ConsentRecord,
    ServiceDescriptor,
    ServiceRuntimeState,
    ShowHistory,
    ValidationOutcome,
    add_months,
    grant,
    is_expired,
    next_version,
    validate_consent,
    withdraw,
)
from consent_engine.core.scheduler import (
    AsyncioScheduler,
    ManualScheduler,
    ScheduledHandle,
    Scheduler,
)

__all__ = [
    # Config
    "ConsentEngineConfig",
    "get_consent_config",
    # Enums
    "AuditAction",
    "ConsentCategory",
    "ConsentSource",
    "InteractionType",
    "ServiceStatus",
    # Errors
    "ConsentEngineError",
    "ConsentValidationError",
    "FieldError",
    "RateLimitExceededError",
    "RegistryCycleError",
    "RegistryError",
    "ServiceLoadError",
    "ServiceLoadTimeoutError",
    "StorageQuotaExceededError",
    "StoreError",
    "UnknownServiceError",
    # Models
    "AuditEntry",
    "ConsentRecord",
    "ServiceDescriptor",
    "ServiceRuntimeState",
    "ShowHistory",
    "ValidationOutcome",
    "add_months",
    "grant",
    "is_expired",
    "next_version",
    "validate_consent",
    "withdraw",
    # Scheduling
    "AsyncioScheduler",
    "ManualScheduler",
    "ScheduledHandle",
    "Scheduler",
]
