"""
Consent Engine

Runtime policy engine for granular privacy consent:
- Versioned, expiring consent records
- Hash-chained audit trail with rate-limited updates
- Consent-driven loading, health checking, retrying and teardown of
  third-party services
- Prompt fatigue backoff

Usage:
    from consent_engine import create_consent_service

    service = create_consent_service()
    await service.initialize()

    if service.should_show_banner():
        await service.record_banner_shown()

    await service.update_consent({"analytics": True, "marketing": False})
"""

__version__ = "1.0.0"

from consent_engine.core.config import ConsentEngineConfig, get_consent_config
from consent_engine.core.enums import AuditAction, ConsentCategory, ConsentSource, ServiceStatus
from consent_engine.core.errors import ConsentEngineError
from consent_engine.core.models import ConsentRecord, ServiceDescriptor
from consent_engine.privacy import (
    ConsentChanged,
    ConsentService,
    ConsentWithdrawn,
    create_consent_service,
    get_consent_service,
)
from consent_engine.services import ServiceOrchestrator, ServiceRegistry

__all__ = [
    "__version__",
    "ConsentEngineConfig",
    "get_consent_config",
    "AuditAction",
    "ConsentCategory",
    "ConsentSource",
    "ServiceStatus",
    "ConsentEngineError",
    "ConsentRecord",
    "ServiceDescriptor",
    "ConsentChanged",
    "ConsentService",
    "ConsentWithdrawn",
    "create_consent_service",
    "get_consent_service",
    "ServiceOrchestrator",
    "ServiceRegistry",
]
