"""
Consent Engine - Privacy

User-facing consent service and prompt fatigue policy.
"""

from consent_engine.privacy.consent_service import (
    ConsentChanged,
    ConsentService,
    ConsentUpdateResult,
    ConsentWithdrawn,
    create_consent_service,
    get_consent_service,
)
from consent_engine.privacy.fatigue import FatiguePolicy

__all__ = [
    "ConsentChanged",
    "ConsentService",
    "ConsentUpdateResult",
    "ConsentWithdrawn",
    "create_consent_service",
    "get_consent_service",
    "FatiguePolicy",
]
