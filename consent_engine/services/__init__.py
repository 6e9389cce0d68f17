"""
Consent Engine - Services

Registry, integrations and the consent-driven orchestrator for
third-party services.
"""

from consent_engine.services.catalog import (
    DEFAULT_SERVICES,
    LANGUAGE_STORAGE_KEY,
    THEME_STORAGE_KEY,
)
from consent_engine.services.integrations import (
    CallableIntegration,
    HttpScriptLoader,
    PageContext,
    ScriptIntegration,
    ScriptLoader,
    ServiceIntegration,
    build_default_integrations,
)
from consent_engine.services.orchestrator import (
    ConsentDiff,
    LoadingProgress,
    ServiceOrchestrator,
    diff_consent,
)
from consent_engine.services.registry import ServiceRegistry

__all__ = [
    "DEFAULT_SERVICES",
    "LANGUAGE_STORAGE_KEY",
    "THEME_STORAGE_KEY",
    "CallableIntegration",
    "HttpScriptLoader",
    "PageContext",
    "ScriptIntegration",
    "ScriptLoader",
    "ServiceIntegration",
    "build_default_integrations",
    "ConsentDiff",
    "LoadingProgress",
    "ServiceOrchestrator",
    "diff_consent",
    "ServiceRegistry",
]
