"""
Consent Engine - Service Integrations

Per-service load/cleanup/health strategies injected into the
orchestrator. The orchestrator only sees the ServiceIntegration
protocol; everything page-specific lives here.

The page itself is modelled by PageContext: cookies, local and session
storage, document attributes and the global hooks third-party scripts
install once they run.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from consent_engine.core.errors import ServiceLoadError
from consent_engine.core.models import ServiceDescriptor
from consent_engine.services.catalog import LANGUAGE_STORAGE_KEY, THEME_STORAGE_KEY
from consent_engine.services.registry import ServiceRegistry

logger = structlog.get_logger(__name__)

SUPPORTED_LANGUAGES = ("nl", "en", "fr", "de")
DEFAULT_LANGUAGE = "nl"


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class ServiceIntegration(Protocol):
    """Load, tear down and health-check one third-party integration."""

    async def load(self) -> None: ...

    async def cleanup(self) -> None: ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class ScriptLoader(Protocol):
    """Fetches a third-party script; raises ServiceLoadError on failure."""

    async def fetch(self, service_id: str, url: str) -> None: ...


# =============================================================================
# Page model
# =============================================================================


@dataclass
class PageContext:
    """Client-side state third-party services read and write."""
    cookies: dict[str, str] = field(default_factory=dict)
    local_storage: dict[str, str] = field(default_factory=dict)
    session_storage: dict[str, str] = field(default_factory=dict)
    document_attributes: dict[str, str] = field(default_factory=dict)
    accept_language: str = "en"
    prefers_dark: bool = False

    # hook name -> ids of services that installed it
    _hooks: dict[str, set[str]] = field(default_factory=dict)

    def install_hook(self, name: str, owner: str) -> None:
        self._hooks.setdefault(name, set()).add(owner)

    def release_hook(self, name: str, owner: str) -> None:
        owners = self._hooks.get(name)
        if owners is None:
            return
        owners.discard(owner)
        if not owners:
            del self._hooks[name]

    def has_hook(self, name: str) -> bool:
        return bool(self._hooks.get(name))

    def clear_prefixes(self, prefixes: Iterable[str]) -> list[str]:
        """Remove cookies and storage keys in a service's namespace."""
        prefixes = tuple(prefixes)
        if not prefixes:
            return []
        removed: list[str] = []
        for jar in (self.cookies, self.local_storage, self.session_storage):
            for name in [k for k in jar if k.startswith(prefixes)]:
                del jar[name]
                removed.append(name)
        return removed


# =============================================================================
# Script loading
# =============================================================================


class HttpScriptLoader:
    """Fetches script resources over HTTP to confirm they are reachable."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_seconds: float = 10.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)

    async def fetch(self, service_id: str, url: str) -> None:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ServiceLoadError(service_id, f"script fetch failed: {e}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class ScriptIntegration:
    """
    Integration for a third-party script.

    Loading fetches ``script_url`` (if any) and installs the service's
    global hook. A hook already installed by another service (gtag is
    shared by Analytics and Ads) is reused. Cleanup clears the service's
    cookie/storage namespace and releases its hook.
    """

    def __init__(
        self,
        descriptor: ServiceDescriptor,
        page: PageContext,
        loader: ScriptLoader | None = None,
    ):
        self.descriptor = descriptor
        self.page = page
        self.loader = loader

    async def load(self) -> None:
        hook = self.descriptor.global_hook
        if hook and self.page.has_hook(hook):
            self.page.install_hook(hook, self.descriptor.id)
            return

        if self.descriptor.script_url:
            if self.loader is None:
                raise ServiceLoadError(self.descriptor.id, "no script loader configured")
            await self.loader.fetch(self.descriptor.id, self.descriptor.script_url)

        if hook:
            self.page.install_hook(hook, self.descriptor.id)

    async def cleanup(self) -> None:
        removed = self.page.clear_prefixes(self.descriptor.storage_prefixes)
        if self.descriptor.global_hook:
            self.page.release_hook(self.descriptor.global_hook, self.descriptor.id)
        logger.debug("service_namespace_cleared", service_id=self.descriptor.id, removed=removed)

    async def health_check(self) -> bool:
        if self.descriptor.global_hook:
            return self.page.has_hook(self.descriptor.global_hook)
        return True


class CallableIntegration:
    """Integration built from plain (sync or async) callables."""

    def __init__(
        self,
        load_fn: Callable[[], Awaitable[None] | None],
        cleanup_fn: Callable[[], Awaitable[None] | None] | None = None,
        health_fn: Callable[[], Awaitable[bool] | bool] | None = None,
    ):
        self._load_fn = load_fn
        self._cleanup_fn = cleanup_fn
        self._health_fn = health_fn

    @staticmethod
    async def _call(fn: Callable[[], Any]) -> Any:
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def load(self) -> None:
        await self._call(self._load_fn)

    async def cleanup(self) -> None:
        if self._cleanup_fn is not None:
            await self._call(self._cleanup_fn)

    async def health_check(self) -> bool:
        if self._health_fn is None:
            return True
        return bool(await self._call(self._health_fn))


# =============================================================================
# First-party integrations
# =============================================================================


def _language_detection(descriptor: ServiceDescriptor, page: PageContext) -> ServiceIntegration:
    def load() -> None:
        requested = page.accept_language.lower()
        language = next((lang for lang in SUPPORTED_LANGUAGES if requested.startswith(lang)), DEFAULT_LANGUAGE)
        page.local_storage[LANGUAGE_STORAGE_KEY] = language
        page.document_attributes["lang"] = language

    def cleanup() -> None:
        page.clear_prefixes(descriptor.storage_prefixes)

    return CallableIntegration(
        load,
        cleanup,
        lambda: LANGUAGE_STORAGE_KEY in page.local_storage,
    )


def _theme_customization(descriptor: ServiceDescriptor, page: PageContext) -> ServiceIntegration:
    def load() -> None:
        theme = page.local_storage.get(THEME_STORAGE_KEY) or ("dark" if page.prefers_dark else "light")
        page.local_storage[THEME_STORAGE_KEY] = theme
        page.document_attributes["data-theme"] = theme

    def cleanup() -> None:
        page.clear_prefixes(descriptor.storage_prefixes)
        page.document_attributes.pop("data-theme", None)

    return CallableIntegration(
        load,
        cleanup,
        lambda: "data-theme" in page.document_attributes,
    )


def _hook_service(hook: str):
    def factory(descriptor: ServiceDescriptor, page: PageContext) -> ServiceIntegration:
        return CallableIntegration(
            lambda: page.install_hook(hook, descriptor.id),
            lambda: page.release_hook(hook, descriptor.id),
            lambda: page.has_hook(hook),
        )
    return factory


FIRST_PARTY_FACTORIES: dict[str, Callable[[ServiceDescriptor, PageContext], ServiceIntegration]] = {
    "language-detection": _language_detection,
    "theme-customization": _theme_customization,
    "error-tracking": _hook_service("onerror"),
    "security-monitoring": _hook_service("securityMonitor"),
}


def build_default_integrations(
    registry: ServiceRegistry,
    page: PageContext,
    loader: ScriptLoader | None = None,
) -> dict[str, ServiceIntegration]:
    """Create one integration per registered service."""
    integrations: dict[str, ServiceIntegration] = {}
    for descriptor in registry:
        factory = FIRST_PARTY_FACTORIES.get(descriptor.id)
        if factory is not None:
            integrations[descriptor.id] = factory(descriptor, page)
        else:
            integrations[descriptor.id] = ScriptIntegration(descriptor, page, loader)
    return integrations
