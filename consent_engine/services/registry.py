"""
Consent Engine - Service Registry

Static catalog of consent-gated integrations and their dependency
edges. The dependency graph is validated once, at construction: an
unknown dependency or a cycle is a configuration bug and fails fast.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

import structlog

from consent_engine.core.enums import ConsentCategory
from consent_engine.core.errors import RegistryCycleError, RegistryError, UnknownServiceError
from consent_engine.core.models import ServiceDescriptor

logger = structlog.get_logger(__name__)


class ServiceRegistry:
    """
    Immutable registry of service descriptors.

    Provides:
    - Lookup by id and by consent category
    - Dependency validation and cycle detection
    - Topological load levels
    """

    def __init__(self, descriptors: Iterable[ServiceDescriptor]):
        self._services: dict[str, ServiceDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._services:
                raise RegistryError(f"Duplicate service id: {descriptor.id}")
            self._services[descriptor.id] = descriptor

        self._validate_dependencies()
        self._detect_cycles()
        self._levels = self._compute_levels()

        logger.info(
            "service_registry_initialized",
            services=len(self._services),
            levels=len(self._levels),
        )

    # ═══════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════

    def _validate_dependencies(self) -> None:
        for descriptor in self._services.values():
            for dep_id in descriptor.dependencies:
                if dep_id not in self._services:
                    raise RegistryError(
                        f"Service '{descriptor.id}' depends on unknown service '{dep_id}'"
                    )

    def _detect_cycles(self) -> None:
        """Depth-first search with three-colour marking."""
        white, grey, black = 0, 1, 2
        colour = dict.fromkeys(self._services, white)
        path: list[str] = []

        def visit(service_id: str) -> None:
            colour[service_id] = grey
            path.append(service_id)
            for dep_id in self._services[service_id].dependencies:
                if colour[dep_id] == grey:
                    cycle = path[path.index(dep_id):] + [dep_id]
                    raise RegistryCycleError(cycle)
                if colour[dep_id] == white:
                    visit(dep_id)
            path.pop()
            colour[service_id] = black

        for service_id in sorted(self._services):
            if colour[service_id] == white:
                visit(service_id)

    def _compute_levels(self) -> list[list[ServiceDescriptor]]:
        depth: dict[str, int] = {}

        def level_of(service_id: str) -> int:
            if service_id not in depth:
                deps = self._services[service_id].dependencies
                depth[service_id] = 1 + max((level_of(d) for d in deps), default=-1)
            return depth[service_id]

        levels: list[list[ServiceDescriptor]] = []
        for service_id in self._services:
            level = level_of(service_id)
            while len(levels) <= level:
                levels.append([])
            levels[level].append(self._services[service_id])

        for level in levels:
            level.sort(key=lambda d: (-d.priority, d.id))
        return levels

    # ═══════════════════════════════════════════════════════════════
    # LOOKUP
    # ═══════════════════════════════════════════════════════════════

    def get(self, service_id: str) -> ServiceDescriptor:
        try:
            return self._services[service_id]
        except KeyError:
            raise UnknownServiceError(service_id) from None

    def all(self) -> list[ServiceDescriptor]:
        """All descriptors, highest priority first."""
        return sorted(self._services.values(), key=lambda d: (-d.priority, d.id))

    def by_category(self, category: ConsentCategory | str) -> list[ServiceDescriptor]:
        category = ConsentCategory(category)
        return [d for d in self.all() if d.category is category]

    def dependents_of(self, service_id: str) -> list[ServiceDescriptor]:
        """Services that list ``service_id`` as a dependency."""
        return [d for d in self.all() if service_id in d.dependencies]

    def load_levels(self) -> list[list[ServiceDescriptor]]:
        """
        Services grouped so every dependency sits in an earlier level.

        Within a level, higher priority comes first.
        """
        return [list(level) for level in self._levels]

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self.all())
