"""
Consent Engine - Error Taxonomy

Every error raised inside the engine derives from ConsentEngineError.
Only RegistryCycleError is allowed to escape a public operation; it
signals a configuration bug and must abort startup.
"""

from __future__ import annotations

from dataclasses import dataclass


class ConsentEngineError(Exception):
    """Base class for consent engine errors."""
    pass


@dataclass(frozen=True)
class FieldError:
    """A single validation failure on a consent candidate."""
    field: str
    message: str
    value: object = None

    def to_dict(self) -> dict[str, object]:
        return {"field": self.field, "message": self.message}


class ConsentValidationError(ConsentEngineError):
    """Malformed consent input."""

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        fields = ", ".join(e.field for e in self.errors) or "<unknown>"
        super().__init__(f"Invalid consent record ({fields})")


class StoreError(ConsentEngineError):
    """Consent could not be persisted or loaded."""

    def __init__(self, message: str, key: str | None = None, cause: Exception | None = None):
        self.key = key
        self.cause = cause
        super().__init__(message)


class StorageQuotaExceededError(StoreError):
    """Backend refused a write because it is full."""
    pass


class RateLimitExceededError(ConsentEngineError):
    """Too many consent updates for one identity within the window."""

    def __init__(
        self,
        identity: str | None,
        limit: int,
        window_seconds: float,
        retry_after_seconds: float = 0.0,
    ):
        self.identity = identity
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after_seconds = retry_after_seconds

        msg = f"Rate limit exceeded: {limit} updates per {window_seconds:.0f}s"
        if retry_after_seconds:
            msg += f", retry in {retry_after_seconds:.0f}s"
        super().__init__(msg)


class ServiceLoadError(ConsentEngineError):
    """A third-party integration failed to load."""

    def __init__(self, service_id: str, message: str):
        self.service_id = service_id
        super().__init__(f"Service '{service_id}' failed to load: {message}")


class ServiceLoadTimeoutError(ServiceLoadError):
    """A third-party integration did not load within its timeout."""

    def __init__(self, service_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(service_id, f"timed out after {timeout_ms}ms")


class RegistryCycleError(ConsentEngineError):
    """The service dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Service dependency cycle detected: {' -> '.join(self.cycle)}")


class RegistryError(ConsentEngineError):
    """Invalid service registry configuration."""
    pass


class UnknownServiceError(ConsentEngineError):
    """A service id is not registered."""

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Unknown service: {service_id}")
