"""
Consent Engine - Core Enumerations

Consent categories, audit actions, service lifecycle states and the
sources a consent decision can come from.
"""

from enum import Enum


class ConsentCategory(str, Enum):
    """
    Unit of granularity at which a user grants or withholds permission.

    NECESSARY is always granted and cannot be withdrawn.
    """
    NECESSARY = "necessary"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    PREFERENCES = "preferences"

    @property
    def is_optional(self) -> bool:
        """Check if the category requires explicit consent."""
        return self is not ConsentCategory.NECESSARY

    @classmethod
    def optional(cls) -> list["ConsentCategory"]:
        """Categories a user can toggle."""
        return [c for c in cls if c.is_optional]


class AuditAction(str, Enum):
    """Consent transitions recorded in the audit trail."""
    GRANTED = "GRANTED"
    WITHDRAWN = "WITHDRAWN"
    EXPIRED = "EXPIRED"


class ServiceStatus(str, Enum):
    """Lifecycle states of a third-party integration."""
    PENDING = "pending"      # Registered, not yet attempted
    LOADING = "loading"      # Load in flight
    LOADED = "loaded"        # Running
    ERROR = "error"          # Last load failed (may be retrying)
    DISABLED = "disabled"    # Torn down, consent absent

    @property
    def is_active(self) -> bool:
        """Check if a load is in flight or completed."""
        return self in (ServiceStatus.LOADING, ServiceStatus.LOADED)


class ConsentSource(str, Enum):
    """Where a consent change originated."""
    BANNER = "banner"
    PREFERENCE_CENTER = "preference_center"
    MANUAL = "manual"
    API = "api"
    WITHDRAWAL = "withdrawal"
    EXPIRY = "expiry"
    STORE = "store"


class InteractionType(str, Enum):
    """How a user answered the consent prompt."""
    ACCEPT = "accept"
    REJECT = "reject"
    CUSTOMIZE = "customize"
