"""
Consent Engine - Core Models

Pydantic models for consent records, audit entries and banner show
history, plus the service descriptor and runtime state dataclasses used
by the orchestrator.

Consent records are immutable values. Every transition produces a new
record, which is what lets the audit trail and the orchestrator compare
before/after snapshots safely.
"""

from __future__ import annotations

import calendar
import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from consent_engine.core.enums import (
    AuditAction,
    ConsentCategory,
    InteractionType,
    ServiceStatus,
)
from consent_engine.core.errors import FieldError, RegistryError

DEFAULT_POLICY_VERSION = "3.0"
DEFAULT_EXPIRY_MONTHS = 24


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(UTC)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift a timestamp by whole calendar months, clamping the day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_version(policy_version: str, previous: str | None = None) -> str:
    """
    Assign the next record version under a policy.

    Versions look like ``"3.0-4"``: the policy version followed by a
    revision that increases on every decision made under that policy.
    """
    revision = 1
    if previous:
        policy, sep, rev = previous.rpartition("-")
        if sep and policy == policy_version and rev.isdigit():
            revision = int(rev) + 1
    return f"{policy_version}-{revision}"


def policy_of(version: str) -> str:
    """Extract the policy part of a record version."""
    policy, sep, rev = version.rpartition("-")
    if sep and rev.isdigit() and policy:
        return policy
    return version or DEFAULT_POLICY_VERSION


# ═══════════════════════════════════════════════════════════════════════════
# BASE MODELS
# ═══════════════════════════════════════════════════════════════════════════


class ConsentModel(BaseModel):
    """Base model for all consent entities."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
    )


# ═══════════════════════════════════════════════════════════════════════════
# CONSENT RECORD
# ═══════════════════════════════════════════════════════════════════════════


class ConsentRecord(ConsentModel):
    """
    Versioned, expiring record of a user's consent decision.

    ``necessary`` is always true. A record without ``granted_at`` means
    no decision has been made yet, and every optional category reads as
    false regardless of the stored flags.
    """
    necessary: StrictBool = True
    analytics: StrictBool = False
    marketing: StrictBool = False
    preferences: StrictBool = False

    granted_at: datetime | None = Field(default=None, alias="grantedAt")
    version: StrictStr = Field(default=DEFAULT_POLICY_VERSION)
    expires_at: datetime | None = Field(default=None, alias="expiresAt", validate_default=True)

    @model_validator(mode="before")
    @classmethod
    def _enforce_invariants(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)

        # Non-boolean values are left alone so strict validation rejects them
        if isinstance(data.get("necessary", True), bool):
            data["necessary"] = True

        granted_at = data.get("granted_at", data.get("grantedAt"))
        if granted_at is None:
            for category in ConsentCategory.optional():
                if isinstance(data.get(category.value, False), bool):
                    data[category.value] = False
        return data

    @field_validator("granted_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("expires_at")
    @classmethod
    def _default_expiry(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        """A decision without an explicit expiry lapses after the default period."""
        if value is not None:
            return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        granted_at = info.data.get("granted_at")
        if granted_at is None:
            return None
        return add_months(granted_at, DEFAULT_EXPIRY_MONTHS)

    @property
    def has_decision(self) -> bool:
        return self.granted_at is not None

    def allows(self, category: ConsentCategory | str) -> bool:
        """Check if the record permits a category."""
        category = ConsentCategory(category)
        if category is ConsentCategory.NECESSARY:
            return True
        if self.granted_at is None:
            return False
        return bool(getattr(self, category.value))

    def categories(self) -> dict[ConsentCategory, bool]:
        """Effective per-category consent."""
        return {c: self.allows(c) for c in ConsentCategory}

    def flags(self) -> dict[str, bool]:
        """Effective consent keyed by category name."""
        return {c.value: allowed for c, allowed in self.categories().items()}

    def effective_expires_at(self, expiry_months: int = DEFAULT_EXPIRY_MONTHS) -> datetime | None:
        if self.expires_at is not None:
            return self.expires_at
        if self.granted_at is None:
            return None
        return add_months(self.granted_at, expiry_months)

    def interaction_type(self) -> InteractionType:
        """Classify the decision as accept-all, reject-all or custom."""
        granted = sum(1 for allowed in self.categories().values() if allowed)
        if granted == len(ConsentCategory):
            return InteractionType.ACCEPT
        if granted == 1:
            return InteractionType.REJECT
        return InteractionType.CUSTOMIZE

    def age_days(self, now: datetime | None = None) -> int:
        if self.granted_at is None:
            return 0
        now = now or utc_now()
        return max((now - self.granted_at).days, 0)

    def same_consent(self, other: ConsentRecord | None) -> bool:
        """Check if two records grant the same categories."""
        if other is None:
            return not any(self.allows(c) for c in ConsentCategory.optional())
        return self.flags() == other.flags()


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of validating a consent candidate. Never raised."""
    record: ConsentRecord | None = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.record is not None and not self.errors


def validate_consent(candidate: Any) -> ValidationOutcome:
    """
    Validate an untrusted consent candidate.

    Accepts a ConsentRecord or a mapping using either snake_case or the
    wire camelCase keys. Returns the validated record or the list of
    field errors; never raises.
    """
    if isinstance(candidate, ConsentRecord):
        return ValidationOutcome(record=candidate)

    if not isinstance(candidate, Mapping):
        return ValidationOutcome(errors=[
            FieldError(field="__root__", message="Consent must be a mapping", value=candidate),
        ])

    try:
        record = ConsentRecord.model_validate(dict(candidate))
    except PydanticValidationError as e:
        errors = [
            FieldError(
                field=".".join(str(part) for part in err["loc"]) or "__root__",
                message=err["msg"],
                value=err.get("input"),
            )
            for err in e.errors()
        ]
        return ValidationOutcome(errors=errors)
    except (TypeError, ValueError) as e:
        return ValidationOutcome(errors=[FieldError(field="__root__", message=str(e))])

    return ValidationOutcome(record=record)


def is_expired(
    record: ConsentRecord | None,
    now: datetime | None = None,
    expiry_months: int = DEFAULT_EXPIRY_MONTHS,
) -> bool:
    """
    Check if a record no longer represents consent.

    True when there is no record, no decision (``granted_at is None``),
    or ``now`` is past the expiry (``granted_at + expiry_months`` when
    the record carries no explicit expiry).
    """
    if record is None or record.granted_at is None:
        return True
    now = now or utc_now()
    expires_at = record.effective_expires_at(expiry_months)
    return expires_at is not None and now > expires_at


def grant(
    flags: Mapping[ConsentCategory | str, bool],
    now: datetime | None = None,
    policy_version: str = DEFAULT_POLICY_VERSION,
    previous: ConsentRecord | None = None,
    expiry_months: int = DEFAULT_EXPIRY_MONTHS,
) -> ConsentRecord:
    """Build a fresh record for an accept, decline or customize decision."""
    now = now or utc_now()
    values = {ConsentCategory(k).value: v for k, v in flags.items()}
    return ConsentRecord(
        necessary=True,
        analytics=values.get("analytics", False),
        marketing=values.get("marketing", False),
        preferences=values.get("preferences", False),
        granted_at=now,
        version=next_version(policy_version, previous.version if previous else None),
        expires_at=add_months(now, expiry_months),
    )


def withdraw(
    record: ConsentRecord | None,
    now: datetime | None = None,
    policy_version: str | None = None,
    expiry_months: int = DEFAULT_EXPIRY_MONTHS,
) -> ConsentRecord:
    """
    Withdraw every optional category.

    Returns a new record with a fresh version and ``granted_at = now``;
    the input is never modified.
    """
    now = now or utc_now()
    previous_version = record.version if record is not None else None
    if policy_version is None:
        policy_version = policy_of(previous_version) if previous_version else DEFAULT_POLICY_VERSION
    return ConsentRecord(
        necessary=True,
        analytics=False,
        marketing=False,
        preferences=False,
        granted_at=now,
        version=next_version(policy_version, previous_version),
        expires_at=add_months(now, expiry_months),
    )


# ═══════════════════════════════════════════════════════════════════════════
# AUDIT
# ═══════════════════════════════════════════════════════════════════════════


class AuditEntry(ConsentModel):
    """
    Immutable snapshot of a consent transition.

    Entries are hash-chained: ``hash`` covers every other field including
    ``previous_hash``, so removing or editing an entry breaks the chain.
    """
    id: str = Field(default_factory=generate_id)
    identity: str | None = None

    necessary: bool = True
    analytics: bool = False
    marketing: bool = False
    preferences: bool = False
    version: str

    action: AuditAction
    source: str = "manual"

    # Requester metadata
    ip_address: str | None = None
    user_agent: str | None = None
    reason: str | None = None

    timestamp: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    previous_hash: str | None = None
    hash: str | None = None

    def compute_hash(self) -> str:
        payload = self.model_dump(mode="json", exclude={"hash"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def flags(self) -> dict[str, bool]:
        return {
            "necessary": self.necessary,
            "analytics": self.analytics,
            "marketing": self.marketing,
            "preferences": self.preferences,
        }


# ═══════════════════════════════════════════════════════════════════════════
# BANNER HISTORY
# ═══════════════════════════════════════════════════════════════════════════


class ShowHistory(ConsentModel):
    """How often the consent prompt was shown and how it was answered."""
    show_count: int = Field(default=0, ge=0)
    rejection_count: int = Field(default=0, ge=0)
    last_shown: datetime | None = None
    last_interaction: datetime | None = None
    average_decision_ms: float | None = None
    preferred_interaction: InteractionType | None = None


# ═══════════════════════════════════════════════════════════════════════════
# SERVICES
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ServiceDescriptor:
    """
    Static definition of a consent-gated third-party integration.

    ``priority`` orders loads (10 first). ``storage_prefixes`` name the
    cookie and storage namespace cleared when the service is torn down.
    """
    id: str
    name: str
    category: ConsentCategory
    priority: int = 5
    is_essential: bool = False
    load_timeout_ms: int = 5000
    max_retries: int = 2
    dependencies: tuple[str, ...] = ()

    storage_prefixes: tuple[str, ...] = ()
    script_url: str | None = None
    global_hook: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", ConsentCategory(self.category))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "storage_prefixes", tuple(self.storage_prefixes))

        if not self.id:
            raise RegistryError("Service id must not be empty")
        if not 1 <= self.priority <= 10:
            raise RegistryError(f"Service '{self.id}' priority must be 1-10, got {self.priority}")
        if self.load_timeout_ms <= 0:
            raise RegistryError(f"Service '{self.id}' load_timeout_ms must be positive")
        if self.max_retries < 0:
            raise RegistryError(f"Service '{self.id}' max_retries must not be negative")
        if self.id in self.dependencies:
            raise RegistryError(f"Service '{self.id}' cannot depend on itself")

    @property
    def always_on(self) -> bool:
        return self.category is ConsentCategory.NECESSARY


@dataclass
class ServiceRuntimeState:
    """Mutable lifecycle state of one service. Owned by the orchestrator."""
    service_id: str
    status: ServiceStatus = ServiceStatus.PENDING
    load_time_ms: float | None = None
    last_error: str | None = None
    retry_count: int = 0
    last_retry_at: datetime | None = None

    healthy: bool | None = None
    last_health_check_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "status": self.status.value,
            "load_time_ms": self.load_time_ms,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "healthy": self.healthy,
            "last_health_check_at": (
                self.last_health_check_at.isoformat() if self.last_health_check_at else None
            ),
        }
