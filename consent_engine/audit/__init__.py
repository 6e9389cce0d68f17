"""
Consent Engine - Audit

Append-only consent audit trail and the update rate limiter guarding it.
"""

from consent_engine.audit.rate_limiter import UpdateRateLimiter
from consent_engine.audit.trail import (
    AuditSink,
    AuditTrail,
    JsonlAuditSink,
    RequestMetadata,
)

__all__ = [
    "AuditSink",
    "AuditTrail",
    "JsonlAuditSink",
    "RequestMetadata",
    "UpdateRateLimiter",
]
