"""
Consent Engine - Consent Store Adapter

Persistence boundary for the consent record and the banner show
history. Nothing raised by a backend crosses this layer: reads degrade
to "no consent", writes report a StoreResult.

Envelope format (JSON, one slot):
    {
        "consent": {"necessary": true, "analytics": false, ...},
        "timestamp": "<grantedAt ISO-8601>",
        "version": "3.0-1",
        "expiresAt": "<ISO-8601>"
    }

An envelope discovered past its expiry is marked ``"expired": true``
rather than erased (erased only when the mark cannot be written), and
the expiry listener fires exactly once.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from consent_engine.core.errors import ConsentValidationError, StoreError
from consent_engine.core.models import (
    DEFAULT_EXPIRY_MONTHS,
    ConsentRecord,
    ShowHistory,
    is_expired,
    validate_consent,
)
from consent_engine.core.scheduler import Clock, system_clock
from consent_engine.store.backends import KeyValueBackend

logger = structlog.get_logger(__name__)

DEFAULT_STORAGE_KEY = "consent-engine:consent"
DEFAULT_HISTORY_KEY = "consent-engine:consent-metrics"

ExpiryListener = Callable[[ConsentRecord], Awaitable[None] | None]


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a store write."""
    ok: bool
    error: StoreError | None = None

    @classmethod
    def success(cls) -> StoreResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: StoreError) -> StoreResult:
        return cls(ok=False, error=error)


def encode_envelope(record: ConsentRecord, expiry_months: int = DEFAULT_EXPIRY_MONTHS) -> dict[str, Any]:
    """Serialize a record into the persisted envelope."""
    expires_at = record.effective_expires_at(expiry_months)
    return {
        "consent": record.flags(),
        "timestamp": record.granted_at.isoformat() if record.granted_at else None,
        "version": record.version,
        "expiresAt": expires_at.isoformat() if expires_at else None,
    }


def decode_envelope(envelope: Any) -> ConsentRecord:
    """Parse a persisted envelope, raising ConsentValidationError if malformed."""
    if not isinstance(envelope, dict) or not isinstance(envelope.get("consent"), dict):
        raise ValueError("Envelope is missing its consent object")

    candidate = dict(envelope["consent"])
    candidate["grantedAt"] = envelope.get("timestamp")
    candidate["expiresAt"] = envelope.get("expiresAt")
    if "version" in envelope:
        candidate["version"] = envelope["version"]

    outcome = validate_consent(candidate)
    if not outcome.ok:
        raise ConsentValidationError(outcome.errors)
    assert outcome.record is not None
    return outcome.record


class ConsentStore:
    """
    Consent store adapter over a key-value backend.

    ``read()`` never returns an expired record and never raises.
    ``write()`` never raises; failures come back as StoreResult.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        key: str = DEFAULT_STORAGE_KEY,
        history_key: str = DEFAULT_HISTORY_KEY,
        expiry_months: int = DEFAULT_EXPIRY_MONTHS,
        clock: Clock = system_clock,
    ):
        self.backend = backend
        self.key = key
        self.history_key = history_key
        self.expiry_months = expiry_months
        self._clock = clock
        self._expiry_listener: ExpiryListener | None = None
        self._expired_seen: set[tuple[str, datetime | None]] = set()

    def set_expiry_listener(self, listener: ExpiryListener | None) -> None:
        """Register the callback fired when a read discovers an expired record."""
        self._expiry_listener = listener

    # ───────────────────────────────────────────────────────────────
    # CONSENT SLOT
    # ───────────────────────────────────────────────────────────────

    async def read(self) -> ConsentRecord | None:
        """Read the current record, treating expired or corrupted data as absent."""
        try:
            raw = await self.backend.get(self.key)
        except Exception as e:
            logger.error("consent_store_read_failed", key=self.key, error=str(e))
            return None

        if raw is None:
            return None

        try:
            envelope = json.loads(raw)
            record = decode_envelope(envelope)
        except (ValueError, TypeError, KeyError, ConsentValidationError, PydanticValidationError) as e:
            logger.warning("consent_store_corrupted", key=self.key, error=str(e))
            await self._clear_slot()
            return None

        if envelope.get("expired"):
            return None

        if record.granted_at is None:
            return None

        if is_expired(record, self._clock(), self.expiry_months):
            if not await self._mark_expired(envelope):
                await self._clear_slot()
            await self._notify_expired(record)
            return None

        return record

    async def peek_expired(self) -> bool:
        """Check whether the slot holds no live consent, without side effects."""
        try:
            raw = await self.backend.get(self.key)
            if raw is None:
                return True
            envelope = json.loads(raw)
            if envelope.get("expired"):
                return True
            return is_expired(decode_envelope(envelope), self._clock(), self.expiry_months)
        except Exception:
            return True

    async def write(self, record: ConsentRecord) -> StoreResult:
        """Persist a record. Never raises."""
        try:
            payload = json.dumps(encode_envelope(record, self.expiry_months))
            await self.backend.set(self.key, payload)
        except StoreError as e:
            logger.warning("consent_store_write_failed", key=self.key, error=str(e))
            return StoreResult.failure(e)
        except Exception as e:
            logger.warning("consent_store_write_failed", key=self.key, error=str(e))
            return StoreResult.failure(StoreError(f"Consent write failed: {e}", key=self.key, cause=e))

        logger.debug("consent_store_written", key=self.key, version=record.version)
        return StoreResult.success()

    async def clear(self) -> StoreResult:
        """Remove the consent and history slots."""
        try:
            await self.backend.delete(self.key)
            await self.backend.delete(self.history_key)
        except Exception as e:
            logger.warning("consent_store_clear_failed", key=self.key, error=str(e))
            error = e if isinstance(e, StoreError) else StoreError(str(e), key=self.key, cause=e)
            return StoreResult.failure(error)
        return StoreResult.success()

    async def _clear_slot(self) -> None:
        try:
            await self.backend.delete(self.key)
        except Exception as e:
            logger.warning("consent_store_clear_failed", key=self.key, error=str(e))

    async def _mark_expired(self, envelope: dict[str, Any]) -> bool:
        marked = dict(envelope)
        marked["expired"] = True
        try:
            await self.backend.set(self.key, json.dumps(marked))
        except Exception as e:
            logger.warning("consent_store_expiry_mark_failed", key=self.key, error=str(e))
            return False
        return True

    async def _notify_expired(self, record: ConsentRecord) -> None:
        # Guards against a slot that could be neither marked nor cleared
        fingerprint = (record.version, record.granted_at)
        if fingerprint in self._expired_seen:
            return
        self._expired_seen.add(fingerprint)

        logger.info("consent_expired", version=record.version, granted_at=record.granted_at)
        if self._expiry_listener is None:
            return
        try:
            result = self._expiry_listener(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("consent_expiry_listener_failed", error=str(e))

    # ───────────────────────────────────────────────────────────────
    # HISTORY SLOT
    # ───────────────────────────────────────────────────────────────

    async def read_history(self) -> ShowHistory:
        """Read the banner show history; corrupted data yields an empty history."""
        try:
            raw = await self.backend.get(self.history_key)
            if raw is None:
                return ShowHistory()
            return ShowHistory.model_validate_json(raw)
        except Exception as e:
            logger.warning("consent_history_read_failed", key=self.history_key, error=str(e))
            return ShowHistory()

    async def write_history(self, history: ShowHistory) -> StoreResult:
        try:
            await self.backend.set(self.history_key, history.model_dump_json())
        except Exception as e:
            logger.warning("consent_history_write_failed", key=self.history_key, error=str(e))
            error = e if isinstance(e, StoreError) else StoreError(str(e), key=self.history_key, cause=e)
            return StoreResult.failure(error)
        return StoreResult.success()
