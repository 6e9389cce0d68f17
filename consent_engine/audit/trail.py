"""
Consent Engine - Audit Trail

Append-only, hash-chained log of consent transitions. The trail is the
sole source of truth for compliance audits; entries are never edited
or removed.

Appends are expected to come through the consent service's update
path, which serializes them so chain order matches causal order.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from consent_engine.core.enums import AuditAction, ConsentSource
from consent_engine.core.models import DEFAULT_EXPIRY_MONTHS, AuditEntry, ConsentRecord
from consent_engine.core.scheduler import Clock, system_clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RequestMetadata:
    """Optional requester details captured with a transition."""
    ip_address: str | None = None
    user_agent: str | None = None
    reason: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> RequestMetadata:
        if not data:
            return cls()
        return cls(
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            reason=data.get("reason"),
        )


@runtime_checkable
class AuditSink(Protocol):
    """Durable destination for audit entries."""

    async def write(self, entry: AuditEntry) -> None: ...

    async def read_all(self) -> list[AuditEntry]: ...


class JsonlAuditSink:
    """Append-only JSON-lines file, one entry per line."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def _read(self) -> list[AuditEntry]:
        if not self.path.exists():
            return []
        entries = []
        with self.path.open(encoding="utf-8") as fh:
            for line_number, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValueError as e:
                    logger.error("audit_sink_line_invalid", path=str(self.path), line=line_number, error=str(e))
        return entries

    async def write(self, entry: AuditEntry) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append, entry.model_dump_json())

    async def read_all(self) -> list[AuditEntry]:
        return await asyncio.to_thread(self._read)


class AuditTrail:
    """
    In-memory audit trail with an optional durable sink.

    A sink failure is logged and the entry is still kept in memory; the
    consent decision it records has already been applied.
    """

    def __init__(
        self,
        sink: AuditSink | None = None,
        clock: Clock = system_clock,
        expiry_months: int = DEFAULT_EXPIRY_MONTHS,
    ):
        self._sink = sink
        self._clock = clock
        self._expiry_months = expiry_months
        self._entries: list[AuditEntry] = []
        self._last_hash: str | None = None

    async def restore(self) -> int:
        """Load previously persisted entries from the sink."""
        if self._sink is None:
            return 0
        try:
            entries = await self._sink.read_all()
        except Exception as e:
            logger.error("audit_restore_failed", error=str(e))
            return 0
        self._entries = list(entries)
        self._last_hash = entries[-1].hash if entries else None
        logger.info("audit_trail_restored", entries=len(entries))
        return len(entries)

    async def append(
        self,
        record: ConsentRecord,
        action: AuditAction,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
        identity: str | None = None,
        source: ConsentSource | str = ConsentSource.MANUAL,
    ) -> AuditEntry:
        """Append a snapshot of ``record`` under ``action``."""
        if not isinstance(metadata, RequestMetadata):
            metadata = RequestMetadata.from_mapping(metadata)

        flags = record.flags()
        entry = AuditEntry(
            identity=identity,
            necessary=flags["necessary"],
            analytics=flags["analytics"],
            marketing=flags["marketing"],
            preferences=flags["preferences"],
            version=record.version,
            action=action,
            source=source.value if isinstance(source, ConsentSource) else str(source),
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            reason=metadata.reason,
            timestamp=self._clock(),
            expires_at=record.effective_expires_at(self._expiry_months),
            previous_hash=self._last_hash,
        )
        entry = entry.model_copy(update={"hash": entry.compute_hash()})

        self._entries.append(entry)
        self._last_hash = entry.hash

        if self._sink is not None:
            try:
                await self._sink.write(entry)
            except Exception as e:
                logger.error("audit_sink_write_failed", entry_id=entry.id, error=str(e))

        logger.info(
            "consent_audit_appended",
            action=entry.action.value,
            version=entry.version,
            identity=identity,
            source=entry.source,
        )
        return entry

    def history(self, identity: str | None = None) -> list[AuditEntry]:
        """Entries newest-first, optionally restricted to one identity."""
        entries = self._entries
        if identity is not None:
            entries = [e for e in entries if e.identity == identity]
        return list(reversed(entries))

    def anonymous_history(self) -> list[AuditEntry]:
        return [e for e in reversed(self._entries) if e.identity is None]

    def export_json(self, identity: str | None = None) -> str:
        """Export history as a JSON array for compliance requests."""
        return json.dumps(
            [e.model_dump(mode="json") for e in self.history(identity)],
            indent=2,
        )

    def count(self, action: AuditAction | None = None) -> int:
        if action is None:
            return len(self._entries)
        return sum(1 for e in self._entries if e.action == action)

    def verify_chain(self) -> tuple[bool, str | None]:
        """
        Verify hash chain integrity.

        Returns (is_valid, id of the first broken entry).
        """
        previous: str | None = None
        for entry in self._entries:
            if entry.previous_hash != previous or entry.hash != entry.compute_hash():
                return False, entry.id
            previous = entry.hash
        return True, None

    def __len__(self) -> int:
        return len(self._entries)
