"""
Consent Engine - Update Rate Limiter

Bounds consent updates per identity within a rolling window so a
misbehaving client cannot flood the audit trail.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timedelta

import structlog

from consent_engine.core.scheduler import Clock, system_clock

logger = structlog.get_logger(__name__)

ANONYMOUS = "anonymous"


class UpdateRateLimiter:
    """
    Rolling-window limiter keyed by identity.

    Anonymous updates (identity None) share one bucket.
    """

    MAX_TRACKED_IDENTITIES = 50000

    def __init__(
        self,
        max_updates: int = 10,
        window_seconds: float = 3600.0,
        clock: Clock = system_clock,
    ):
        self.max_updates = max_updates
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._updates: OrderedDict[str, list[datetime]] = OrderedDict()

    @staticmethod
    def _key(identity: str | None) -> str:
        return identity or ANONYMOUS

    def _recent(self, key: str, now: datetime) -> list[datetime]:
        cutoff = now - self.window
        recent = [t for t in self._updates.get(key, []) if t > cutoff]
        if recent:
            self._updates[key] = recent
            self._updates.move_to_end(key)
        else:
            self._updates.pop(key, None)
        return recent

    def check(self, identity: str | None) -> bool:
        """Check if an update would be allowed, without recording it."""
        now = self._clock()
        return len(self._recent(self._key(identity), now)) < self.max_updates

    def check_and_record(self, identity: str | None) -> bool:
        """
        Record an update attempt if the identity is under its limit.

        Returns False, recording nothing, when the limit is reached.
        """
        key = self._key(identity)
        now = self._clock()
        recent = self._recent(key, now)

        if len(recent) >= self.max_updates:
            logger.warning(
                "consent_update_rate_limited",
                identity=key,
                limit=self.max_updates,
                window_seconds=self.window.total_seconds(),
            )
            return False

        recent.append(now)
        self._updates[key] = recent
        self._updates.move_to_end(key)

        while len(self._updates) > self.MAX_TRACKED_IDENTITIES:
            self._updates.popitem(last=False)
        return True

    def remaining(self, identity: str | None) -> int:
        now = self._clock()
        return max(self.max_updates - len(self._recent(self._key(identity), now)), 0)

    def retry_after(self, identity: str | None) -> float:
        """Seconds until the oldest update in the window ages out."""
        now = self._clock()
        recent = self._recent(self._key(identity), now)
        if len(recent) < self.max_updates:
            return 0.0
        return max((recent[0] + self.window - now).total_seconds(), 0.0)

    def reset(self, identity: str | None = None) -> None:
        if identity is None:
            self._updates.clear()
        else:
            self._updates.pop(self._key(identity), None)
