"""Process-wide sync state: the loop guard and per-direction processing locks.

Nothing here is persisted. A restart forgets recent reverse writes, which at
worst lets one redundant forward sync through before both sides converge.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from incident_bridge.models.enums import SyncDirection

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 30.0
DEFAULT_RETENTION_SECONDS = 300.0


class LoopGuard:
    """Remembers recent reverse writes so the echoed forward sync is dropped.

    A reverse sync writing to incident X causes incident.io to emit an update
    webhook for X. Any forward sync for X that starts less than
    ``cooldown_seconds`` after that write is suppressed.
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.retention_seconds = max(retention_seconds, cooldown_seconds)
        self._clock = clock
        self._writes: dict[str, float] = {}

    def record_reverse_write(self, incident_id: str) -> None:
        now = self._clock()
        self._writes[incident_id] = now
        self._prune(now)
        logger.debug("Recorded reverse write", extra={"incident_id": incident_id})

    def should_suppress_forward_sync(self, incident_id: str) -> bool:
        written_at = self._writes.get(incident_id)
        if written_at is None:
            return False
        elapsed = self._clock() - written_at
        if elapsed < self.cooldown_seconds:
            logger.info(
                "Suppressing forward sync within loop-guard cooldown",
                extra={"incident_id": incident_id, "seconds_since_reverse_write": round(elapsed, 3)},
            )
            return True
        del self._writes[incident_id]
        return False

    def _prune(self, now: float) -> None:
        expired = [key for key, ts in self._writes.items() if now - ts > self.retention_seconds]
        for key in expired:
            del self._writes[key]

    def __len__(self) -> int:
        return len(self._writes)

    def __contains__(self, incident_id: str) -> bool:
        return incident_id in self._writes

    def clear(self) -> None:
        self._writes.clear()


class ProcessingLocks:
    """Set of record ids currently being synced in one direction."""

    def __init__(self, direction: SyncDirection):
        self.direction = direction
        self._held: set[str] = set()

    def acquire(self, record_id: str) -> bool:
        """Mark ``record_id`` as in flight. False if it already was."""
        if record_id in self._held:
            return False
        self._held.add(record_id)
        return True

    def release(self, record_id: str) -> None:
        self._held.discard(record_id)

    @contextmanager
    def hold(self, record_id: str) -> Iterator[bool]:
        """Acquire for the duration of the block; yields whether it was acquired.

        Only a holder that acquired the lock releases it, on every exit path.
        """
        acquired = self.acquire(record_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(record_id)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._held

    def __len__(self) -> int:
        return len(self._held)

    def snapshot(self) -> list[str]:
        return sorted(self._held)

    def clear(self) -> None:
        self._held.clear()


class SyncState:
    """The mutable state shared by the forward and reverse engines."""

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.loop_guard = LoopGuard(cooldown_seconds, retention_seconds, clock)
        self.forward_locks = ProcessingLocks(SyncDirection.FORWARD)
        self.reverse_locks = ProcessingLocks(SyncDirection.REVERSE)

    @classmethod
    def from_config(cls, loop_guard_config, clock: Callable[[], float] = time.monotonic) -> SyncState:
        return cls(
            cooldown_seconds=loop_guard_config.cooldown_seconds,
            retention_seconds=loop_guard_config.retention_seconds,
            clock=clock,
        )

    def stats(self) -> dict:
        return {
            "loop_guard_entries": len(self.loop_guard),
            "cooldown_seconds": self.loop_guard.cooldown_seconds,
            "forward_in_flight": self.forward_locks.snapshot(),
            "reverse_in_flight": self.reverse_locks.snapshot(),
        }
