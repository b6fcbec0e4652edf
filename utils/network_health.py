"""
Network health tracking
Counts recent server/network failures and flags the connection as unstable
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)

ERROR_WINDOW_SECONDS = 60.0
UNSTABLE_THRESHOLD = 3
DEDUPE_WINDOW_SECONDS = 0.25


class NetworkErrorKind(Enum):
    SERVER = "server"
    NETWORK = "network"


@dataclass(frozen=True)
class NetworkHealthSnapshot:
    online: bool
    unstable: bool
    error_count: int


class NetworkHealth:
    """Sliding window of recent failures; bursts within 250 ms count once"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._errors: List[float] = []
        self._last_recorded_at = None
        self.online = True
        self._listeners: List[Callable[[NetworkHealthSnapshot], None]] = []

    def _prune(self, now: float):
        self._errors = [t for t in self._errors if now - t <= ERROR_WINDOW_SECONDS]

    def record_error(self, kind: NetworkErrorKind):
        now = self._clock()
        if self._last_recorded_at is not None and now - self._last_recorded_at < DEDUPE_WINDOW_SECONDS:
            return
        self._last_recorded_at = now
        self._errors.append(now)
        self._prune(now)
        snapshot = self.snapshot()
        if snapshot.unstable:
            logger.warning(f"⚠️ NETWORK_UNSTABLE: {snapshot.error_count} {kind.value} error(s) in the last minute")
        self._emit(snapshot)

    def set_online(self, online: bool):
        if self.online == online:
            return
        self.online = online
        self._emit(self.snapshot())

    def snapshot(self) -> NetworkHealthSnapshot:
        self._prune(self._clock())
        count = len(self._errors)
        return NetworkHealthSnapshot(online=self.online, unstable=count >= UNSTABLE_THRESHOLD, error_count=count)

    def subscribe(self, listener: Callable[[NetworkHealthSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, snapshot: NetworkHealthSnapshot):
        for listener in list(self._listeners):
            listener(snapshot)


# Global instance
network_health = NetworkHealth()
