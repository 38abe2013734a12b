from __future__ import annotations

import threading

from typing import Dict, Optional

from facegreet.config import ThrottleConfig
from facegreet.errors import InvalidInput


class CooldownThrottle:
    """Per-identity cooldown gate for "greet this identity now" events.

    `should_notify` is a pure query; callers call `record_notified` only after a
    notification was actually delivered. The cooldown table is never pruned: it
    grows with the number of distinct identities seen until `reset()`.

    Timestamps are seconds (float) from `config.clock`, `time.monotonic` by default.
    """

    def __init__(self, config: Optional[ThrottleConfig] = None):
        self.config = config or ThrottleConfig()
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._last)

    def now(self) -> float:
        return float(self.config.clock())

    def should_notify(self, identity: str, now: Optional[float] = None, cooldown: Optional[float] = None) -> bool:
        cooldown = self.config.cooldown_seconds if cooldown is None else float(cooldown)
        if cooldown < 0:
            raise InvalidInput(f"cooldown must be non-negative, got {cooldown}")
        now = self.now() if now is None else float(now)
        with self._lock:
            last = self._last.get(identity)
        if last is None:
            return True
        return now - last >= cooldown

    def record_notified(self, identity: str, now: Optional[float] = None) -> None:
        now = self.now() if now is None else float(now)
        with self._lock:
            self._last[identity] = now

    def last_notified(self, identity: str) -> Optional[float]:
        with self._lock:
            return self._last.get(identity)

    def reset(self) -> None:
        with self._lock:
            self._last.clear()
