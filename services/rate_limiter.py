"""
Per-client minimum-interval rate limiter, owned by the app rather than a module
"""
import time
from collections import OrderedDict
from typing import Callable, Optional

from config.billing_config import SETTINGS_RATE_LIMIT_SECONDS, SETTINGS_RATE_LIMIT_MAX_KEYS


class RequestRateLimiter:
    def __init__(self, min_interval: float = SETTINGS_RATE_LIMIT_SECONDS,
                 max_keys: int = SETTINGS_RATE_LIMIT_MAX_KEYS,
                 clock: Optional[Callable[[], float]] = None):
        self.min_interval = min_interval
        self.max_keys = max_keys
        self.clock = clock or time.monotonic
        self._last_seen: "OrderedDict[str, float]" = OrderedDict()

    def allow(self, key: str) -> bool:
        """Record a request for key; False when it came sooner than min_interval."""
        now = self.clock()
        last = self._last_seen.get(key)
        if last is not None and now - last < self.min_interval:
            return False

        self._last_seen[key] = now
        self._last_seen.move_to_end(key)
        while len(self._last_seen) > self.max_keys:
            self._last_seen.popitem(last=False)
        return True

    def reset(self):
        self._last_seen.clear()

    def __len__(self):
        return len(self._last_seen)
