# Rate Limiter - per-agent token bucket for /sync
# Each agent may burst up to per_minute requests; tokens refill continuously.

import threading
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    def __init__(self, per_minute: int = 1000, clock: Callable[[], float] = time.monotonic,
                 max_agents: int = 10000):
        self.capacity = float(max(1, per_minute))
        self.refill_per_second = self.capacity / 60.0
        self.clock = clock
        self.max_agents = max_agents
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def allow(self, agent_id: str) -> Tuple[bool, float]:
        """Take one token. Returns (allowed, seconds until a token is available)."""
        now = self.clock()
        with self._lock:
            tokens, updated_at = self._buckets.get(agent_id, (self.capacity, now))
            tokens = min(self.capacity, tokens + (now - updated_at) * self.refill_per_second)
            if tokens >= 1.0:
                self._buckets[agent_id] = (tokens - 1.0, now)
                allowed, retry_after = True, 0.0
            else:
                self._buckets[agent_id] = (tokens, now)
                allowed, retry_after = False, (1.0 - tokens) / self.refill_per_second
            if len(self._buckets) > self.max_agents:
                self._forget_idle(now)
        return allowed, retry_after

    def _forget_idle(self, now: float):
        # a bucket that has refilled completely is the same as a new one
        idle = [
            key for key, (tokens, updated_at) in self._buckets.items()
            if tokens + (now - updated_at) * self.refill_per_second >= self.capacity
        ]
        for key in idle:
            del self._buckets[key]
