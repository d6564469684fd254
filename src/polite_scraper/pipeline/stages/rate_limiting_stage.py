"""
Rate Limiting Stage - Controls request rate to avoid overwhelming servers.
Implements per-host delays with random jitter and exponential backoff for
failed tasks.
"""

import threading
import logging
import random
from typing import Optional, Dict
from dataclasses import dataclass
from threading import Event

from ..clock import Clock
from ..stage import PipelineStage
from ..pipeline_data import FetchTask


KEY_STRATEGIES = ('host', 'host_proxy')


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting stage."""
    delay_min_seconds: float = 1.0  # Minimum delay between requests to a host
    delay_max_seconds: float = 3.0  # Upper bound of the random jitter range
    key_strategy: str = "host"  # 'host' or 'host_proxy' (delay state per proxy)


class JitteredDelayLimiter:
    """
    Per-key minimum delay with random jitter.

    After each request the next allowed time for the key is set to
    completion time + uniform(delay_min, delay_max). The delay map is owned
    by this instance; each host worker has its own limiter.
    """

    def __init__(self, delay_min: float = 1.0, delay_max: float = 3.0,
                 clock: Optional[Clock] = None, rng: Optional[random.Random] = None):
        self.delay_min = delay_min
        self.delay_max = delay_max
        self.clock = clock or Clock()
        self.rng = rng or random.Random()
        self.next_allowed_time: Dict[str, float] = {}
        self.lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def wait_time(self, key: str, now: Optional[float] = None) -> float:
        """Seconds until a request for `key` is allowed."""
        now = self.clock.now() if now is None else now
        with self.lock:
            allowed_at = self.next_allowed_time.get(key)
        if allowed_at is None:
            return 0.0
        return max(0.0, allowed_at - now)

    def wait_if_needed(self, key: str, interrupt: Optional[Event] = None) -> float:
        """
        Sleep until a request for `key` is allowed.

        Returns:
            Seconds waited
        """
        wait = self.wait_time(key)
        if wait > 0:
            self.logger.debug(f"Rate limiting {key}: sleeping {wait:.2f}s")
            self.clock.sleep(wait, interrupt)
        return wait

    def record_request(self, key: str) -> float:
        """
        Start the delay window for `key` after a request.

        Returns:
            The drawn delay in seconds
        """
        delay = self.rng.uniform(self.delay_min, self.delay_max)
        with self.lock:
            self.next_allowed_time[key] = self.clock.now() + delay
        return delay

    def get_stats(self) -> dict:
        """Get limiter statistics."""
        with self.lock:
            return {
                'tracked_keys': len(self.next_allowed_time),
                'keys': list(self.next_allowed_time.keys())
            }


class BackoffPolicy:
    """
    Exponential backoff with jitter.

    delay(n) = min(max_delay, max(base * factor**(n-1) * U(1, 1+jitter), previous))

    Keeping the previous delay as a floor makes consecutive delays for one
    task non-decreasing even with jitter.
    """

    def __init__(self, base_seconds: float = 2.0, factor: float = 2.0,
                 max_seconds: float = 300.0, jitter: float = 0.25,
                 rng: Optional[random.Random] = None):
        self.base_seconds = base_seconds
        self.factor = factor
        self.max_seconds = max_seconds
        self.jitter = jitter
        self.rng = rng or random.Random()

    def compute_delay(self, attempt_count: int, previous_delay: float = 0.0) -> float:
        raw = self.base_seconds * (self.factor ** max(attempt_count - 1, 0))
        jittered = raw * self.rng.uniform(1.0, 1.0 + self.jitter)
        return min(self.max_seconds, max(jittered, previous_delay))

    def apply(self, task: FetchTask, now: float) -> float:
        """
        Record one more failed attempt on `task` and push its eligibility out.

        Returns:
            The backoff delay applied
        """
        task.attempt_count += 1
        delay = self.compute_delay(task.attempt_count, task.backoff_seconds)
        task.backoff_seconds = delay
        task.next_eligible_time = max(task.next_eligible_time, now + delay)
        return delay


class RateLimitingStage(PipelineStage):
    """
    Per-host politeness gate.

    Responsibilities:
    - Enforce a randomized minimum delay between requests to one host
    - Optionally keep separate delay state per (host, proxy) pair
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 clock: Optional[Clock] = None, rng: Optional[random.Random] = None):
        super().__init__(name="RateLimiting")
        self.config = config or RateLimitConfig()
        self.logger = logging.getLogger(self.__class__.__name__)

        if self.config.key_strategy not in KEY_STRATEGIES:
            raise ValueError(f"Unknown key strategy: {self.config.key_strategy}. "
                             f"Use one of {', '.join(KEY_STRATEGIES)}")

        self.limiter = JitteredDelayLimiter(
            self.config.delay_min_seconds,
            self.config.delay_max_seconds,
            clock=clock,
            rng=rng
        )

        self.stats = {
            'requests_delayed': 0,
            'total_wait_time': 0.0
        }

    def limiter_key(self, task: FetchTask, proxy: Optional[str] = None) -> str:
        if self.config.key_strategy == 'host_proxy' and proxy:
            return f"{task.host}|{proxy}"
        return task.host

    def wait(self, task: FetchTask, proxy: Optional[str] = None,
             interrupt: Optional[Event] = None) -> float:
        """Block until `task` may be fetched through `proxy`."""
        waited = self.limiter.wait_if_needed(self.limiter_key(task, proxy), interrupt)
        if waited > 0:
            with self.stats_lock:
                self.stats['requests_delayed'] += 1
                self.stats['total_wait_time'] += waited
        return waited

    def mark_request(self, task: FetchTask, proxy: Optional[str] = None) -> float:
        return self.limiter.record_request(self.limiter_key(task, proxy))

    def process(self, data: FetchTask) -> Optional[FetchTask]:
        """Apply rate limiting before passing the task on."""
        self.wait(data)
        return data

    def get_stats(self) -> dict:
        """Get rate limiting statistics."""
        base_stats = super().get_stats()

        with self.stats_lock:
            base_stats['rate_limit_stats'] = self.stats.copy()

            if self.stats['requests_delayed'] > 0:
                avg_wait = self.stats['total_wait_time'] / self.stats['requests_delayed']
                base_stats['rate_limit_stats']['avg_wait_time'] = round(avg_wait, 3)

        base_stats['rate_limit_stats']['limiter'] = self.limiter.get_stats()
        return base_stats
