from __future__ import annotations

import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from .config import RateLimitConfig
from .errors import TransientFetchError
from .utils import log_event


@dataclass
class DomainHealth:
    domain: str
    requests: int = 0
    successes: int = 0
    failures: int = 0
    consecutive_errors: int = 0
    last_status: int | None = None
    circuit_open_until: float | None = None

    def as_dict(self, now: float) -> dict[str, object]:
        return {
            "domain": self.domain,
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "consecutive_errors": self.consecutive_errors,
            "last_status": self.last_status,
            "circuit_open": self.circuit_open_until is not None and self.circuit_open_until > now,
        }


class DomainRateLimiter:
    """Per-domain politeness: jittered spacing, an in-flight cap and a circuit breaker.

    The delay before each request to a domain is drawn uniformly from
    ``[min_delay_ms, max_delay_ms]`` and measured from the previous request
    to that domain. Sources may narrow the bounds with their own values.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._logger = logger or logging.getLogger("regtruth.ratelimit")
        self._lock = threading.Lock()
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self._last_request: dict[str, float] = {}
        self._health: dict[str, DomainHealth] = {}

    def _semaphore(self, domain: str, max_concurrent: int | None) -> threading.BoundedSemaphore:
        with self._lock:
            semaphore = self._semaphores.get(domain)
            if semaphore is None:
                limit = max(1, max_concurrent or self._config.max_concurrent_per_domain)
                semaphore = threading.BoundedSemaphore(limit)
                self._semaphores[domain] = semaphore
            return semaphore

    def _health_for(self, domain: str) -> DomainHealth:
        health = self._health.get(domain)
        if health is None:
            health = DomainHealth(domain=domain)
            self._health[domain] = health
        return health

    def draw_delay(self, min_delay_ms: int | None = None, max_delay_ms: int | None = None) -> float:
        low = self._config.min_delay_ms if min_delay_ms is None else min_delay_ms
        high = self._config.max_delay_ms if max_delay_ms is None else max_delay_ms
        if high < low:
            low, high = high, low
        return self._rng.uniform(low, high) / 1000.0

    @contextmanager
    def acquire(
        self,
        domain: str,
        *,
        min_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        max_concurrent: int | None = None,
    ) -> Iterator[None]:
        self.check_circuit(domain)
        semaphore = self._semaphore(domain, max_concurrent)
        semaphore.acquire()
        try:
            with self._lock:
                last = self._last_request.get(domain)
                wait = 0.0
                if last is not None:
                    wait = self.draw_delay(min_delay_ms, max_delay_ms) - (self._clock() - last)
            if wait > 0:
                self._sleep(wait)
            with self._lock:
                self._last_request[domain] = self._clock()
                self._health_for(domain).requests += 1
            yield
        finally:
            semaphore.release()

    def check_circuit(self, domain: str) -> None:
        with self._lock:
            health = self._health_for(domain)
            open_until = health.circuit_open_until
            if open_until is None:
                return
            if open_until <= self._clock():
                health.circuit_open_until = None
                health.consecutive_errors = 0
                return
        raise TransientFetchError(f"circuit open for {domain}", url=None)

    def record_success(self, domain: str, status: int | None = 200) -> None:
        with self._lock:
            health = self._health_for(domain)
            health.successes += 1
            health.consecutive_errors = 0
            health.last_status = status

    def record_failure(self, domain: str, status: int | None = None) -> None:
        with self._lock:
            health = self._health_for(domain)
            health.failures += 1
            health.consecutive_errors += 1
            health.last_status = status
            tripped = (
                health.consecutive_errors >= self._config.circuit_error_threshold
                and health.circuit_open_until is None
            )
            if tripped:
                health.circuit_open_until = self._clock() + self._config.circuit_reset_seconds
        if tripped:
            log_event(
                self._logger,
                logging.WARNING,
                "circuit_opened",
                domain=domain,
                consecutive_errors=health.consecutive_errors,
                reset_seconds=self._config.circuit_reset_seconds,
            )

    def is_retryable_status(self, status: int) -> bool:
        return status in self._config.retryable_statuses

    def health(self) -> list[dict[str, object]]:
        now = self._clock()
        with self._lock:
            return [self._health[domain].as_dict(now) for domain in sorted(self._health)]

