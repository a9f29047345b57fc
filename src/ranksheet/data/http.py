"""
RankSheet HTTP Resilience
=========================

Shared HTTP plumbing for the upstream provider clients.

Features:
    - Exponential backoff retry with jitter for transient failures
    - Rolling-window circuit breaker (CLOSED / OPEN / HALF_OPEN)
    - requests.Session based client with hard timeouts
    - Error taxonomy separating transient from permanent failures

Usage:
    breaker = CircuitBreaker("signals", failure_threshold_pct=60, volume_threshold=3)
    client = ResilientHttpClient(
        base_url="https://signals.example.com",
        breaker=breaker,
        headers={"X-API-Key": "..."},
        timeout=15,
    )
    payload = client.get_json("/reports/", params={"period_type": "WEEK"})
"""

import logging
import random
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class UpstreamError(Exception):
    """Base exception for upstream provider errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.url = url
        super().__init__(self.message)


class UpstreamTransientError(UpstreamError):
    """Timeout, connection failure, 429 or 5xx. Safe to retry."""
    pass


class UpstreamPermanentError(UpstreamError):
    """4xx other than 429. Retrying will not help."""
    pass


class UpstreamResponseError(UpstreamPermanentError):
    """Response body did not match the expected contract."""
    pass


class CircuitOpenError(UpstreamError):
    """Request rejected because the service's circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"{name} circuit breaker is open - service temporarily unavailable")
        self.name = name


def is_retryable(exc: BaseException) -> bool:
    """Only transient upstream errors are retried."""
    return isinstance(exc, UpstreamTransientError)


# =============================================================================
# RETRY
# =============================================================================

@dataclass
class RetryPolicy:
    """Exponential backoff parameters."""
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.3  # +/- fraction of the computed delay

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        base = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))


def retry_with_backoff(
    func: Callable[[], Any],
    policy: Optional[RetryPolicy] = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> Any:
    """
    Execute function with exponential backoff retry.

    Args:
        func: Zero-argument callable to execute
        policy: Backoff parameters (defaults to RetryPolicy())
        should_retry: Predicate deciding whether an exception is retryable
        sleep: Sleep function (injectable for tests)
        label: Name used in log messages

    Returns:
        Function result

    Raises:
        The last exception once retries are exhausted, or immediately
        for non-retryable exceptions.
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_retries + 1):
        try:
            return func()
        except Exception as e:
            if not should_retry(e) or attempt >= policy.max_retries:
                raise
            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{policy.max_retries + 1}): {e}, "
                f"retrying in {wait_time:.2f}s"
            )
            sleep(wait_time)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited unexpectedly")


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Lifetime counters for one breaker."""
    fires: int = 0
    successes: int = 0
    failures: int = 0
    rejects: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "fires": self.fires,
            "successes": self.successes,
            "failures": self.failures,
            "rejects": self.rejects,
        }


class CircuitBreaker:
    """
    Rolling-window circuit breaker.

    The circuit opens when, inside the rolling window, at least
    ``volume_threshold`` calls were made and the failure percentage reaches
    ``failure_threshold_pct``. After ``reset_timeout`` seconds one trial
    call is let through (HALF_OPEN): success closes the circuit, failure
    re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold_pct: float = 50.0,
        volume_threshold: int = 5,
        rolling_window: float = 10.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold_pct = failure_threshold_pct
        self.volume_threshold = volume_threshold
        self.rolling_window = rolling_window
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self.stats = CircuitStats()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit '{self.name}' half-open", extra={"circuit": self.name})

    def _prune(self, now: float) -> None:
        cutoff = now - self.rolling_window
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _before_call(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                self.stats.rejects += 1
                logger.warning(
                    f"Circuit '{self.name}' rejecting request",
                    extra={"circuit": self.name},
                )
                raise CircuitOpenError(self.name)
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.stats.rejects += 1
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True
            self.stats.fires += 1

    def record_success(self) -> None:
        with self._lock:
            now = self._clock()
            self.stats.successes += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._trial_in_flight = False
                self._outcomes.clear()
                logger.info(f"Circuit '{self.name}' closed", extra={"circuit": self.name})
                return
            self._outcomes.append((now, True))
            self._prune(now)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self.stats.failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
                return
            self._outcomes.append((now, False))
            self._prune(now)

            total = len(self._outcomes)
            failed = sum(1 for _, ok in self._outcomes if not ok)
            if total >= self.volume_threshold and (failed * 100.0 / total) >= self.failure_threshold_pct:
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.warning(f"Circuit '{self.name}' opened", extra={"circuit": self.name})

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        self._before_call()
        try:
            result = func()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed and forget recent outcomes."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._opened_at = None
            self._trial_in_flight = False
            self._outcomes.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Health snapshot for monitoring."""
        return {
            "name": self.name,
            "state": self.state.value,
            "stats": self.stats.to_dict(),
        }


# Breaker registry, one per upstream service and process
_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()

BREAKER_DEFAULTS: Dict[str, Dict[str, float]] = {
    "signals": {
        "failure_threshold_pct": 60,
        "volume_threshold": 3,
        "rolling_window": 30.0,
        "reset_timeout": 60.0,
    },
    "catalog": {
        "failure_threshold_pct": 50,
        "volume_threshold": 5,
        "rolling_window": 20.0,
        "reset_timeout": 30.0,
    },
}


def get_breaker(name: str) -> CircuitBreaker:
    """Get or create the process-wide breaker for a service."""
    with _breakers_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **BREAKER_DEFAULTS.get(name, {}))
            _breakers[name] = breaker
        return breaker


def get_all_breaker_stats() -> Dict[str, Dict[str, Any]]:
    """Health snapshot of every registered breaker."""
    with _breakers_lock:
        breakers = list(_breakers.values())
    return {b.name: b.get_stats() for b in breakers}


# =============================================================================
# CLIENT
# =============================================================================

@dataclass
class ResilientHttpClient:
    """
    JSON-over-HTTP client with timeouts, retry and a circuit breaker.

    Each logical request passes through the breaker once; retries happen
    inside that single breaker call.
    """
    base_url: str
    breaker: CircuitBreaker
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 10.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    USER_AGENT = "ranksheet-refresh/1.0"

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        headers = {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json",
            "x-request-id": str(uuid.uuid4()),
            **self.headers,
        }
        started = time.monotonic()
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise UpstreamTransientError(f"{method} {url} failed: {e}", url=url) from e

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            f"{method} {url} -> {response.status_code} ({duration_ms}ms)",
            extra={"circuit": self.breaker.name, "duration_ms": duration_ms},
        )

        status = response.status_code
        if status == 429 or status >= 500:
            raise UpstreamTransientError(
                f"{method} {url} returned {status}: {response.text[:200]}",
                status_code=status,
                url=url,
            )
        if status >= 400:
            raise UpstreamPermanentError(
                f"{method} {url} returned {status}: {response.text[:200]}",
                status_code=status,
                url=url,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamResponseError(
                f"{method} {url} returned invalid JSON", status_code=status, url=url
            ) from e

    def request_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        """Send a request and decode the JSON body."""
        url = self._url(path)
        return self.breaker.call(
            lambda: retry_with_backoff(
                lambda: self._send(method, url, params=params, json_body=json_body),
                policy=self.retry_policy,
                sleep=self.sleep,
                label=f"{method} {url}",
            )
        )

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request_json("GET", path, params=params)

    def post_json(self, path: str, body: Any) -> Any:
        return self.request_json("POST", path, json_body=body)

    def put_json(self, path: str, body: Optional[Any] = None) -> Any:
        return self.request_json("PUT", path, json_body=body)

    def close(self) -> None:
        self.session.close()
