"""Circuit breakers and the retry loop shared by the outbound HTTP clients.

Each downstream dependency (inventory service, payment gateway) gets its own
``CircuitBreaker`` registered in ``BREAKERS`` so the health endpoint can
report their states. ``send_with_retry`` wraps a single logical call:
breaker precheck, retries with exponential backoff on transport errors and
5xx, and breaker bookkeeping.
"""

import logging
import os
import sys
import threading
import time
from typing import Callable, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)


def _is_test_mode() -> bool:
    # Señales robustas de pytest
    return "pytest" in sys.modules or os.environ.get("PYTEST_CURRENT_TEST") is not None


class CircuitOpenError(RuntimeError):
    """The breaker refused the call (OPEN, or HALF_OPEN with a trial call in flight)."""

    def __init__(self, name: str, state: str):
        self.name = name
        self.state = state
        super().__init__(f"CIRCUIT_{state}: {name}")


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful trial call; only one may be in
      flight; a failed trial call re-opens the circuit.

    Thread-safe via an internal lock. ``clock`` is injectable for tests.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        """Current state, applying the OPEN → HALF_OPEN timeout."""
        with self._lock:
            if self._state == "OPEN" and (self._clock() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check the breaker before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN trial call is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(self.name, "OPEN")
            if st == "HALF_OPEN":
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, "HALF_OPEN_BUSY")
                self._trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = self._clock()
                self._trial_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._trial_in_flight = False

    def reset(self):
        self.on_success()


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


inventory_breaker = _breaker("inventory")
gateway_breaker = _breaker("mercadopago")

BREAKERS = {b.name: b for b in (inventory_breaker, gateway_breaker)}


def retry_policy() -> tuple[int, float, float]:
    """Return ``(max_retries, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors (timeouts included) or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def send_with_retry(
    breaker: CircuitBreaker,
    send: Callable[[dict], httpx.Response],
    headers: Optional[dict] = None,
) -> httpx.Response:
    """Run ``send`` under ``breaker`` with retries.

    ``send`` receives the headers to use (``X-Circuit-State`` and
    ``X-Retry-Count`` are added here) and performs one HTTP attempt. Any
    response below 500 is returned to the caller as a business outcome and
    counts as a breaker success.

    Args:
        breaker: Breaker guarding the downstream dependency.
        send: Callable performing one attempt.
        headers: Base headers for every attempt.

    Returns:
        httpx.Response: The first non-5xx response.

    Raises:
        CircuitOpenError: If the breaker refuses the call.
        httpx.RequestError: Transport error after the last retry.
        httpx.HTTPStatusError: 5xx after the last retry.
    """
    max_retries, backoff, cap = retry_policy()
    state = breaker.before_call()
    hdrs = dict(headers or {})
    hdrs["X-Circuit-State"] = state
    hdrs["X-Retry-Count"] = "0"
    tries = 0
    try:
        while True:
            resp = None
            exc = None
            try:
                resp = send(hdrs)
                if not should_retry(resp, None):
                    breaker.on_success()
                    return resp
            except httpx.RequestError as e:
                exc = e

            tries += 1
            if tries > max_retries:
                breaker.on_failure()
                if exc is not None:
                    raise exc
                resp.raise_for_status()
                return resp

            hdrs["X-Retry-Count"] = str(tries)
            if not _is_test_mode():
                time.sleep(min(backoff * (2 ** (tries - 1)), cap))
    finally:
        breaker.on_finish()
