import asyncio
import time
from typing import Optional

class CircuitOpenError(RuntimeError):
    pass

class CircuitBreaker:
    """
    Simple async in-memory circuit breaker.

    Usage:
      cb = CircuitBreaker(name="gateway", failure_threshold=5, recovery_timeout=30)

    Behavior:
      - CLOSED: normal operation; failures increment fail_count.
      - OPEN: before_call() raises CircuitOpenError until recovery_timeout has elapsed.
      - HALF_OPEN: up to `max_concurrent_half_open_probes` calls are let through; a probe success
        counts towards `half_open_success_threshold` and may close the circuit, a probe failure reopens it.
    """
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_success_threshold: int = 1,
        max_concurrent_half_open_probes: int = 1,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)
        self.half_open_success_threshold = max(1, int(half_open_success_threshold))
        self.max_concurrent_half_open_probes = max_concurrent_half_open_probes

        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._fail_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_success_count = 0
        self._half_open_in_flight = 0

        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    def _maybe_transition(self):
        # called under lock
        if self._state == "OPEN" and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_success_count = 0
                self._half_open_in_flight = 0

    async def before_call(self):
        async with self._lock:
            self._maybe_transition()
            if self._state == "OPEN":
                raise CircuitOpenError(f"circuit {self.name} is open")
            if self._state == "HALF_OPEN":
                if self._half_open_in_flight >= self.max_concurrent_half_open_probes:
                    raise CircuitOpenError(f"circuit {self.name} is half-open and probes are saturated")
                self._half_open_in_flight += 1

    async def record_success(self):
        async with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                self._half_open_success_count += 1
                if self._half_open_success_count >= self.half_open_success_threshold:
                    self._close()
            elif self._state == "OPEN":
                self._close()
            else:
                self._fail_count = 0

    async def record_failure(self):
        async with self._lock:
            if self._state == "HALF_OPEN":
                # any failing probe re-opens immediately
                self._open()
            elif self._state == "CLOSED":
                self._fail_count += 1
                if self._fail_count >= self.failure_threshold:
                    self._open()

    async def release_probe(self):
        """Give back a half-open slot for a call that ended without a verdict on the remote."""
        async with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _open(self):
        self._state = "OPEN"
        self._opened_at = time.monotonic()
        self._fail_count = 0
        self._half_open_success_count = 0
        self._half_open_in_flight = 0

    def _close(self):
        self._state = "CLOSED"
        self._fail_count = 0
        self._opened_at = None
        self._half_open_success_count = 0
        self._half_open_in_flight = 0
