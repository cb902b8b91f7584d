"""
Provider gateway: circuit breaker, concurrency cap and timeout.

Every call to the video provider goes through ``ServiceGateway.execute``:
  1. Fail fast while the provider's circuit is open
  2. Cap in-flight requests per provider with a semaphore
  3. Enforce the per-call timeout

Calls are never retried. A create that timed out may still have started a job
upstream, so the caller decides what a failure means.

Usage:
    gw = ServiceGateway({"sora": ServiceConfig(timeout_seconds=30.0)})
    video = await gw.execute("sora", client.fetch, "video_123")
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from sora_studio.utils.logger import logger
from sora_studio.utils.metrics import inc, observe


@dataclass(frozen=True)
class ServiceConfig:
    max_concurrent: int = 10
    timeout_seconds: float = 30.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0
    # Successful probes needed to close a half-open circuit
    circuit_probe_successes: int = 2


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """The provider's circuit is open; the call was not attempted."""

    def __init__(self, service: str, retry_in: float):
        self.service = service
        self.retry_in = retry_in
        super().__init__(f"{service} is unavailable, retry in {retry_in:.0f}s")


class CircuitBreaker:
    """
    Consecutive transient failures open the circuit. After the recovery
    window it lets probe requests through; enough successful probes close it,
    a single failed probe opens it again.
    """

    def __init__(self, service: str, config: ServiceConfig):
        self.service = service
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.probe_successes = 0
        self.opened_at = 0.0

    def seconds_until_probe(self) -> float:
        return max(0.0, self.config.circuit_recovery_seconds - (time.monotonic() - self.opened_at))

    def allow_request(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        if self.seconds_until_probe() > 0:
            return False
        self._move_to(CircuitState.HALF_OPEN)
        self.probe_successes = 0
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.probe_successes += 1
            if self.probe_successes >= self.config.circuit_probe_successes:
                self._move_to(CircuitState.CLOSED)

    def record_failure(self, reason: str) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.circuit_failure_threshold:
            self.opened_at = time.monotonic()
            if self.state != CircuitState.OPEN:
                self._move_to(CircuitState.OPEN, reason)

    def _move_to(self, state: CircuitState, reason: str = "") -> None:
        self.state = state
        extra = {"service": self.service, "circuit_state": state.value}
        if reason:
            extra["error"] = reason
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"circuit.{state.value}", extra=extra)


_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def is_transient(exc: Exception) -> bool:
    """True when the failure says something about the provider, not the request."""
    flag = getattr(exc, "transient", None)
    if flag is not None:
        return bool(flag)
    status = getattr(exc, "status_code", None)
    if status and int(status) in _TRANSIENT_STATUS_CODES:
        return True
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError))


class ServiceGateway:
    """One circuit and one semaphore per configured provider."""

    def __init__(self, configs: Dict[str, ServiceConfig]) -> None:
        self._configs = dict(configs)
        self._circuits = {name: CircuitBreaker(name, cfg) for name, cfg in self._configs.items()}
        self._semaphores = {name: asyncio.Semaphore(cfg.max_concurrent) for name, cfg in self._configs.items()}

    async def execute(self, service: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``fn`` under the service's circuit, semaphore and timeout.

        Only transient failures count against the circuit. A rejected request
        (bad parameters, missing video) proves the provider is answering.
        """
        cfg = self._configs.get(service)
        if cfg is None:
            return await fn(*args, **kwargs)

        circuit = self._circuits[service]
        if not circuit.allow_request():
            inc(f"{service}.rejected")
            raise CircuitOpenError(service, circuit.seconds_until_probe())

        start = time.monotonic()
        try:
            async with self._semaphores[service]:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=cfg.timeout_seconds)
        except Exception as exc:
            if not is_transient(exc):
                circuit.record_success()
                inc(f"{service}.rejected_request")
                raise
            reason = str(exc)[:200] or type(exc).__name__
            circuit.record_failure(reason)
            inc(f"{service}.error")
            logger.error("gateway.failed", extra={"service": service, "error": reason})
            raise

        circuit.record_success()
        inc(f"{service}.success")
        observe(f"{service}.duration_ms", (time.monotonic() - start) * 1000)
        return result

    def get_circuit_states(self) -> Dict[str, str]:
        return {name: circuit.state.value for name, circuit in self._circuits.items()}
