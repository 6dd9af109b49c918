"""
Circuit breakers for the outbound calls the share ledger makes: the card and
invoice providers, the BSC JSON-RPC node and the referral service.

A breaker opens after ``failure_threshold`` consecutive failures and fails
fast with CircuitOpenError until ``reset_timeout`` has passed. It then lets a
single probe call through at a time (half-open) and closes again after
``success_threshold`` successful probes. Rail adapters treat an open breaker
like any other transport error, so the purchase simply stays pending.

A provider answering 4xx is talking about the request, not about its own
health, and does not count against the breaker.
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

import requests

from common.settings import settings

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 2
    # per-call timeout, seconds
    timeout: float = 10.0


class CircuitOpenError(Exception):
    pass


def counts_as_failure(error: Exception) -> bool:
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code >= 500
    return True


class CircuitBreaker:
    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0
        self.last_error = None
        self._probe_in_flight = False

    def _transition(self, state: CircuitState):
        logger.warning(f"Circuit breaker {self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self.success_count = 0
        if state == CircuitState.OPEN:
            self.opened_at = time.time()
        elif state == CircuitState.CLOSED:
            self.failure_count = 0

    def _admit(self) -> bool:
        """Whether a call may go out now; claims the probe slot when half-open."""
        if self.state == CircuitState.OPEN and time.time() - self.opened_at >= self.config.reset_timeout:
            self._transition(CircuitState.HALF_OPEN)
        if self.state == CircuitState.OPEN:
            return False
        if self.state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
        return True

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self.failure_count = 0

    def _on_failure(self, error: Exception):
        self.last_error = f"{type(error).__name__}: {error}"
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` (sync functions go to the default executor) under the breaker."""
        if not self._admit():
            raise CircuitOpenError(f"Circuit breaker {self.name} is open")
        try:
            if asyncio.iscoroutinefunction(func):
                call = func(*args, **kwargs)
            else:
                loop = asyncio.get_running_loop()
                call = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
            result = await asyncio.wait_for(call, timeout=self.config.timeout)
        except Exception as e:
            if counts_as_failure(e):
                self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            self._probe_in_flight = False

    def get_state(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "opened_at": self.opened_at or None,
            "last_error": self.last_error,
        }


RAIL_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=60.0,
    success_threshold=2,
    timeout=settings.external_http_timeout_seconds,
)

REFERRAL_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=3,
    reset_timeout=30.0,
    success_threshold=2,
    timeout=10.0,
)

_BREAKERS: Dict[str, CircuitBreaker] = {}


def register(name: str, config: CircuitBreakerConfig) -> CircuitBreaker:
    breaker = _BREAKERS[name] = CircuitBreaker(name, config)
    return breaker


paystack_circuit_breaker = register("paystack", RAIL_CB_CONFIG)
centiiv_circuit_breaker = register("centiiv", RAIL_CB_CONFIG)
bsc_rpc_circuit_breaker = register("bsc_rpc", RAIL_CB_CONFIG)
referral_circuit_breaker = register("referral", REFERRAL_CB_CONFIG)


def get_all_circuit_breakers() -> dict:
    return {name: breaker.get_state() for name, breaker in _BREAKERS.items()}
