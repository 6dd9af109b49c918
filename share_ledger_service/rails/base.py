"""
Common contract for payment rail adapters.

Adapters are stateless: every call receives the journal view of the
transaction it concerns. ``verify`` never raises for transport trouble; a
timeout, open circuit or unreachable provider is reported as StillPending.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from common.circuit_breaker import CircuitBreaker, CircuitOpenError
from common.error_handling import ErrorCodes
from common.retry import RAIL_QUERY_RETRY_CONFIG, retry_async
from share_ledger_service.domain import (
    InitiationResult, Outcome, Rail, StillPending, TransactionRecord, UserContext,
)
from share_ledger_service.errors import InfraError

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (requests.exceptions.RequestException, asyncio.TimeoutError, CircuitOpenError)


class RailAdapter(ABC):
    rail: Rail
    # Whether a scheduled poll can learn the outcome from the provider
    supports_remote_status: bool = False

    @abstractmethod
    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        ...

    @abstractmethod
    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        ...

    async def cancel(self, txn: TransactionRecord, reason: Optional[str] = None) -> None:
        return None


class HttpRailAdapter(RailAdapter):
    """Adapter that talks to a provider over HTTP through a circuit breaker."""

    def __init__(self, breaker: CircuitBreaker, timeout: float):
        self.breaker = breaker
        self.timeout = timeout

    async def _call(self, func, *args) -> Any:
        """Single attempt; for calls that must not be repeated (initiation)."""
        try:
            return await self.breaker.call(func, *args)
        except asyncio.TimeoutError as e:
            raise InfraError(f"{self.rail.value} provider timed out", e, code=ErrorCodes.TIMEOUT_ERROR)
        except CircuitOpenError as e:
            raise InfraError(str(e), e, code=ErrorCodes.CIRCUIT_BREAKER_OPEN)
        except requests.exceptions.RequestException as e:
            raise InfraError(f"{self.rail.value} provider request failed: {e}", e)

    async def _query(self, func, *args) -> Any:
        """Idempotent status query, retried on connection errors."""
        return await retry_async(self.breaker.call, RAIL_QUERY_RETRY_CONFIG, func, *args)

    async def _query_or_pending(self, func, *args):
        try:
            return await self._query(func, *args), None
        except TRANSPORT_ERRORS as e:
            logger.warning(f"{self.rail.value} status query failed, leaving pending: {e!r}")
            return None, StillPending(reason=f"{self.rail.value} provider unavailable")
