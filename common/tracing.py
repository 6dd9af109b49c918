"""
Correlation-id tracing shared by the share ledger and notification services.

A trace id arrives in ``X-Trace-ID`` (or is minted at the edge), lives in a
context variable for the rest of the request and is forwarded on outbound
calls and outbox payloads, so one settlement can be followed from the webhook
that triggered it to the referral call and the email it produced. Each
finished span is logged as a single JSON line.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_span_id: ContextVar[Optional[str]] = ContextVar("span_id", default=None)


class Span:
    def __init__(self, service: str, operation: str, trace_id: Optional[str] = None,
                 parent_id: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.trace_id = trace_id or _trace_id.get() or uuid.uuid4().hex[:16]
        self.parent_id = parent_id or _span_id.get()
        self.span_id = uuid.uuid4().hex[:8]
        self.tags: Dict[str, object] = {}
        self.status = "ok"
        self._started = time.monotonic()
        self._tokens = None

    def tag(self, **tags) -> "Span":
        """Attach tags; None values are dropped."""
        self.tags.update({k: v for k, v in tags.items() if v is not None})
        return self

    def fail(self, error: Exception) -> "Span":
        self.status = "error"
        return self.tag(error_type=type(error).__name__, error=str(error))

    def record(self) -> dict:
        return {
            "service": self.service,
            "operation": self.operation,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_id,
            "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }

    def __enter__(self) -> "Span":
        self._tokens = (_trace_id.set(self.trace_id), _span_id.set(self.span_id))
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is not None:
            self.fail(exc)
        trace_token, span_token = self._tokens
        _span_id.reset(span_token)
        _trace_id.reset(trace_token)
        logger.info(f"TRACE: {json.dumps(self.record(), default=str)}")


class Tracer:
    def __init__(self, service: str):
        self.service = service

    def span(self, operation: str, trace_id: Optional[str] = None, **tags) -> Span:
        return Span(self.service, operation, trace_id=trace_id).tag(**tags)

    def span_from_request(self, request: Request) -> Span:
        span = Span(self.service, f"{request.method} {request.url.path}",
                    trace_id=request.headers.get(TRACE_HEADER), parent_id=request.headers.get(SPAN_HEADER))
        return span.tag(http_method=request.method,
                        authenticated=request.headers.get("authorization", "").startswith("Bearer "))


share_ledger_tracer = Tracer("share-ledger-service")
notification_tracer = Tracer("notification-service")


def current_trace_id() -> Optional[str]:
    return _trace_id.get()


def trace_headers() -> Dict[str, str]:
    """Headers that continue the current trace on an outbound call."""
    headers = {}
    if _trace_id.get():
        headers[TRACE_HEADER] = _trace_id.get()
    if _span_id.get():
        headers[SPAN_HEADER] = _span_id.get()
    return headers


async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    with tracer.span_from_request(request) as span:
        request.state.trace_id = span.trace_id
        response = await call_next(request)
        span.tag(http_status=response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers[TRACE_HEADER] = span.trace_id
        return response
