"""
Error envelope shared by the share ledger HTTP surface.

Every failure leaves the service as::

    {"success": false,
     "error": {"code": ..., "message": ..., "field": ..., "context": ...},
     "timestamp": ..., "trace_id": ...}

BusinessLogicError covers anything the caller can fix or must accept
(supply, ownership, signature, state); ServiceError covers infrastructure
(database, providers, locks) and nothing has been persisted when it is raised.
"""
import logging
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None


class ErrorCodes:
    # Caller
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"

    # Ledger rules
    INSUFFICIENT_SUPPLY = "INSUFFICIENT_SUPPLY"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    DUPLICATE_CLAIM = "DUPLICATE_CLAIM"
    RATIO_LOCKED = "RATIO_LOCKED"
    RAIL_DISABLED = "RAIL_DISABLED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"

    # Infrastructure
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


# Unlisted business codes are 400, unlisted service codes 500
BUSINESS_STATUS = {
    ErrorCodes.TRANSACTION_NOT_FOUND: 404,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.UNAUTHORIZED: 401,
    ErrorCodes.INVALID_SIGNATURE: 401,
    ErrorCodes.DUPLICATE_CLAIM: 409,
    ErrorCodes.RATIO_LOCKED: 409,
}

SERVICE_STATUS = {
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.CONCURRENT_UPDATE: 503,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCodes.TIMEOUT_ERROR: 504,
}

HTTP_STATUS_CODES = {
    400: ErrorCodes.INVALID_INPUT,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}


class BusinessLogicError(Exception):
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)


class ServiceError(Exception):
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def create_error_response(request: Request, status_code: int, code: str, message: str,
                          field: str = None, context: Dict[str, Any] = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or None),
        timestamp=time.time(),
        trace_id=getattr(request.state, "trace_id", None),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body.model_dump()))


async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(f"{request.method} {request.url.path} refused: {exc.code} - {exc.message}")
    return create_error_response(request, BUSINESS_STATUS.get(exc.code, 400), exc.code, exc.message,
                                 exc.field, exc.context)


async def service_exception_handler(request: Request, exc: ServiceError):
    cause = f" ({exc.original_error!r})" if exc.original_error else ""
    logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}{cause}")
    return create_error_response(request, SERVICE_STATUS.get(exc.code, 500), exc.code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
    message = first.get("msg", "Validation error")
    logger.warning(f"Validation error on {request.url.path}: {field}: {message}")
    return create_error_response(request, 400, ErrorCodes.VALIDATION_ERROR,
                                 f"Validation error on field '{field}': {message}", field)


async def http_exception_handler(request: Request, exc: HTTPException):
    code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}")
    return create_error_response(request, exc.status_code, code, str(exc.detail))


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}")
    return create_error_response(request, 500, ErrorCodes.INTERNAL_SERVER_ERROR,
                                 "An unexpected error occurred. Please try again later.")


def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
