"""
Error taxonomy and the standard error envelope for the gateway.

Two families reach the HTTP layer:

- ``BusinessLogicError``: the caller's fault, detected locally
  (``ValidationError`` 400, ``NotFoundError`` 404, ``ConflictError`` 409).
- ``ServiceError``: something upstream failed (``UpstreamUnavailable`` 503).
  ``DeliveryFailure`` belongs here too but is consumed by the webhook notifier
  and never reaches a handler.

Every failure is rendered as ``StandardErrorResponse``; internal detail stays
in the logs.
"""
import logging
import time
import traceback
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

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
    request_id: Optional[str] = None

class ErrorCodes:
    # Caller input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    # Upstream / system
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    LEDGER_RPC_ERROR = "LEDGER_RPC_ERROR"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

STATUS_BY_CODE = {
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.METHOD_NOT_ALLOWED: 405,
    ErrorCodes.CONFLICT: 409,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.LEDGER_RPC_ERROR: 503,
}
CODE_BY_STATUS = {
    400: ErrorCodes.VALIDATION_ERROR,
    404: ErrorCodes.NOT_FOUND,
    405: ErrorCodes.METHOD_NOT_ALLOWED,
    409: ErrorCodes.CONFLICT,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}

class BusinessLogicError(Exception):
    """Caller-facing error detected locally, before or instead of any ledger write"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ValidationError(BusinessLogicError):
    """Malformed, missing or out-of-range input"""
    code = ErrorCodes.VALIDATION_ERROR

class NotFoundError(BusinessLogicError):
    """A named entity's record does not exist on the ledger"""
    code = ErrorCodes.NOT_FOUND

class ConflictError(BusinessLogicError):
    """An entity that must be unique already exists"""
    code = ErrorCodes.CONFLICT

class ServiceError(Exception):
    code = ErrorCodes.SERVICE_UNAVAILABLE

    def __init__(self, message: str, original_error: Exception = None, code: str = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class UpstreamUnavailable(ServiceError):
    """Ledger or network call failed transiently"""
    code = ErrorCodes.SERVICE_UNAVAILABLE

class DeliveryFailure(ServiceError):
    """Webhook send failed. Logged by the notifier, never surfaced to callers."""
    code = ErrorCodes.DELIVERY_FAILED

def _request_ids(request: Request) -> Dict[str, Optional[str]]:
    return {
        "trace_id": getattr(request.state, "trace_id", None),
        "request_id": getattr(request.state, "request_id", None),
    }

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    error_response = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    ids = _request_ids(request)
    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        **ids, "error_code": exc.code, "field": exc.field, "context": exc.context,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        field=exc.field,
        context=exc.context or None,
        **ids
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """The original error is logged, never returned"""
    ids = _request_ids(request)
    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        **ids,
        "error_code": exc.code,
        "original_error": str(exc.original_error) if exc.original_error else None,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=STATUS_BY_CODE.get(exc.code, 500),
        **ids
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body / query validation, reported as the first failing field"""
    ids = _request_ids(request)
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []) if loc not in ("body", "query", "path"))
    message = first_error.get("msg", "Validation error")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]

    logger.warning(f"Validation error: {message} on field {field}", extra=ids)
    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}" if field else message,
        status_code=400,
        field=field or None,
        **ids
    )

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    ids = _request_ids(request)
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra=ids)
    return create_error_response(
        error_code=CODE_BY_STATUS.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR),
        message=str(exc.detail),
        status_code=exc.status_code,
        **ids
    )

async def general_exception_handler(request: Request, exc: Exception):
    ids = _request_ids(request)
    logger.error(f"Unexpected error: {exc}", extra={**ids, "traceback": traceback.format_exc()})
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        **ids
    )

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
