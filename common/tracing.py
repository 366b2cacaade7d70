"""
Correlation-id request tracing.

Every request runs inside one span; the trace id travels back to the caller
in response headers and forward to webhook endpoints in delivery headers.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"
SPAN_HEADER = "X-Span-ID"

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

class TraceSpan:
    """One timed operation; emits a single TRACE log line when finished"""

    def __init__(self, name: str, trace_id: str = None, parent_span_id: str = None):
        self.span_id = uuid.uuid4().hex[:8]
        self.trace_id = trace_id or uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id
        self.name = name
        self.started = time.time()
        self._start = time.perf_counter()
        self.tags: Dict[str, Any] = {}
        self.status = "ok"
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))

    def add_tag(self, key: str, value: Any) -> "TraceSpan":
        self.tags[key] = value
        return self

    def set_error(self, error: BaseException) -> "TraceSpan":
        self.status = "error"
        self.add_tag("error", True)
        self.add_tag("error.type", type(error).__name__)
        return self

    def finish(self) -> "TraceSpan":
        trace_data = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "operation": self.name,
            "duration_ms": round((time.perf_counter() - self._start) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
            "timestamp": self.started,
        }
        logger.info(f"TRACE: {json.dumps(trace_data, default=str)}")
        trace_token, span_token = self._tokens
        span_id_var.reset(span_token)
        trace_id_var.reset(trace_token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class Tracer:
    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        span = TraceSpan(name, trace_id, parent_span_id)
        span.add_tag("service.name", self.service_name)
        return span

    def start_child_span(self, name: str) -> TraceSpan:
        """Span under whatever trace is current, or a fresh trace outside a request"""
        return self.start_span(name, get_current_trace_id(), get_current_span_id())

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        span = self.start_span(operation_name, request.headers.get(TRACE_HEADER), request.headers.get(SPAN_HEADER))
        span.add_tag("http.method", request.method)
        span.add_tag("http.path", request.url.path)
        return span

gateway_tracer = Tracer("gateway-service")

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

def get_current_span_id() -> Optional[str]:
    return span_id_var.get()

def get_trace_headers() -> Dict[str, str]:
    """Headers that carry the current trace to an outbound call"""
    headers = {}
    trace_id = get_current_trace_id()
    span_id = get_current_span_id()
    if trace_id:
        headers[TRACE_HEADER] = trace_id
    if span_id:
        headers[SPAN_HEADER] = span_id
    return headers

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """FastAPI middleware wrapping each request in a span"""
    with tracer.start_span_from_request(request, f"{request.method} {request.url.path}") as span:
        request.state.trace_id = span.trace_id
        request.state.request_id = span.span_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 400:
            span.add_tag("error", True)
            span.status = "error"
        response.headers[TRACE_HEADER] = span.trace_id
        response.headers[SPAN_HEADER] = span.span_id
        return response
