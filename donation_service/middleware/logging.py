"""
Structured logging middleware with trace correlation for the Donation Service
"""
import time
from fastapi import Request
from opentelemetry import trace
import structlog

logger = structlog.get_logger(__name__)

# Webhook and verify URLs carry the payment reference and webhook token
REDACTED_QUERY_KEYS = {"token"}


def _query_string(request: Request) -> str:
    if not request.query_params:
        return ""
    return "&".join(
        f"{key}={'***' if key in REDACTED_QUERY_KEYS else value}"
        for key, value in request.query_params.multi_items()
    )


async def logging_middleware(request: Request, call_next):
    """Log all HTTP requests with trace correlation"""
    start_time = time.time()

    # Extract trace ID from OpenTelemetry context
    span = trace.get_current_span()
    trace_id = ""
    if span and span.get_span_context().is_valid:
        trace_id = format(span.get_span_context().trace_id, '032x')

    logger.info(
        "Request started",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        query=_query_string(request),
        client_ip=request.client.host if request.client else "",
        user_agent=request.headers.get("user-agent", "")
    )

    response = await call_next(request)

    latency = time.time() - start_time
    logger.info(
        "Request completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        latency_seconds=round(latency, 3)
    )

    return response
