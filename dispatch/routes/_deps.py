from __future__ import annotations

import time
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from dispatch.context import RequestContext
from dispatch.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "tenant_default"


def user_id_from_request(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id
    return "anonymous"


def context_from_request(request: Request) -> RequestContext:
    budget_ms = getattr(request.state, "budget_ms", None)
    return RequestContext(
        tenant_id=tenant_id_from_request(request),
        user_id=user_id_from_request(request),
        trace_id=trace_id_from_request(request),
        deadline=time.monotonic() + budget_ms / 1000.0 if budget_ms else None,
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
