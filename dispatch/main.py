from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from dispatch.errors import ApiError
from dispatch.routes import activity, internal, jobs, vendors
from dispatch.routes._deps import error_response, trace_id_from_request
from dispatch.schemas import success_envelope

logger = logging.getLogger(__name__)

MAX_REQUEST_BUDGET_MS = 120_000


def _budget_ms_from_header(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    if value <= 0:
        return None
    return min(value, MAX_REQUEST_BUDGET_MS)


def create_app() -> FastAPI:
    app = FastAPI(title="Field Service Dispatch API", version="0.1.0")
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.tenant_id = request.headers.get("x-tenant-id", "").strip() or "tenant_default"
        request.state.user_id = request.headers.get("x-user-id", "").strip() or "anonymous"
        request.state.budget_ms = _budget_ms_from_header(request.headers.get("x-request-timeout-ms"))
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500 or exc.retryable:
            logger.warning("request %s failed with %s: %s", request.url.path, exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(jobs.router)
    app.include_router(vendors.router)
    app.include_router(activity.router)
    app.include_router(internal.router)
    return app


app = create_app()
