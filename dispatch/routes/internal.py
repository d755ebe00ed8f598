from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request

from dispatch.errors import ApiError
from dispatch.routes._deps import trace_id_from_request
from dispatch.schemas import success_envelope
from dispatch.store import store
from dispatch.worker_runtime import create_worker_runtime_from_env

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _require_internal_debug(x_internal_debug: str | None) -> None:
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@router.post("/worker/drain-once")
def drain_worker_once(
    request: Request,
    until_idle: bool = Query(default=False),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    runtime = create_worker_runtime_from_env(store=store)
    stats = runtime.run_until_idle() if until_idle else runtime.run_once()
    return success_envelope({"stats": stats}, trace_id_from_request(request))


@router.get("/broker/pending")
def broker_pending(
    request: Request,
    tenant_id: str = Query(min_length=1),
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    _require_internal_debug(x_internal_debug)
    runtime = create_worker_runtime_from_env(store=store)
    counts = {
        topic: store.queue_backend.pending_count(tenant_id=tenant_id, topic=topic) for topic in runtime.topics
    }
    return success_envelope({"tenant_id": tenant_id, "pending": counts}, trace_id_from_request(request))
