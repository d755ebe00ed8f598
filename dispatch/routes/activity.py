from __future__ import annotations

from fastapi import APIRouter, Query, Request

from dispatch.errors import ApiError, not_found
from dispatch.realtime import tenant_group
from dispatch.routes._deps import context_from_request, trace_id_from_request
from dispatch.schemas import success_envelope
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["activity"])


@router.get("/audit-logs")
def list_audit_logs(
    request: Request,
    entity_name: str = Query(default=""),
    entity_id: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
):
    data = store.list_audit_logs(
        context_from_request(request),
        entity_name=entity_name,
        entity_id=entity_id,
        page=page,
        page_size=page_size,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/realtime/{group}")
def recent_group_events(group: str, request: Request, limit: int = Query(default=50, ge=1, le=100)):
    ctx = context_from_request(request)
    kind, _, ref = group.partition(":")
    if kind == "tenant":
        if group != tenant_group(ctx.tenant_id):
            raise ApiError(
                code="TENANT_SCOPE_VIOLATION",
                message="tenant mismatch",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )
    elif kind == "job" and ref:
        if store.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=ref) is None:
            raise not_found("job", ref)
    else:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message="group must be tenant:<id> or job:<id>",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    data = store.notifier.recent(group, limit=limit)
    return success_envelope(data, trace_id_from_request(request))
