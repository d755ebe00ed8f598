from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from dispatch.routes._deps import context_from_request, trace_id_from_request
from dispatch.schemas import (
    AssignVendorRequest,
    JobCreateRequest,
    JobStatusUpdateRequest,
    JobUpdateRequest,
    success_envelope,
)
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["jobs"])


@router.post("/jobs")
def create_job(payload: JobCreateRequest, request: Request):
    data = store.create_job(context_from_request(request), payload.model_dump(mode="json"))
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/jobs")
def list_jobs(
    request: Request,
    status: str | None = Query(default=None),
    priority: str | None = Query(default=None),
    search: str = Query(default=""),
    service_type: str = Query(default=""),
    sort_by: str = Query(default="created_at", pattern="^(created_at|priority|status)$"),
    sort_desc: bool = Query(default=True),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=200),
):
    data = store.list_jobs(
        context_from_request(request),
        status=status,
        priority=priority,
        search=search,
        service_type=service_type,
        sort_by=sort_by,
        descending=sort_desc,
        page=page,
        page_size=page_size,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request):
    return success_envelope(store.get_job(context_from_request(request), job_id), trace_id_from_request(request))


@router.put("/jobs/{job_id}")
def update_job(job_id: str, payload: JobUpdateRequest, request: Request):
    data = store.update_job(context_from_request(request), job_id, payload.model_dump(mode="json", exclude_unset=True))
    return success_envelope(data, trace_id_from_request(request))


@router.patch("/jobs/{job_id}/status")
def update_job_status(job_id: str, payload: JobStatusUpdateRequest, request: Request):
    data = store.update_job_status(context_from_request(request), job_id, payload.status)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/jobs/{job_id}/assignments")
def assign_vendor(job_id: str, payload: AssignVendorRequest, request: Request):
    data = store.assign_vendor(
        context_from_request(request),
        job_id,
        payload.vendor_id,
        notes=payload.notes,
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/jobs/{job_id}/assignments")
def list_assignments(job_id: str, request: Request):
    data = store.list_assignments(context_from_request(request), job_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/jobs/{job_id}/assignments/{assignment_id}")
def revoke_assignment(job_id: str, assignment_id: str, request: Request):
    data = store.revoke_assignment(context_from_request(request), job_id, assignment_id)
    return success_envelope(data, trace_id_from_request(request))


@router.post("/jobs/{job_id}/recommendations")
def request_recommendation(job_id: str, request: Request):
    data = store.request_recommendation(context_from_request(request), job_id)
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/jobs/{job_id}/recommendations")
def list_recommendations(job_id: str, request: Request):
    data = store.list_recommendations(context_from_request(request), job_id)
    return success_envelope(data, trace_id_from_request(request))
