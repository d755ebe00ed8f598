from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from dispatch.routes._deps import context_from_request, trace_id_from_request
from dispatch.schemas import VendorCreateRequest, VendorUpdateRequest, success_envelope
from dispatch.store import store

router = APIRouter(prefix="/api/v1", tags=["vendors"])


@router.post("/vendors")
def create_vendor(payload: VendorCreateRequest, request: Request):
    data = store.create_vendor(context_from_request(request), payload.model_dump(mode="json"))
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/vendors")
def list_vendors(
    request: Request,
    is_active: bool | None = Query(default=None),
    has_capacity: bool | None = Query(default=None),
    service_type: str = Query(default=""),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
):
    data = store.list_vendors(
        context_from_request(request),
        is_active=is_active,
        has_capacity=has_capacity,
        service_type=service_type,
        page=page,
        page_size=page_size,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/vendors/{vendor_id}")
def get_vendor(vendor_id: str, request: Request):
    return success_envelope(store.get_vendor(context_from_request(request), vendor_id), trace_id_from_request(request))


@router.put("/vendors/{vendor_id}")
def update_vendor(vendor_id: str, payload: VendorUpdateRequest, request: Request):
    data = store.update_vendor(
        context_from_request(request),
        vendor_id,
        payload.model_dump(mode="json", exclude_unset=True),
    )
    return success_envelope(data, trace_id_from_request(request))
