from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["new", "in_review", "assigned", "in_progress", "completed", "cancelled"]
JobPriority = Literal["low", "medium", "high", "critical"]


class JobCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    customer_name: str = Field(min_length=1, max_length=200)
    customer_email: str | None = None
    customer_phone: str | None = None
    service_address: str = Field(min_length=1)
    service_type: str = Field(min_length=1, max_length=100)
    priority: JobPriority = "medium"
    scheduled_at: str | None = None


class JobUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    customer_name: str | None = Field(default=None, min_length=1, max_length=200)
    customer_email: str | None = None
    customer_phone: str | None = None
    service_address: str | None = Field(default=None, min_length=1)
    service_type: str | None = Field(default=None, min_length=1, max_length=100)
    priority: JobPriority | None = None
    scheduled_at: str | None = None


class JobStatusUpdateRequest(BaseModel):
    status: JobStatus


class AssignVendorRequest(BaseModel):
    vendor_id: str = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=2000)


class VendorCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    contact_email: str | None = None
    contact_phone: str | None = None
    service_area: str | None = None
    specializations: list[str] = Field(default_factory=list)
    capacity_limit: int = Field(ge=0, le=1000)
    rating: float | None = Field(default=None, ge=0, le=5)
    is_active: bool = True


class VendorUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    contact_email: str | None = None
    contact_phone: str | None = None
    service_area: str | None = None
    specializations: list[str] | None = None
    capacity_limit: int | None = Field(default=None, ge=0, le=1000)
    rating: float | None = Field(default=None, ge=0, le=5)
    is_active: bool | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
