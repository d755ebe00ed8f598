from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

JOB_CREATED = "job.created"
JOB_ASSIGNED = "job.assigned"
AI_RECOMMENDATION_REQUESTED = "ai_recommendation.requested"
AI_RECOMMENDATION_GENERATED = "ai_recommendation.generated"

ALL_TOPICS: tuple[str, ...] = (
    JOB_CREATED,
    JOB_ASSIGNED,
    AI_RECOMMENDATION_REQUESTED,
    AI_RECOMMENDATION_GENERATED,
)


def build_event(
    *,
    event_type: str,
    tenant_id: str,
    payload: dict[str, Any],
    trace_id: str = "",
) -> dict[str, Any]:
    if event_type not in ALL_TOPICS:
        raise ValueError(f"unknown event type: {event_type}")
    return {
        "event_id": f"evt_{uuid.uuid4().hex[:12]}",
        "event_type": event_type,
        "tenant_id": tenant_id,
        "trace_id": trace_id,
        "occurred_at": datetime.now(UTC).isoformat(),
        "payload": dict(payload),
    }


def job_created(*, job: dict[str, Any], trace_id: str = "") -> dict[str, Any]:
    return build_event(
        event_type=JOB_CREATED,
        tenant_id=job["tenant_id"],
        trace_id=trace_id,
        payload={
            "job_id": job["job_id"],
            "job_number": job["job_number"],
            "title": job["title"],
            "service_type": job.get("service_type", ""),
            "created_by": job.get("created_by", ""),
            "created_at": job.get("created_at", ""),
        },
    )


def job_assigned(*, assignment: dict[str, Any], trace_id: str = "") -> dict[str, Any]:
    return build_event(
        event_type=JOB_ASSIGNED,
        tenant_id=assignment["tenant_id"],
        trace_id=trace_id,
        payload={
            "job_id": assignment["job_id"],
            "assignment_id": assignment["assignment_id"],
            "vendor_id": assignment["vendor_id"],
            "vendor_name": assignment.get("vendor_name", ""),
            "assigned_by": assignment.get("assigned_by", ""),
            "assigned_at": assignment.get("assigned_at", ""),
        },
    )


def ai_recommendation_requested(
    *,
    recommendation: dict[str, Any],
    job: dict[str, Any],
    trace_id: str = "",
) -> dict[str, Any]:
    return build_event(
        event_type=AI_RECOMMENDATION_REQUESTED,
        tenant_id=recommendation["tenant_id"],
        trace_id=trace_id,
        payload={
            "recommendation_id": recommendation["recommendation_id"],
            "job_id": job["job_id"],
            "job_title": job.get("title", ""),
            "job_description": job.get("description", ""),
            "service_type": job.get("service_type", ""),
            "service_address": job.get("service_address", ""),
            "requested_by": recommendation.get("requested_by", ""),
            "requested_at": recommendation.get("requested_at", ""),
        },
    )


def ai_recommendation_generated(*, recommendation: dict[str, Any], trace_id: str = "") -> dict[str, Any]:
    return build_event(
        event_type=AI_RECOMMENDATION_GENERATED,
        tenant_id=recommendation["tenant_id"],
        trace_id=trace_id,
        payload={
            "recommendation_id": recommendation["recommendation_id"],
            "job_id": recommendation["job_id"],
            "success": recommendation.get("status") == "completed",
            "reasoning": recommendation.get("reasoning"),
            "job_summary": recommendation.get("job_summary"),
            "recommended_vendor_ids": list(recommendation.get("recommended_vendor_ids") or []),
            "completed_at": recommendation.get("completed_at"),
        },
    )
