from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from dispatch import events
from dispatch.context import SYSTEM_USER, RequestContext

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]


class EventConsumers:
    """One handler per event type; every handler tolerates duplicate delivery."""

    def __init__(self, *, store: Any) -> None:
        self.store = store
        self._handlers: dict[str, Handler] = {
            events.JOB_CREATED: self.on_job_created,
            events.JOB_ASSIGNED: self.on_job_assigned,
            events.AI_RECOMMENDATION_REQUESTED: self.on_ai_recommendation_requested,
            events.AI_RECOMMENDATION_GENERATED: self.on_ai_recommendation_generated,
        }

    def handler_for(self, event_type: str) -> Handler | None:
        return self._handlers.get(event_type)

    @staticmethod
    def _context(event: dict[str, Any], *, user_id: str = SYSTEM_USER) -> RequestContext:
        return RequestContext(
            tenant_id=str(event["tenant_id"]),
            user_id=user_id or SYSTEM_USER,
            trace_id=str(event.get("trace_id") or event.get("event_id") or ""),
        )

    def on_job_created(self, event: dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        job_id = str(payload.get("job_id", ""))
        ctx = self._context(event, user_id=str(payload.get("created_by") or SYSTEM_USER))
        job, advanced = self.store.advance_new_job_to_review(ctx, job_id)
        if job is None:
            logger.warning("job.created for unknown job %s tenant=%s; ignoring", job_id, ctx.tenant_id)
            return
        if not advanced:
            logger.info("job %s already past triage (%s); no recommendation requested", job_id, job["status"])
            return
        recommendation = self.store.request_recommendation(ctx, job_id)
        logger.info(
            "job %s queued for triage; recommendation %s is %s",
            job_id,
            recommendation["recommendation_id"],
            recommendation["status"],
        )

    def on_ai_recommendation_requested(self, event: dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        ctx = self._context(event)
        self.store.fulfill_recommendation(ctx, payload)

    def on_job_assigned(self, event: dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        assigned_by = str(payload.get("assigned_by") or SYSTEM_USER)
        ctx = self._context(event, user_id=assigned_by)
        self.store.notifier.notify_tenant(
            ctx.tenant_id,
            "JobAssigned",
            {
                "job_id": payload.get("job_id"),
                "vendor_id": payload.get("vendor_id"),
                "vendor_name": payload.get("vendor_name"),
                "assigned_by": assigned_by,
                "assigned_at": payload.get("assigned_at"),
            },
        )
        self.store.audit.record(
            ctx,
            entity_name="Job",
            entity_id=str(payload.get("job_id", "")),
            action="Assigned",
            new_values={
                "assignment_id": payload.get("assignment_id"),
                "vendor_id": payload.get("vendor_id"),
                "vendor_name": payload.get("vendor_name"),
            },
        )

    def on_ai_recommendation_generated(self, event: dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        ctx = self._context(event)
        job_id = str(payload.get("job_id", ""))
        success = bool(payload.get("success"))
        self.store.notifier.notify_job(
            job_id,
            ctx.tenant_id,
            "AIRecommendationReady",
            {
                "job_id": job_id,
                "recommendation_id": payload.get("recommendation_id"),
                "success": success,
                "completed_at": payload.get("completed_at"),
            },
        )
        self.store.audit.record(
            ctx,
            entity_name="AIRecommendation",
            entity_id=str(payload.get("recommendation_id", "")),
            action="Generated" if success else "Failed",
            new_values={
                "job_id": job_id,
                "recommended_vendor_ids": list(payload.get("recommended_vendor_ids") or []),
            },
            changed_by=SYSTEM_USER,
        )
