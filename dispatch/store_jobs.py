from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from dispatch import events
from dispatch.context import RequestContext
from dispatch.errors import ApiError, VersionConflictError, concurrency_conflict, not_found

logger = logging.getLogger(__name__)

JOB_STATUSES = ("new", "in_review", "assigned", "in_progress", "completed", "cancelled")
JOB_PRIORITIES = ("low", "medium", "high", "critical")
EDITABLE_JOB_FIELDS = (
    "title",
    "description",
    "customer_name",
    "customer_email",
    "customer_phone",
    "service_address",
    "service_type",
    "priority",
    "scheduled_at",
)


def _split_csv(value: str | list[str] | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [x.strip() for x in value if x and x.strip()]
    return [x.strip() for x in value.split(",") if x.strip()]


class StoreJobsMixin:
    def _require_job(self, ctx: RequestContext, job_id: str) -> dict[str, Any]:
        job = self.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=job_id)
        if job is None:
            raise not_found("job", job_id)
        return job

    def _save_job(self, ctx: RequestContext, job: dict[str, Any], **changes: Any) -> dict[str, Any]:
        updated = dict(job)
        updated.update(changes)
        updated["updated_at"] = self._utcnow_iso()
        try:
            return self.jobs_repo.update(
                tenant_id=ctx.tenant_id,
                row=updated,
                expected_version=int(job["version"]),
            )
        except VersionConflictError as exc:
            raise concurrency_conflict("job", str(job["job_id"])) from exc

    def create_job(self, ctx: RequestContext, payload: dict[str, Any]) -> dict[str, Any]:
        priority = str(payload.get("priority") or "medium")
        if priority not in JOB_PRIORITIES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"unsupported priority: {priority}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        now = self._utcnow_iso()
        with self._numbering_lock:
            job_number = self.jobs_repo.next_job_number(
                tenant_id=ctx.tenant_id,
                year=datetime.now(UTC).year,
            )
            job = self.jobs_repo.create(
                tenant_id=ctx.tenant_id,
                row={
                    "job_id": f"job_{uuid.uuid4().hex[:12]}",
                    "job_number": job_number,
                    "title": str(payload["title"]),
                    "description": str(payload.get("description") or ""),
                    "customer_name": str(payload.get("customer_name") or ""),
                    "customer_email": payload.get("customer_email"),
                    "customer_phone": payload.get("customer_phone"),
                    "service_address": str(payload.get("service_address") or ""),
                    "service_type": str(payload.get("service_type") or ""),
                    "status": "new",
                    "priority": priority,
                    "scheduled_at": payload.get("scheduled_at"),
                    "completed_at": None,
                    "cancelled_at": None,
                    "assigned_vendor_name": None,
                    "created_by": ctx.user_id,
                    "created_at": now,
                    "updated_at": now,
                    "version": 1,
                },
            )
        self._publish_detached(
            events.job_created(job=job, trace_id=ctx.trace_id),
            timeout_s=self.settings.notify_publish_timeout_s,
            ctx=ctx,
        )
        self.audit.record(
            ctx,
            entity_name="Job",
            entity_id=job["job_id"],
            action="Created",
            new_values={"job_number": job["job_number"], "title": job["title"], "status": job["status"]},
        )
        return job

    def update_job(self, ctx: RequestContext, job_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        edits = {k: v for k, v in changes.items() if k in EDITABLE_JOB_FIELDS and v is not None}
        if "priority" in edits and edits["priority"] not in JOB_PRIORITIES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"unsupported priority: {edits['priority']}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self.job_lock(ctx.tenant_id, job_id):
            job = self._require_job(ctx, job_id)
            old_values = {k: job.get(k) for k in edits if job.get(k) != edits[k]}
            if not old_values:
                return job
            updated = self._save_job(ctx, job, **edits)
        self.audit.record(
            ctx,
            entity_name="Job",
            entity_id=job_id,
            action="Updated",
            old_values=old_values,
            new_values={k: updated.get(k) for k in old_values},
        )
        return updated

    def update_job_status(self, ctx: RequestContext, job_id: str, status: str) -> dict[str, Any]:
        """Force a job into ``status``; no transition table is enforced here.

        Entering ``completed`` completes the active assignment and entering
        ``cancelled`` revokes it, releasing the vendor slot either way.
        """
        if status not in JOB_STATUSES:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"unsupported job status: {status}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self.job_lock(ctx.tenant_id, job_id):
            job = self._require_job(ctx, job_id)
            old_status = job["status"]
            now = self._utcnow_iso()
            changes: dict[str, Any] = {"status": status}
            if status == "completed":
                changes["completed_at"] = now
            elif status == "cancelled":
                changes["cancelled_at"] = now
            if status in {"completed", "cancelled"}:
                closing = "completed" if status == "completed" else "revoked"
                for active in self.assignments_repo.list_active_by_job(tenant_id=ctx.tenant_id, job_id=job_id):
                    self._close_assignment(ctx, active, status=closing, now=now)
            updated = self._save_job(ctx, job, **changes)
        self.audit.record(
            ctx,
            entity_name="Job",
            entity_id=job_id,
            action="StatusChanged",
            old_values={"status": old_status},
            new_values={"status": status},
        )
        return updated

    def advance_new_job_to_review(self, ctx: RequestContext, job_id: str) -> tuple[dict[str, Any] | None, bool]:
        """Move a ``new`` job to ``in_review``; the flag is True only for the call that moved it."""
        with self.job_lock(ctx.tenant_id, job_id):
            job = self.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=job_id)
            if job is None:
                return None, False
            if job["status"] != "new":
                return job, False
            updated = self._save_job(ctx, job, status="in_review")
        self.audit.record(
            ctx,
            entity_name="Job",
            entity_id=job_id,
            action="StatusChanged",
            old_values={"status": "new"},
            new_values={"status": "in_review"},
        )
        return updated, True

    def get_job(self, ctx: RequestContext, job_id: str) -> dict[str, Any]:
        job = self._require_job(ctx, job_id)
        recommendations = self.recommendations_repo.list_by_job(tenant_id=ctx.tenant_id, job_id=job_id)
        job["assignments"] = self.assignments_repo.list_by_job(tenant_id=ctx.tenant_id, job_id=job_id)
        job["latest_recommendation"] = recommendations[0] if recommendations else None
        return job

    def list_jobs(
        self,
        ctx: RequestContext,
        *,
        status: str | list[str] | None = None,
        priority: str | list[str] | None = None,
        search: str = "",
        service_type: str = "",
        sort_by: str = "created_at",
        descending: bool = True,
        page: int = 1,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        size = int(page_size or self.settings.job_list_page_size)
        items, total = self.jobs_repo.list_paged(
            tenant_id=ctx.tenant_id,
            statuses=_split_csv(status),
            priorities=_split_csv(priority),
            search=search.strip(),
            service_type=service_type.strip(),
            sort_by=sort_by,
            descending=descending,
            page=page,
            page_size=size,
        )
        return {"items": items, "total": total, "page": max(1, int(page)), "page_size": size}
