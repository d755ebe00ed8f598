from __future__ import annotations

import logging
import uuid
from typing import Any

from dispatch import events
from dispatch.capacity_ledger import ensure_can_accept
from dispatch.context import RequestContext
from dispatch.errors import VersionConflictError, concurrency_conflict, invalid_operation, not_found

logger = logging.getLogger(__name__)


class StoreAssignmentsMixin:
    def _close_assignment(
        self,
        ctx: RequestContext,
        assignment: dict[str, Any],
        *,
        status: str,
        now: str,
        release_slot: bool = True,
    ) -> dict[str, Any]:
        """Move an active assignment to ``revoked`` or ``completed`` and free its slot.

        The version-checked write means only one caller can win the transition, so
        the vendor slot is released exactly once per closed assignment.
        """
        updated = dict(assignment)
        updated["status"] = status
        if status == "revoked":
            updated["revoked_at"] = now
            updated["revoked_by"] = ctx.user_id
        else:
            updated["completed_at"] = now
        try:
            closed = self.assignments_repo.update(
                tenant_id=ctx.tenant_id,
                row=updated,
                expected_version=int(assignment["version"]),
            )
        except VersionConflictError as exc:
            raise concurrency_conflict("assignment", str(assignment["assignment_id"])) from exc
        if release_slot:
            self.ledger.release_slot(ctx=ctx, vendor_id=str(assignment["vendor_id"]))
        return closed

    def _reopen_assignment(self, ctx: RequestContext, closed: dict[str, Any]) -> None:
        """Undo a supersession: the assignment is active again and holds its slot."""
        restored = dict(closed)
        restored.update(status="active", revoked_at=None, revoked_by=None)
        try:
            self.assignments_repo.update(
                tenant_id=ctx.tenant_id,
                row=restored,
                expected_version=int(closed["version"]),
            )
            self.ledger.reserve_slot(ctx=ctx, vendor_id=str(closed["vendor_id"]))
        except Exception:
            logger.error(
                "could not restore assignment %s of job %s after failed reassignment tenant=%s",
                closed["assignment_id"],
                closed["job_id"],
                ctx.tenant_id,
                exc_info=True,
            )

    def assign_vendor(
        self,
        ctx: RequestContext,
        job_id: str,
        vendor_id: str,
        *,
        notes: str | None = None,
    ) -> dict[str, Any]:
        with self.job_lock(ctx.tenant_id, job_id):
            job = self._require_job(ctx, job_id)
            vendor = self.vendors_repo.get(tenant_id=ctx.tenant_id, vendor_id=vendor_id)
            if vendor is None:
                raise not_found("vendor", vendor_id)
            ensure_can_accept(vendor)
            prior = self.assignments_repo.list_active_by_job(tenant_id=ctx.tenant_id, job_id=job_id)

            # Slot is taken first so the capacity check and increment are one step.
            vendor = self.ledger.reserve_slot(ctx=ctx, vendor_id=vendor_id)
            created: dict[str, Any] | None = None
            superseded: list[dict[str, Any]] = []
            now = self._utcnow_iso()
            try:
                for active in prior:
                    superseded.append(self._close_assignment(ctx, active, status="revoked", now=now))
                created = self.assignments_repo.create(
                    tenant_id=ctx.tenant_id,
                    row={
                        "assignment_id": f"asg_{uuid.uuid4().hex[:12]}",
                        "job_id": job_id,
                        "vendor_id": vendor_id,
                        "vendor_name": vendor["name"],
                        "assigned_by": ctx.user_id,
                        "status": "active",
                        "notes": notes,
                        "assigned_at": now,
                        "revoked_at": None,
                        "revoked_by": None,
                        "completed_at": None,
                        "version": 1,
                    },
                )
                self._save_job(ctx, job, status="assigned", assigned_vendor_name=vendor["name"])
            except Exception:
                if created is not None:
                    self._close_assignment(ctx, created, status="revoked", now=now, release_slot=False)
                self.ledger.release_slot(ctx=ctx, vendor_id=vendor_id)
                for closed in superseded:
                    self._reopen_assignment(ctx, closed)
                raise

        self._publish_detached(
            events.job_assigned(assignment=created, trace_id=ctx.trace_id),
            timeout_s=self.settings.notify_publish_timeout_s,
            ctx=ctx,
        )
        self.audit.record(
            ctx,
            entity_name="Assignment",
            entity_id=created["assignment_id"],
            action="Created",
            new_values={"job_id": job_id, "vendor_id": vendor_id, "vendor_name": vendor["name"]},
        )
        logger.info(
            "job %s assigned to vendor %s (revoked %d prior) tenant=%s",
            job_id,
            vendor_id,
            len(prior),
            ctx.tenant_id,
        )
        return created

    def revoke_assignment(self, ctx: RequestContext, job_id: str, assignment_id: str) -> dict[str, Any]:
        with self.job_lock(ctx.tenant_id, job_id):
            assignment = self.assignments_repo.get(tenant_id=ctx.tenant_id, assignment_id=assignment_id)
            if assignment is None:
                raise not_found("assignment", assignment_id)
            if assignment["job_id"] != job_id:
                raise invalid_operation("Assignment does not belong to this job")
            if assignment["status"] != "active":
                raise invalid_operation("Only active assignments can be revoked")
            revoked = self._close_assignment(ctx, assignment, status="revoked", now=self._utcnow_iso())
            job = self.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=job_id)
            if job is not None:
                self._save_job(ctx, job, status="in_review", assigned_vendor_name=None)
        self.audit.record(
            ctx,
            entity_name="Assignment",
            entity_id=assignment_id,
            action="Revoked",
            old_values={"status": "active"},
            new_values={"status": "revoked", "vendor_id": assignment["vendor_id"]},
        )
        return revoked

    def list_assignments(self, ctx: RequestContext, job_id: str) -> list[dict[str, Any]]:
        self._require_job(ctx, job_id)
        return self.assignments_repo.list_by_job(tenant_id=ctx.tenant_id, job_id=job_id)
