from __future__ import annotations

import logging
import uuid
from typing import Any

from dispatch import events
from dispatch.ai_provider import JobContext, VendorCandidate
from dispatch.context import RequestContext
from dispatch.errors import PersistenceError, VersionConflictError, not_found
from dispatch.repositories.recommendations import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class StoreRecommendationsMixin:
    def request_recommendation(self, ctx: RequestContext, job_id: str) -> dict[str, Any]:
        """Create a pending recommendation and ask the worker to fulfil it.

        When the request event cannot be published the row is failed right away,
        so no caller ever polls a pending recommendation that nothing will finish.
        """
        job = self._require_job(ctx, job_id)
        recommendation = self.recommendations_repo.create(
            tenant_id=ctx.tenant_id,
            row={
                "recommendation_id": f"rec_{uuid.uuid4().hex[:12]}",
                "job_id": job_id,
                "requested_by": ctx.user_id,
                "status": "pending",
                "requested_at": self._utcnow_iso(),
                "completed_at": None,
                "provider": None,
                "model_version": None,
                "latency_ms": None,
                "recommended_vendor_ids": [],
                "reasoning": None,
                "job_summary": None,
                "prompt_summary": None,
                "error_message": None,
                "version": 1,
            },
        )
        outcome = self._publish(
            events.ai_recommendation_requested(recommendation=recommendation, job=job, trace_id=ctx.trace_id),
            timeout_s=self.settings.request_publish_timeout_s,
            ctx=ctx,
        )
        if not outcome.published:
            recommendation = self._fail_pending_recommendation(
                ctx,
                recommendation,
                error_message=f"Event broker unavailable: {outcome.error}",
            )
        return recommendation

    def _fail_pending_recommendation(
        self,
        ctx: RequestContext,
        recommendation: dict[str, Any],
        *,
        error_message: str,
    ) -> dict[str, Any]:
        failed = dict(recommendation)
        failed["status"] = "failed"
        failed["completed_at"] = self._utcnow_iso()
        failed["error_message"] = error_message
        try:
            return self.recommendations_repo.update(
                tenant_id=ctx.tenant_id,
                row=failed,
                expected_version=int(recommendation["version"]),
            )
        except VersionConflictError:
            current = self.recommendations_repo.get(
                tenant_id=ctx.tenant_id,
                recommendation_id=recommendation["recommendation_id"],
            )
            if current is None:
                raise
            return current

    def get_recommendation(self, ctx: RequestContext, recommendation_id: str) -> dict[str, Any]:
        recommendation = self.recommendations_repo.get(tenant_id=ctx.tenant_id, recommendation_id=recommendation_id)
        if recommendation is None:
            raise not_found("ai_recommendation", recommendation_id)
        return recommendation

    def list_recommendations(self, ctx: RequestContext, job_id: str) -> list[dict[str, Any]]:
        self._require_job(ctx, job_id)
        return self.recommendations_repo.list_by_job(tenant_id=ctx.tenant_id, job_id=job_id)

    def _find_recommendation_with_retry(self, ctx: RequestContext, recommendation_id: str) -> dict[str, Any] | None:
        attempts = self.settings.recommendation_lookup_attempts
        delay_s = self.settings.recommendation_lookup_delay_ms / 1000.0
        for attempt in range(1, attempts + 1):
            recommendation = self.recommendations_repo.get(
                tenant_id=ctx.tenant_id,
                recommendation_id=recommendation_id,
            )
            if recommendation is not None:
                return recommendation
            if attempt < attempts:
                logger.info(
                    "recommendation %s not visible yet (attempt %d/%d)",
                    recommendation_id,
                    attempt,
                    attempts,
                )
                if not ctx.sleep(delay_s):
                    logger.info("lookup of recommendation %s cancelled", recommendation_id)
                    return None
        return None

    def _job_context(self, ctx: RequestContext, payload: dict[str, Any]) -> JobContext:
        job_id = str(payload.get("job_id", ""))
        job = self.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=job_id)
        if job is None:
            logger.info("job %s not visible yet; using fields carried by the event", job_id)
            job = {
                "job_id": job_id,
                "title": payload.get("job_title", ""),
                "description": payload.get("job_description", ""),
                "service_type": payload.get("service_type", ""),
                "service_address": payload.get("service_address", ""),
            }
        vendors = self.vendors_repo.list_candidates(
            tenant_id=ctx.tenant_id,
            limit=self.settings.recommendation_candidate_limit,
        )
        return JobContext(
            job_id=job_id,
            title=str(job.get("title") or ""),
            description=str(job.get("description") or ""),
            service_type=str(job.get("service_type") or ""),
            service_address=str(job.get("service_address") or ""),
            candidates=[VendorCandidate.from_vendor(v) for v in vendors],
        )

    def fulfill_recommendation(self, ctx: RequestContext, payload: dict[str, Any]) -> dict[str, Any] | None:
        recommendation_id = str(payload.get("recommendation_id", ""))
        recommendation = self._find_recommendation_with_retry(ctx, recommendation_id)
        if recommendation is None:
            logger.warning(
                "recommendation %s not found after %d attempts; dropping request tenant=%s",
                recommendation_id,
                self.settings.recommendation_lookup_attempts,
                ctx.tenant_id,
            )
            return None
        if recommendation["status"] in TERMINAL_STATUSES:
            logger.info("recommendation %s already %s; skipping redelivery", recommendation_id, recommendation["status"])
            return recommendation

        context = self._job_context(ctx, payload)
        result = self.ai_provider.generate_recommendation(
            context,
            timeout_s=ctx.child_timeout(self.ai_provider.timeout_s),
        )
        if not result.success:
            logger.warning("AI recommendation %s failed: %s", recommendation_id, result.error_message)

        finished = dict(recommendation)
        finished.update(
            {
                "status": "completed" if result.success else "failed",
                "completed_at": self._utcnow_iso(),
                "provider": result.provider,
                "model_version": result.model_version,
                "latency_ms": result.latency_ms,
                "recommended_vendor_ids": list(result.recommended_vendor_ids) if result.success else [],
                "reasoning": result.reasoning,
                "job_summary": result.job_summary,
                "prompt_summary": (
                    f"Job: {context.title}, Type: {context.service_type}, Vendors evaluated: {len(context.candidates)}"
                ),
                "error_message": None if result.success else result.error_message,
            }
        )
        try:
            saved = self.recommendations_repo.update(
                tenant_id=ctx.tenant_id,
                row=finished,
                expected_version=int(recommendation["version"]),
            )
        except VersionConflictError as exc:
            current = self.recommendations_repo.get(tenant_id=ctx.tenant_id, recommendation_id=recommendation_id)
            if current is not None and current["status"] in TERMINAL_STATUSES:
                logger.info("recommendation %s was finalized concurrently; keeping stored result", recommendation_id)
                return current
            raise PersistenceError(f"could not save recommendation {recommendation_id}") from exc
        except Exception as exc:
            logger.exception("saving recommendation %s failed; message will be redelivered", recommendation_id)
            raise PersistenceError(f"could not save recommendation {recommendation_id}") from exc

        self._publish(
            events.ai_recommendation_generated(recommendation=saved, trace_id=ctx.trace_id),
            timeout_s=self.settings.notify_publish_timeout_s,
            ctx=ctx,
        )
        return saved
