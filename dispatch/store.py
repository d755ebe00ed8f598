from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from dispatch.ai_provider import AIProvider, MockAIProvider, create_ai_provider_from_env
from dispatch.audit import AuditService
from dispatch.capacity_ledger import CapacityLedger
from dispatch.context import RequestContext
from dispatch.db.postgres import PostgresTxRunner
from dispatch.event_publisher import EventPublisher, PublishOutcome
from dispatch.queue_backend import InMemoryQueueBackend, create_queue_from_env
from dispatch.realtime import InMemoryRealtimeHub, create_realtime_notifier_from_env
from dispatch.repositories import (
    InMemoryAssignmentsRepository,
    InMemoryAuditLogsRepository,
    InMemoryJobsRepository,
    InMemoryRecommendationsRepository,
    InMemoryVendorsRepository,
    PostgresAssignmentsRepository,
    PostgresAuditLogsRepository,
    PostgresJobsRepository,
    PostgresRecommendationsRepository,
    PostgresVendorsRepository,
)
from dispatch.settings import DispatchSettings, true_stack_required
from dispatch.store_assignments import StoreAssignmentsMixin
from dispatch.store_jobs import StoreJobsMixin
from dispatch.store_recommendations import StoreRecommendationsMixin
from dispatch.store_vendors import StoreVendorsMixin

logger = logging.getLogger(__name__)


class DispatchStore(
    StoreJobsMixin,
    StoreVendorsMixin,
    StoreAssignmentsMixin,
    StoreRecommendationsMixin,
):
    """Command side of the dispatch core, backed by in-memory repositories."""

    def __init__(
        self,
        *,
        settings: DispatchSettings | None = None,
        queue_backend: Any | None = None,
        ai_provider: AIProvider | None = None,
        notifier: Any | None = None,
    ) -> None:
        self.settings = settings or DispatchSettings.from_env()
        self._lock = threading.RLock()
        self._numbering_lock = threading.Lock()
        self._job_locks: dict[tuple[str, str], threading.RLock] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.vendors: dict[str, dict[str, Any]] = {}
        self.assignments: dict[str, dict[str, Any]] = {}
        self.recommendations: dict[str, dict[str, Any]] = {}
        self.audit_logs: list[dict[str, Any]] = []
        self._init_repositories()
        self.queue_backend = queue_backend if queue_backend is not None else InMemoryQueueBackend()
        self.publisher = EventPublisher(queue_backend=self.queue_backend)
        self.ai_provider = ai_provider if ai_provider is not None else MockAIProvider()
        self.notifier = notifier if notifier is not None else InMemoryRealtimeHub()
        self.audit = AuditService(audit_repo=self.audit_logs_repo, utcnow=self._utcnow_iso)
        self.ledger = CapacityLedger(
            vendors_repo=self.vendors_repo,
            utcnow=self._utcnow_iso,
            max_attempts=self.settings.capacity_update_attempts,
        )

    def _init_repositories(self) -> None:
        self.jobs_repo = InMemoryJobsRepository(self.jobs, lock=self._lock)
        self.vendors_repo = InMemoryVendorsRepository(self.vendors, lock=self._lock)
        self.assignments_repo = InMemoryAssignmentsRepository(self.assignments, lock=self._lock)
        self.recommendations_repo = InMemoryRecommendationsRepository(self.recommendations, lock=self._lock)
        self.audit_logs_repo = InMemoryAuditLogsRepository(self.audit_logs, lock=self._lock)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @contextmanager
    def job_lock(self, tenant_id: str, job_id: str) -> Iterator[None]:
        """Serialise mutations of one job inside this process."""
        with self._lock:
            lock = self._job_locks.setdefault((tenant_id, job_id), threading.RLock())
        with lock:
            yield

    def _publish(self, event: dict[str, Any], *, timeout_s: float, ctx: RequestContext) -> PublishOutcome:
        return self.publisher.publish_best_effort(event, timeout_s=timeout_s, ctx=ctx)

    def _publish_detached(self, event: dict[str, Any], *, timeout_s: float, ctx: RequestContext) -> None:
        self.publisher.publish_detached(event, timeout_s=timeout_s, ctx=ctx)

    def list_audit_logs(
        self,
        ctx: RequestContext,
        *,
        entity_name: str = "",
        entity_id: str = "",
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        items, total = self.audit_logs_repo.list_paged(
            tenant_id=ctx.tenant_id,
            entity_name=entity_name,
            entity_id=entity_id,
            page=page,
            page_size=page_size,
        )
        return {"items": items, "total": total, "page": max(1, int(page)), "page_size": int(page_size)}

    def reset(self) -> None:
        self.publisher.flush(timeout_s=5)
        with self._lock:
            self.jobs.clear()
            self.vendors.clear()
            self.assignments.clear()
            self.recommendations.clear()
            self.audit_logs.clear()
            self._job_locks.clear()
        if hasattr(self.queue_backend, "reset"):
            self.queue_backend.reset()
        if hasattr(self.notifier, "reset"):
            self.notifier.reset()


class PostgresBackedStore(DispatchStore):
    """Same operations with every repository routed through PostgreSQL."""

    def __init__(self, *, dsn: str, tx_runner: PostgresTxRunner | None = None, **kwargs: Any) -> None:
        self._tx_runner = tx_runner or PostgresTxRunner(dsn)
        super().__init__(**kwargs)

    def _init_repositories(self) -> None:
        self.jobs_repo = PostgresJobsRepository(tx_runner=self._tx_runner)
        self.vendors_repo = PostgresVendorsRepository(tx_runner=self._tx_runner)
        self.assignments_repo = PostgresAssignmentsRepository(tx_runner=self._tx_runner)
        self.recommendations_repo = PostgresRecommendationsRepository(tx_runner=self._tx_runner)
        self.audit_logs_repo = PostgresAuditLogsRepository(tx_runner=self._tx_runner)


def _create_queue_backend_for_runtime(environ: Mapping[str, str]) -> Any:
    try:
        return create_queue_from_env(environ)
    except RuntimeError:
        if true_stack_required(environ):
            raise
        logger.warning("queue backend unavailable; falling back to in-memory broker", exc_info=True)
        return InMemoryQueueBackend()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> DispatchStore:
    env = os.environ if environ is None else environ
    settings = DispatchSettings.from_env(env)
    collaborators: dict[str, Any] = {
        "settings": settings,
        "queue_backend": _create_queue_backend_for_runtime(env),
        "ai_provider": create_ai_provider_from_env(env),
        "notifier": create_realtime_notifier_from_env(env),
    }
    backend = env.get("DISPATCH_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return DispatchStore(**collaborators)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when DISPATCH_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn, **collaborators)
    raise RuntimeError(f"unsupported store backend: {backend}")


store = create_store_from_env()
