from __future__ import annotations

import threading
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.repositories.base import InMemoryTable, PostgresTable

TERMINAL_STATUSES = frozenset({"completed", "failed"})


class InMemoryRecommendationsRepository(InMemoryTable):
    entity = "ai_recommendation"
    key = "recommendation_id"

    def __init__(self, recommendations: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        super().__init__(recommendations, lock=lock)

    def get(self, *, tenant_id: str, recommendation_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=recommendation_id)

    def list_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        rows = [x for x in self._scan(tenant_id=tenant_id) if x.get("job_id") == job_id]
        rows.sort(key=lambda x: str(x.get("requested_at", "")), reverse=True)
        return rows


class PostgresRecommendationsRepository(PostgresTable):
    entity = "ai_recommendation"
    key = "recommendation_id"
    columns = (
        "recommendation_id",
        "tenant_id",
        "job_id",
        "requested_by",
        "status",
        "requested_at",
        "completed_at",
        "provider",
        "model_version",
        "latency_ms",
        "recommended_vendor_ids",
        "reasoning",
        "job_summary",
        "prompt_summary",
        "error_message",
        "version",
    )
    json_columns = frozenset({"recommended_vendor_ids"})
    immutable_columns = frozenset({"tenant_id", "version", "job_id", "requested_by", "requested_at"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "ai_recommendations") -> None:
        super().__init__(tx_runner=tx_runner, table_name=table_name)

    def get(self, *, tenant_id: str, recommendation_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=recommendation_id)

    def list_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        return self._select(tenant_id=tenant_id, where="job_id = %s", params=[job_id], order_by="requested_at DESC")
