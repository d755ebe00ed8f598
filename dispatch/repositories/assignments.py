from __future__ import annotations

import threading
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.repositories.base import InMemoryTable, PostgresTable


class InMemoryAssignmentsRepository(InMemoryTable):
    entity = "assignment"
    key = "assignment_id"

    def __init__(self, assignments: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        super().__init__(assignments, lock=lock)

    def get(self, *, tenant_id: str, assignment_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=assignment_id)

    def list_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        rows = [x for x in self._scan(tenant_id=tenant_id) if x.get("job_id") == job_id]
        rows.sort(key=lambda x: str(x.get("assigned_at", "")))
        return rows

    def list_active_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        return [x for x in self.list_by_job(tenant_id=tenant_id, job_id=job_id) if x.get("status") == "active"]


class PostgresAssignmentsRepository(PostgresTable):
    entity = "assignment"
    key = "assignment_id"
    columns = (
        "assignment_id",
        "tenant_id",
        "job_id",
        "vendor_id",
        "vendor_name",
        "assigned_by",
        "status",
        "notes",
        "assigned_at",
        "revoked_at",
        "revoked_by",
        "completed_at",
        "version",
    )
    immutable_columns = frozenset({"tenant_id", "version", "job_id", "vendor_id", "assigned_at", "assigned_by"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "assignments") -> None:
        super().__init__(tx_runner=tx_runner, table_name=table_name)

    def get(self, *, tenant_id: str, assignment_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=assignment_id)

    def list_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        return self._select(tenant_id=tenant_id, where="job_id = %s", params=[job_id], order_by="assigned_at ASC")

    def list_active_by_job(self, *, tenant_id: str, job_id: str) -> list[dict[str, Any]]:
        return self._select(
            tenant_id=tenant_id,
            where="job_id = %s AND status = 'active'",
            params=[job_id],
            order_by="assigned_at ASC",
        )
