from __future__ import annotations

import threading
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.repositories.base import InMemoryTable, PostgresTable, paginate

PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}
STATUS_RANK = {"new": 0, "in_review": 1, "assigned": 2, "in_progress": 3, "completed": 4, "cancelled": 5}
SORT_FIELDS = {"created_at", "priority", "status"}


def format_job_number(*, year: int, sequence: int) -> str:
    return f"JOB-{year}-{sequence:05d}"


def _matches(
    job: dict[str, Any],
    *,
    statuses: list[str] | None,
    priorities: list[str] | None,
    search: str,
    service_type: str,
) -> bool:
    if statuses and job.get("status") not in statuses:
        return False
    if priorities and job.get("priority") not in priorities:
        return False
    if service_type and job.get("service_type") != service_type:
        return False
    if search:
        needle = search.lower()
        haystack = (job.get("title", ""), job.get("customer_name", ""), job.get("job_number", ""))
        if not any(needle in str(value).lower() for value in haystack):
            return False
    return True


def _sort_key(sort_by: str):
    if sort_by == "priority":
        return lambda job: (PRIORITY_RANK.get(str(job.get("priority")), -1), str(job.get("created_at", "")))
    if sort_by == "status":
        return lambda job: (STATUS_RANK.get(str(job.get("status")), -1), str(job.get("created_at", "")))
    return lambda job: str(job.get("created_at", ""))


class InMemoryJobsRepository(InMemoryTable):
    entity = "job"
    key = "job_id"

    def __init__(self, jobs: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        super().__init__(jobs, lock=lock)

    def get(self, *, tenant_id: str, job_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=job_id)

    def next_job_number(self, *, tenant_id: str, year: int) -> str:
        prefix = f"JOB-{year}-"
        with self._lock:
            count = sum(
                1
                for row in self._rows.values()
                if row.get("tenant_id") == tenant_id and str(row.get("job_number", "")).startswith(prefix)
            )
        return format_job_number(year=year, sequence=count + 1)

    def list_paged(
        self,
        *,
        tenant_id: str,
        statuses: list[str] | None = None,
        priorities: list[str] | None = None,
        search: str = "",
        service_type: str = "",
        sort_by: str = "created_at",
        descending: bool = True,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = [
            job
            for job in self._scan(tenant_id=tenant_id)
            if _matches(job, statuses=statuses, priorities=priorities, search=search, service_type=service_type)
        ]
        rows.sort(key=_sort_key(sort_by if sort_by in SORT_FIELDS else "created_at"), reverse=descending)
        return paginate(rows, page=page, page_size=page_size)


class PostgresJobsRepository(PostgresTable):
    """Jobs repository for postgres backend; keeps tenant_id in every query scope."""

    entity = "job"
    key = "job_id"
    columns = (
        "job_id",
        "tenant_id",
        "job_number",
        "title",
        "description",
        "customer_name",
        "customer_email",
        "customer_phone",
        "service_address",
        "service_type",
        "status",
        "priority",
        "scheduled_at",
        "completed_at",
        "cancelled_at",
        "assigned_vendor_name",
        "created_by",
        "created_at",
        "updated_at",
        "version",
    )
    immutable_columns = frozenset({"tenant_id", "version", "created_at", "job_number", "created_by"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "jobs") -> None:
        super().__init__(tx_runner=tx_runner, table_name=table_name)

    def get(self, *, tenant_id: str, job_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=job_id)

    def next_job_number(self, *, tenant_id: str, year: int) -> str:
        count = self._count(tenant_id=tenant_id, where="job_number LIKE %s", params=[f"JOB-{year}-%"])
        return format_job_number(year=year, sequence=count + 1)

    def list_paged(
        self,
        *,
        tenant_id: str,
        statuses: list[str] | None = None,
        priorities: list[str] | None = None,
        search: str = "",
        service_type: str = "",
        sort_by: str = "created_at",
        descending: bool = True,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[dict[str, Any]], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append(list(statuses))
        if priorities:
            clauses.append("priority = ANY(%s)")
            params.append(list(priorities))
        if service_type:
            clauses.append("service_type = %s")
            params.append(service_type)
        if search:
            clauses.append("(title ILIKE %s OR customer_name ILIKE %s OR job_number ILIKE %s)")
            params.extend([f"%{search}%"] * 3)
        where = " AND ".join(clauses)
        direction = "DESC" if descending else "ASC"
        if sort_by == "priority":
            order_by = (
                "CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 WHEN 'high' THEN 2 ELSE 3 END "
                f"{direction}, created_at {direction}"
            )
        elif sort_by == "status":
            order_by = (
                "CASE status WHEN 'new' THEN 0 WHEN 'in_review' THEN 1 WHEN 'assigned' THEN 2 "
                f"WHEN 'in_progress' THEN 3 WHEN 'completed' THEN 4 ELSE 5 END {direction}, created_at {direction}"
            )
        else:
            order_by = f"created_at {direction}"
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        total = self._count(tenant_id=tenant_id, where=where, params=params)
        items = self._select(
            tenant_id=tenant_id,
            where=where,
            params=params,
            order_by=order_by,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return items, total
