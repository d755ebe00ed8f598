from __future__ import annotations

import threading
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.repositories.base import InMemoryTable, PostgresTable, paginate


def has_spare_capacity(vendor: dict[str, Any]) -> bool:
    return int(vendor.get("current_capacity", 0)) < int(vendor.get("capacity_limit", 0))


def _candidate_order(vendor: dict[str, Any]) -> tuple[float, str]:
    return (-float(vendor.get("rating") or 0.0), str(vendor.get("name", "")).lower())


class InMemoryVendorsRepository(InMemoryTable):
    entity = "vendor"
    key = "vendor_id"

    def __init__(self, vendors: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        super().__init__(vendors, lock=lock)

    def get(self, *, tenant_id: str, vendor_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=vendor_id)

    def list_paged(
        self,
        *,
        tenant_id: str,
        is_active: bool | None = None,
        has_capacity: bool | None = None,
        service_type: str = "",
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = []
        for vendor in self._scan(tenant_id=tenant_id):
            if is_active is not None and bool(vendor.get("is_active")) != is_active:
                continue
            if has_capacity is not None and has_spare_capacity(vendor) != has_capacity:
                continue
            if service_type and service_type not in (vendor.get("specializations") or []):
                continue
            rows.append(vendor)
        rows.sort(key=lambda v: str(v.get("name", "")).lower())
        return paginate(rows, page=page, page_size=page_size)

    def list_candidates(self, *, tenant_id: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = [v for v in self._scan(tenant_id=tenant_id) if v.get("is_active") and has_spare_capacity(v)]
        rows.sort(key=_candidate_order)
        return rows[: max(0, int(limit))]


class PostgresVendorsRepository(PostgresTable):
    entity = "vendor"
    key = "vendor_id"
    columns = (
        "vendor_id",
        "tenant_id",
        "name",
        "contact_email",
        "contact_phone",
        "service_area",
        "specializations",
        "capacity_limit",
        "current_capacity",
        "rating",
        "is_active",
        "created_at",
        "updated_at",
        "version",
    )
    json_columns = frozenset({"specializations"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "vendors") -> None:
        super().__init__(tx_runner=tx_runner, table_name=table_name)

    def get(self, *, tenant_id: str, vendor_id: str) -> dict[str, Any] | None:
        return self._get(tenant_id=tenant_id, row_id=vendor_id)

    def list_paged(
        self,
        *,
        tenant_id: str,
        is_active: bool | None = None,
        has_capacity: bool | None = None,
        service_type: str = "",
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        if has_capacity is True:
            clauses.append("current_capacity < capacity_limit")
        elif has_capacity is False:
            clauses.append("current_capacity >= capacity_limit")
        if service_type:
            clauses.append("specializations ? %s")
            params.append(service_type)
        where = " AND ".join(clauses)
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        total = self._count(tenant_id=tenant_id, where=where, params=params)
        items = self._select(
            tenant_id=tenant_id,
            where=where,
            params=params,
            order_by="lower(name) ASC",
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return items, total

    def list_candidates(self, *, tenant_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self._select(
            tenant_id=tenant_id,
            where="is_active = TRUE AND current_capacity < capacity_limit",
            order_by="rating DESC NULLS LAST, lower(name) ASC",
            limit=max(0, int(limit)),
        )
