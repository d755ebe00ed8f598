from __future__ import annotations

import threading
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.repositories.base import PostgresTable, paginate


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._audit_logs = audit_logs
        self._lock = lock or threading.RLock()

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._lock:
            self._audit_logs.append(item)
        return dict(item)

    def list_paged(
        self,
        *,
        tenant_id: str,
        entity_name: str = "",
        entity_id: str = "",
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        with self._lock:
            rows = [
                dict(x)
                for x in self._audit_logs
                if x.get("tenant_id") == tenant_id
                and (not entity_name or x.get("entity_name") == entity_name)
                and (not entity_id or x.get("entity_id") == entity_id)
            ]
        rows.sort(key=lambda x: str(x.get("occurred_at", "")), reverse=True)
        return paginate(rows, page=page, page_size=page_size)


class PostgresAuditLogsRepository(PostgresTable):
    entity = "audit_log"
    key = "audit_id"
    columns = (
        "audit_id",
        "tenant_id",
        "entity_name",
        "entity_id",
        "action",
        "changed_by",
        "old_values",
        "new_values",
        "trace_id",
        "occurred_at",
    )
    json_columns = frozenset({"old_values", "new_values"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "audit_logs") -> None:
        super().__init__(tx_runner=tx_runner, table_name=table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(self.columns)})
            VALUES ({", ".join(self._placeholder(name) for name in self.columns)})
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(self._values(item, self.columns)))
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_paged(
        self,
        *,
        tenant_id: str,
        entity_name: str = "",
        entity_id: str = "",
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if entity_name:
            clauses.append("entity_name = %s")
            params.append(entity_name)
        if entity_id:
            clauses.append("entity_id = %s")
            params.append(entity_id)
        where = " AND ".join(clauses)
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        total = self._count(tenant_id=tenant_id, where=where, params=params)
        items = self._select(
            tenant_id=tenant_id,
            where=where,
            params=params,
            order_by="occurred_at DESC",
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return items, total
