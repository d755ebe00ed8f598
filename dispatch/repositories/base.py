from __future__ import annotations

import json
import re
import threading
from datetime import datetime
from typing import Any

from dispatch.db.postgres import PostgresTxRunner
from dispatch.errors import VersionConflictError


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def paginate(rows: list[dict[str, Any]], *, page: int, page_size: int) -> tuple[list[dict[str, Any]], int]:
    page = max(1, int(page))
    page_size = max(1, int(page_size))
    start = (page - 1) * page_size
    return rows[start : start + page_size], len(rows)


class InMemoryTable:
    """Dict-backed rows keyed by id; every update is checked against ``version``."""

    entity = "row"
    key = "id"

    def __init__(self, rows: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._rows = rows
        self._lock = lock or threading.RLock()

    def create(self, *, tenant_id: str, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        item["tenant_id"] = tenant_id
        item.setdefault("version", 1)
        row_id = str(item[self.key])
        with self._lock:
            if row_id in self._rows:
                raise ValueError(f"{self.entity} {row_id} already exists")
            self._rows[row_id] = item
        return dict(item)

    def _get(self, *, tenant_id: str, row_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(row_id)
            if row is None or row.get("tenant_id") != tenant_id:
                return None
            return dict(row)

    def update(self, *, tenant_id: str, row: dict[str, Any], expected_version: int) -> dict[str, Any]:
        row_id = str(row[self.key])
        with self._lock:
            current = self._rows.get(row_id)
            if current is None or current.get("tenant_id") != tenant_id:
                raise VersionConflictError(entity=self.entity, entity_id=row_id, expected_version=expected_version)
            if int(current.get("version", 0)) != int(expected_version):
                raise VersionConflictError(entity=self.entity, entity_id=row_id, expected_version=expected_version)
            item = dict(row)
            item["tenant_id"] = tenant_id
            item["version"] = int(expected_version) + 1
            self._rows[row_id] = item
            return dict(item)

    def _scan(self, *, tenant_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._rows.values() if x.get("tenant_id") == tenant_id]


def _to_db(value: Any, *, is_json: bool) -> Any:
    if is_json:
        return json.dumps(value, ensure_ascii=True, sort_keys=True)
    return value


def _from_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class PostgresTable:
    """Column-mapped access to one tenant-scoped table.

    Subclasses declare ``columns`` in SELECT order; ``json_columns`` are stored as
    jsonb. ``update`` bumps ``version`` only when the stored version still matches.
    """

    entity = "row"
    key = "id"
    columns: tuple[str, ...] = ()
    json_columns: frozenset[str] = frozenset()
    immutable_columns: frozenset[str] = frozenset({"tenant_id", "version", "created_at"})

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _row_to_dict(self, row: Any) -> dict[str, Any]:
        item = {name: _from_db(value) for name, value in zip(self.columns, row)}
        for name in self.json_columns:
            if isinstance(item.get(name), str):
                item[name] = json.loads(item[name])
        return item

    def _values(self, item: dict[str, Any], names: list[str] | tuple[str, ...]) -> list[Any]:
        return [_to_db(item.get(name), is_json=name in self.json_columns) for name in names]

    def _placeholder(self, name: str) -> str:
        return "%s::jsonb" if name in self.json_columns else "%s"

    def create(self, *, tenant_id: str, row: dict[str, Any]) -> dict[str, Any]:
        item = dict(row)
        item["tenant_id"] = tenant_id
        item.setdefault("version", 1)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(self.columns)})
            VALUES ({", ".join(self._placeholder(name) for name in self.columns)})
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(self._values(item, self.columns)))
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _get(self, *, tenant_id: str, row_id: str) -> dict[str, Any] | None:
        rows = self._select(
            tenant_id=tenant_id,
            where=f"{self.key} = %s",
            params=[row_id],
            limit=1,
        )
        return rows[0] if rows else None

    def update(self, *, tenant_id: str, row: dict[str, Any], expected_version: int) -> dict[str, Any]:
        item = dict(row)
        item["tenant_id"] = tenant_id
        mutable = [name for name in self.columns if name != self.key and name not in self.immutable_columns]
        assignments = ", ".join(f"{name} = {self._placeholder(name)}" for name in mutable)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}, version = version + 1
            WHERE tenant_id = %s AND {self.key} = %s AND version = %s
        """
        row_id = str(item[self.key])

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, (*self._values(item, mutable), tenant_id, row_id, int(expected_version)))
                if cur.rowcount != 1:
                    raise VersionConflictError(
                        entity=self.entity,
                        entity_id=row_id,
                        expected_version=expected_version,
                    )
            item["version"] = int(expected_version) + 1
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _select(
        self,
        *,
        tenant_id: str,
        where: str = "",
        params: list[Any] | None = None,
        order_by: str = "",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(self.columns)} FROM {self._table_name} WHERE tenant_id = %s"
        args: list[Any] = [tenant_id]
        if where:
            sql += f" AND {where}"
            args.extend(params or [])
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT %s OFFSET %s"
            args.extend([int(limit), int(offset)])

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(args))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _count(self, *, tenant_id: str, where: str = "", params: list[Any] | None = None) -> int:
        sql = f"SELECT COUNT(1) FROM {self._table_name} WHERE tenant_id = %s"
        args: list[Any] = [tenant_id]
        if where:
            sql += f" AND {where}"
            args.extend(params or [])

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(args))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
