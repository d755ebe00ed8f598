from __future__ import annotations

import json

import pytest

from dispatch.db.postgres import PostgresSchemaManager, PostgresTxRunner
from dispatch.errors import VersionConflictError
from dispatch.repositories import PostgresVendorsRepository
from dispatch.repositories.base import PostgresTable


class FakeCursor:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))

    def fetchall(self):
        return list(self.conn.rows)

    def fetchone(self):
        return self.conn.rows[0] if self.conn.rows else None


class FakeConnection:
    def __init__(self, *, rows=None, rowcount: int = 1) -> None:
        self.rows = rows or []
        self.rowcount = rowcount
        self.executed: list[tuple[str, object]] = []
        self.commits = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1


def _vendor_row() -> dict:
    return {
        "vendor_id": "v1",
        "name": "Acme",
        "contact_email": None,
        "contact_phone": None,
        "service_area": "North",
        "specializations": ["plumbing"],
        "capacity_limit": 2,
        "current_capacity": 0,
        "rating": 4.5,
        "is_active": True,
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }


def test_tx_runner_sets_tenant_before_callback():
    conn = FakeConnection()
    runner = PostgresTxRunner("postgresql://x", connect=lambda dsn: conn)

    result = runner.run_in_tx(tenant_id="tenant_a", fn=lambda c: "done")

    assert result == "done"
    assert conn.executed[0] == ("SELECT set_config('app.current_tenant', %s, true)", ("tenant_a",))
    assert conn.commits == 1


def test_tx_runner_rejects_blank_inputs():
    with pytest.raises(ValueError):
        PostgresTxRunner("  ")
    runner = PostgresTxRunner("postgresql://x", connect=lambda dsn: FakeConnection())
    with pytest.raises(ValueError):
        runner.run_in_tx(tenant_id=" ", fn=lambda c: None)


def test_table_name_must_be_identifier():
    runner = PostgresTxRunner("postgresql://x", connect=lambda dsn: FakeConnection())
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresTable(tx_runner=runner, table_name="vendors; DROP TABLE jobs")


def test_vendor_create_serializes_jsonb_columns():
    conn = FakeConnection()
    repo = PostgresVendorsRepository(tx_runner=PostgresTxRunner("postgresql://x", connect=lambda dsn: conn))

    created = repo.create(tenant_id="tenant_a", row=_vendor_row())

    sql, params = conn.executed[-1]
    assert sql.startswith("INSERT INTO vendors")
    assert "%s::jsonb" in sql
    assert json.loads(params[6]) == ["plumbing"]
    assert created["tenant_id"] == "tenant_a"
    assert created["version"] == 1


def test_vendor_get_decodes_row():
    row = _vendor_row()
    stored = tuple(
        json.dumps(row[name]) if name == "specializations" else row.get(name, "tenant_a")
        for name in PostgresVendorsRepository.columns
        if name != "version"
    ) + (3,)
    conn = FakeConnection(rows=[stored])
    repo = PostgresVendorsRepository(tx_runner=PostgresTxRunner("postgresql://x", connect=lambda dsn: conn))

    vendor = repo.get(tenant_id="tenant_a", vendor_id="v1")

    assert vendor["specializations"] == ["plumbing"]
    assert vendor["version"] == 3
    sql, params = conn.executed[-1]
    assert "WHERE tenant_id = %s AND vendor_id = %s" in sql
    assert params == ("tenant_a", "v1", 1, 0)


def test_vendor_update_with_stale_version_conflicts():
    conn = FakeConnection(rowcount=0)
    repo = PostgresVendorsRepository(tx_runner=PostgresTxRunner("postgresql://x", connect=lambda dsn: conn))

    with pytest.raises(VersionConflictError):
        repo.update(tenant_id="tenant_a", row=_vendor_row(), expected_version=4)

    sql, params = conn.executed[-1]
    assert "version = version + 1" in sql
    assert params[-3:] == ("tenant_a", "v1", 4)


def test_vendor_update_bumps_version():
    conn = FakeConnection(rowcount=1)
    repo = PostgresVendorsRepository(tx_runner=PostgresTxRunner("postgresql://x", connect=lambda dsn: conn))

    updated = repo.update(tenant_id="tenant_a", row=_vendor_row(), expected_version=1)

    assert updated["version"] == 2
    sql, _ = conn.executed[-1]
    assert "created_at =" not in sql


def test_schema_manager_applies_tables_indexes_and_policies():
    conn = FakeConnection()
    manager = PostgresSchemaManager("postgresql://x", tables=["jobs", "assignments"], connect=lambda dsn: conn)

    applied = manager.apply()

    statements = [sql for sql, _ in conn.executed]
    assert applied == ["jobs", "assignments"]
    assert any(s.startswith("CREATE TABLE IF NOT EXISTS jobs") for s in statements)
    assert any("uq_assignments_active_job" in s for s in statements)
    assert not any("idx_vendors_tenant_active" in s for s in statements)
    assert "ALTER TABLE jobs FORCE ROW LEVEL SECURITY" in statements
    assert any(s.startswith("CREATE POLICY assignments_tenant_isolation") for s in statements)
    assert conn.commits == 1


def test_schema_manager_can_skip_rls():
    conn = FakeConnection()
    PostgresSchemaManager("postgresql://x", tables=["vendors"], connect=lambda dsn: conn).apply(enable_rls=False)
    assert not any("ROW LEVEL SECURITY" in sql for sql, _ in conn.executed)


def test_schema_manager_rejects_unknown_tables():
    with pytest.raises(ValueError, match="unknown tables: invoices"):
        PostgresSchemaManager("postgresql://x", tables=["jobs", "invoices"])
    with pytest.raises(ValueError, match="tables must not be empty"):
        PostgresSchemaManager("postgresql://x", tables=[])
