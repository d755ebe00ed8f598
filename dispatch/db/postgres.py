from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run one callback per transaction with ``app.current_tenant`` set for RLS."""

    def __init__(self, dsn: str, *, connect: Callable[[str], Any] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect = connect

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")
        connect = self._connect or _import_psycopg().connect
        with connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result


SCHEMA_STATEMENTS: dict[str, str] = {
    "jobs": """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            job_number TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            customer_name TEXT NOT NULL DEFAULT '',
            customer_email TEXT,
            customer_phone TEXT,
            service_address TEXT NOT NULL DEFAULT '',
            service_type TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            priority TEXT NOT NULL,
            scheduled_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,
            assigned_vendor_name TEXT,
            created_by TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            UNIQUE (tenant_id, job_number)
        )
    """,
    "vendors": """
        CREATE TABLE IF NOT EXISTS vendors (
            vendor_id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            contact_email TEXT,
            contact_phone TEXT,
            service_area TEXT,
            specializations JSONB NOT NULL DEFAULT '[]'::jsonb,
            capacity_limit INTEGER NOT NULL CHECK (capacity_limit >= 0),
            current_capacity INTEGER NOT NULL DEFAULT 0
                CHECK (current_capacity >= 0 AND current_capacity <= capacity_limit),
            rating DOUBLE PRECISION,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            version INTEGER NOT NULL DEFAULT 1
        )
    """,
    "assignments": """
        CREATE TABLE IF NOT EXISTS assignments (
            assignment_id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            job_id TEXT NOT NULL REFERENCES jobs(job_id),
            vendor_id TEXT NOT NULL REFERENCES vendors(vendor_id),
            vendor_name TEXT NOT NULL DEFAULT '',
            assigned_by TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            notes TEXT,
            assigned_at TIMESTAMPTZ NOT NULL,
            revoked_at TIMESTAMPTZ,
            revoked_by TEXT,
            completed_at TIMESTAMPTZ,
            version INTEGER NOT NULL DEFAULT 1
        )
    """,
    "ai_recommendations": """
        CREATE TABLE IF NOT EXISTS ai_recommendations (
            recommendation_id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            job_id TEXT NOT NULL REFERENCES jobs(job_id),
            requested_by TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL,
            requested_at TIMESTAMPTZ NOT NULL,
            completed_at TIMESTAMPTZ,
            provider TEXT,
            model_version TEXT,
            latency_ms INTEGER,
            recommended_vendor_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
            reasoning TEXT,
            job_summary TEXT,
            prompt_summary TEXT,
            error_message TEXT,
            version INTEGER NOT NULL DEFAULT 1
        )
    """,
    "audit_logs": """
        CREATE TABLE IF NOT EXISTS audit_logs (
            audit_id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            entity_name TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            action TEXT NOT NULL,
            changed_by TEXT NOT NULL,
            old_values JSONB,
            new_values JSONB,
            trace_id TEXT,
            occurred_at TIMESTAMPTZ NOT NULL
        )
    """,
}

INDEX_STATEMENTS: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_jobs_tenant_status ON jobs(tenant_id, status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_vendors_tenant_active ON vendors(tenant_id, is_active, name)",
    "CREATE INDEX IF NOT EXISTS idx_assignments_job ON assignments(tenant_id, job_id, assigned_at)",
    # At most one active assignment per job, enforced by the database as well.
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_assignments_active_job ON assignments(job_id) WHERE status = 'active'",
    "CREATE INDEX IF NOT EXISTS idx_recommendations_job ON ai_recommendations(tenant_id, job_id, requested_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs(tenant_id, entity_name, entity_id, occurred_at)",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresSchemaManager:
    """Create the dispatch tables and their tenant RLS policies."""

    def __init__(
        self,
        dsn: str,
        *,
        tables: list[str] | tuple[str, ...] | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._connect = connect
        target_tables = list(SCHEMA_STATEMENTS if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        unknown = [name for name in target_tables if name not in SCHEMA_STATEMENTS]
        if unknown:
            raise ValueError(f"unknown tables: {', '.join(unknown)}")
        self._tables = [_validate_identifier(name) for name in target_tables]

    def apply(self, *, enable_rls: bool = True) -> list[str]:
        connect = self._connect or _import_psycopg().connect
        with connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    cur.execute(SCHEMA_STATEMENTS[table])
                for statement in INDEX_STATEMENTS:
                    if any(f" ON {table}(" in statement for table in self._tables):
                        cur.execute(statement)
                if enable_rls:
                    for table in self._tables:
                        policy = f"{table}_tenant_isolation"
                        cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                        cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                        cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                        cur.execute(
                            f"""
                            CREATE POLICY {policy} ON {table}
                            USING ({table}.tenant_id = current_setting('app.current_tenant', true))
                            WITH CHECK ({table}.tenant_id = current_setting('app.current_tenant', true))
                            """
                        )
            conn.commit()
        return list(self._tables)
