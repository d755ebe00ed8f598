#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dispatch.db.postgres import PostgresSchemaManager


def main() -> int:
    parser = argparse.ArgumentParser(description="Create dispatch tables, indexes and tenant RLS policies")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table names; default creates every dispatch table",
    )
    parser.add_argument("--skip-rls", action="store_true", help="create tables without row level security")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables: list[str] | None = None
    if args.tables.strip():
        tables = [x.strip() for x in args.tables.split(",") if x.strip()]

    manager = PostgresSchemaManager(dsn, tables=tables)
    applied = manager.apply(enable_rls=not args.skip_rls)
    print(
        json.dumps(
            {"applied_tables": applied, "count": len(applied), "rls": not args.skip_rls},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
