#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dispatch.store import store
from dispatch.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident dispatch worker that consumes broker events.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--until-idle",
        action="store_true",
        help="Drain every topic once, including follow-up events, then exit.",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    runtime = create_worker_runtime_from_env(store=store)
    try:
        if args.until_idle:
            stats = runtime.run_until_idle()
        elif args.iterations > 0:
            stats = runtime.run_forever(stop_after_iterations=args.iterations)
        else:
            stats = runtime.run_forever(stop_after_iterations=None)
    finally:
        store.publisher.shutdown()
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
