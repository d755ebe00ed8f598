from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from dispatch.events import ALL_TOPICS


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    return _as_bool(raw)


def _env_csv(env: Mapping[str, str], name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    values = tuple(x.strip() for x in raw.split(",") if x.strip())
    return values or default


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("DISPATCH_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class DispatchSettings:
    request_publish_timeout_s: float = 8.0
    notify_publish_timeout_s: float = 10.0
    recommendation_lookup_attempts: int = 5
    recommendation_lookup_delay_ms: int = 500
    recommendation_candidate_limit: int = 20
    capacity_update_attempts: int = 3
    worker_max_retries: int = 3
    worker_retry_backoff_base_ms: int = 1000
    worker_retry_backoff_max_ms: int = 30000
    worker_topics: tuple[str, ...] = field(default_factory=lambda: tuple(ALL_TOPICS))
    worker_tenant_burst_limit: int = 1
    worker_max_messages_per_iteration: int = 20
    worker_poll_interval_ms: int = 200
    job_list_page_size: int = 25
    vendor_list_page_size: int = 50

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DispatchSettings:
        env = os.environ if environ is None else environ
        return cls(
            request_publish_timeout_s=_env_float(env, "EVENT_PUBLISH_REQUEST_TIMEOUT_S", default=8.0),
            notify_publish_timeout_s=_env_float(env, "EVENT_PUBLISH_NOTIFY_TIMEOUT_S", default=10.0),
            recommendation_lookup_attempts=_env_int(
                env,
                "RECOMMENDATION_LOOKUP_ATTEMPTS",
                default=5,
                minimum=1,
            ),
            recommendation_lookup_delay_ms=_env_int(env, "RECOMMENDATION_LOOKUP_DELAY_MS", default=500),
            recommendation_candidate_limit=_env_int(
                env,
                "RECOMMENDATION_CANDIDATE_LIMIT",
                default=20,
                minimum=1,
            ),
            capacity_update_attempts=_env_int(env, "CAPACITY_UPDATE_ATTEMPTS", default=3, minimum=1),
            worker_max_retries=_env_int(env, "WORKER_MAX_RETRIES", default=3),
            worker_retry_backoff_base_ms=_env_int(env, "WORKER_RETRY_BACKOFF_BASE_MS", default=1000),
            worker_retry_backoff_max_ms=_env_int(env, "WORKER_RETRY_BACKOFF_MAX_MS", default=30000),
            worker_topics=_env_csv(env, "WORKER_TOPICS", default=tuple(ALL_TOPICS)),
            worker_tenant_burst_limit=_env_int(env, "WORKER_TENANT_BURST_LIMIT", default=1, minimum=1),
            worker_max_messages_per_iteration=_env_int(
                env,
                "WORKER_MAX_MESSAGES_PER_ITERATION",
                default=20,
                minimum=1,
            ),
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            job_list_page_size=_env_int(env, "JOB_LIST_PAGE_SIZE", default=25, minimum=1),
            vendor_list_page_size=_env_int(env, "VENDOR_LIST_PAGE_SIZE", default=50, minimum=1),
        )
