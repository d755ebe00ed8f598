from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any

from dispatch.context import RequestContext
from dispatch.errors import EventPublishError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishOutcome:
    event_id: str
    event_type: str
    published: bool
    elapsed_ms: int = 0
    error: str = ""


class EventPublisher:
    """Hands domain events to the broker within a bounded time.

    ``publish`` raises ``EventPublishError``; ``publish_best_effort`` turns the
    same failure into a ``PublishOutcome`` so callers decide their own fallback.
    ``publish_detached`` does not wait at all and only logs the outcome.
    """

    def __init__(self, *, queue_backend: Any, max_workers: int = 4) -> None:
        self.queue_backend = queue_backend
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="event-publish")
        self._inflight: set[Future[PublishOutcome]] = set()
        self._inflight_lock = threading.Lock()

    def publish(self, event: dict[str, Any], *, timeout_s: float) -> None:
        event_type = str(event.get("event_type", ""))
        if timeout_s <= 0:
            raise EventPublishError(f"no time budget left to publish {event_type}")
        future = self._executor.submit(
            self.queue_backend.enqueue,
            tenant_id=str(event["tenant_id"]),
            topic=event_type,
            event=event,
        )
        try:
            future.result(timeout=timeout_s)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise EventPublishError(f"publish of {event_type} timed out after {timeout_s:.1f}s") from exc
        except Exception as exc:
            raise EventPublishError(f"publish of {event_type} failed: {exc}") from exc

    def publish_best_effort(
        self,
        event: dict[str, Any],
        *,
        timeout_s: float,
        ctx: RequestContext | None = None,
    ) -> PublishOutcome:
        budget = ctx.child_timeout(timeout_s) if ctx is not None else timeout_s
        started = time.monotonic()
        try:
            self.publish(event, timeout_s=budget)
        except EventPublishError as exc:
            return self._log_degraded(event, str(exc), elapsed_ms=int((time.monotonic() - started) * 1000))
        return PublishOutcome(
            event_id=str(event.get("event_id", "")),
            event_type=str(event.get("event_type", "")),
            published=True,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    def publish_detached(
        self,
        event: dict[str, Any],
        *,
        timeout_s: float,
        ctx: RequestContext | None = None,
    ) -> Future[PublishOutcome] | None:
        """Submit ``event`` and return at once.

        The outcome is only logged; a publish that finishes after ``timeout_s``
        counts as degraded.
        """
        budget = ctx.child_timeout(timeout_s) if ctx is not None else timeout_s
        if budget <= 0:
            self._log_degraded(event, f"no time budget left to publish {event.get('event_type', '')}")
            return None
        future = self._executor.submit(self._deliver_detached, event, time.monotonic(), budget)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)
        return future

    def _deliver_detached(self, event: dict[str, Any], started: float, budget: float) -> PublishOutcome:
        event_type = str(event.get("event_type", ""))
        try:
            self.queue_backend.enqueue(tenant_id=str(event["tenant_id"]), topic=event_type, event=event)
        except Exception as exc:
            return self._log_degraded(
                event,
                f"publish of {event_type} failed: {exc}",
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
        elapsed_s = time.monotonic() - started
        if elapsed_s > budget:
            return self._log_degraded(
                event,
                f"publish of {event_type} took {elapsed_s:.1f}s, over its {budget:.1f}s budget",
                elapsed_ms=int(elapsed_s * 1000),
            )
        return PublishOutcome(
            event_id=str(event.get("event_id", "")),
            event_type=event_type,
            published=True,
            elapsed_ms=int(elapsed_s * 1000),
        )

    def _forget(self, future: Future[PublishOutcome]) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _log_degraded(self, event: dict[str, Any], error: str, *, elapsed_ms: int = 0) -> PublishOutcome:
        event_id = str(event.get("event_id", ""))
        event_type = str(event.get("event_type", ""))
        logger.warning(
            "event publish degraded event_type=%s event_id=%s tenant=%s: %s",
            event_type,
            event_id,
            event.get("tenant_id"),
            error,
        )
        return PublishOutcome(
            event_id=event_id,
            event_type=event_type,
            published=False,
            elapsed_ms=elapsed_ms,
            error=error,
        )

    def flush(self, *, timeout_s: float | None = None) -> bool:
        """Wait for detached publishes already submitted; False if some are still running."""
        with self._inflight_lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout_s)
        return not not_done

    def shutdown(self) -> None:
        self.flush(timeout_s=5)
        self._executor.shutdown(wait=False, cancel_futures=True)
