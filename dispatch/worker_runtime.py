from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from dispatch.consumers import EventConsumers
from dispatch.settings import DispatchSettings

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0
    discarded: int = 0

    def add(self, other: WorkerRunStats) -> None:
        for name in self.as_dict():
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "acked": self.acked,
            "requeued": self.requeued,
            "discarded": self.discarded,
        }


class WorkerRuntime:
    """Resident loop that feeds broker messages to the event consumers.

    Tenants are visited round-robin per topic, ``tenant_burst_limit`` messages
    at a time. A handler exception nacks the message with exponential backoff;
    after ``max_retries`` redeliveries the message is discarded.
    """

    def __init__(
        self,
        *,
        consumers: EventConsumers,
        queue_backend: Any,
        topics: list[str] | tuple[str, ...],
        tenant_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
        max_retries: int = 3,
        retry_backoff_base_ms: int = 1000,
        retry_backoff_max_ms: int = 30000,
    ) -> None:
        self.consumers = consumers
        self.queue_backend = queue_backend
        self.topics = list(topics)
        self.tenant_burst_limit = max(1, int(tenant_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.max_retries = max(0, int(max_retries))
        self.retry_backoff_base_ms = max(0, int(retry_backoff_base_ms))
        self.retry_backoff_max_ms = max(0, int(retry_backoff_max_ms))

    def retry_delay_ms(self, attempt: int) -> int:
        return min(self.retry_backoff_max_ms, self.retry_backoff_base_ms * (2 ** max(0, attempt)))

    def _process_message(self, *, topic: str, tenant_id: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(tenant_id=tenant_id, topic=topic)
        if msg is None:
            return False
        stats.processed += 1
        handler = self.consumers.handler_for(topic)
        if handler is None:
            logger.warning("no consumer registered for topic %s; acking message %s", topic, msg.message_id)
            self.queue_backend.ack(tenant_id=tenant_id, message_id=msg.message_id)
            stats.acked += 1
            stats.failed += 1
            return True

        try:
            handler(msg.event)
        except Exception:
            if msg.attempt >= self.max_retries:
                logger.exception(
                    "message %s on %s dead-lettered after %d attempts tenant=%s",
                    msg.message_id,
                    topic,
                    msg.attempt + 1,
                    tenant_id,
                )
                self.queue_backend.nack(tenant_id=tenant_id, message_id=msg.message_id, requeue=False)
                stats.discarded += 1
                stats.failed += 1
                return True
            delay_ms = self.retry_delay_ms(msg.attempt)
            logger.warning(
                "handler for %s failed on message %s (attempt %d); retrying in %dms",
                topic,
                msg.message_id,
                msg.attempt + 1,
                delay_ms,
                exc_info=True,
            )
            self.queue_backend.nack(
                tenant_id=tenant_id,
                message_id=msg.message_id,
                requeue=True,
                delay_ms=delay_ms,
            )
            stats.requeued += 1
            stats.retrying += 1
            return True

        self.queue_backend.ack(tenant_id=tenant_id, message_id=msg.message_id)
        stats.acked += 1
        stats.succeeded += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        for topic in self.topics:
            while stats.processed < self.max_messages_per_iteration:
                tenants = self.queue_backend.list_tenants(topic=topic)
                if not tenants:
                    break
                progressed = False
                for tenant_id in tenants:
                    for _ in range(self.tenant_burst_limit):
                        if stats.processed >= self.max_messages_per_iteration:
                            break
                        handled = self._process_message(topic=topic, tenant_id=tenant_id, stats=stats)
                        progressed = progressed or handled
                        if not handled:
                            break
                if not progressed:
                    break
        return stats.as_dict()

    def run_until_idle(self, *, max_iterations: int = 50) -> dict[str, int]:
        """Drain every topic, including messages produced by handlers along the way."""
        aggregate = WorkerRunStats()
        for _ in range(max(1, max_iterations)):
            current = WorkerRunStats(**self.run_once())
            aggregate.add(current)
            if current.processed == 0:
                break
        return aggregate.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = WorkerRunStats(**self.run_once())
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current.processed == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    settings = DispatchSettings.from_env(environ) if environ is not None else store.settings
    return WorkerRuntime(
        consumers=EventConsumers(store=store),
        queue_backend=queue_backend if queue_backend is not None else store.queue_backend,
        topics=settings.worker_topics,
        tenant_burst_limit=settings.worker_tenant_burst_limit,
        max_messages_per_iteration=settings.worker_max_messages_per_iteration,
        poll_interval_ms=settings.worker_poll_interval_ms,
        max_retries=settings.worker_max_retries,
        retry_backoff_base_ms=settings.worker_retry_backoff_base_ms,
        retry_backoff_max_ms=settings.worker_retry_backoff_max_ms,
    )
