from __future__ import annotations

from dispatch.queue_backend import InMemoryQueueBackend
from dispatch.settings import DispatchSettings
from dispatch.store import DispatchStore
from dispatch.worker_runtime import WorkerRuntime, create_worker_runtime_from_env


class RecordingConsumers:
    def __init__(self, *, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.seen: list[tuple[str, str]] = []

    def handler_for(self, event_type):
        if event_type != "job.created":
            return None

        def _handle(event):
            self.seen.append((event["tenant_id"], event["payload"]["job_id"]))
            if len(self.seen) <= self.fail_times:
                raise RuntimeError("transient failure")

        return _handle


def _runtime(consumers, q, **overrides) -> WorkerRuntime:
    options = {
        "topics": ["job.created"],
        "tenant_burst_limit": 1,
        "max_messages_per_iteration": 20,
        "max_retries": 2,
        "retry_backoff_base_ms": 0,
        "retry_backoff_max_ms": 0,
    }
    options.update(overrides)
    return WorkerRuntime(consumers=consumers, queue_backend=q, **options)


def _enqueue(q, tenant_id: str, job_id: str, topic: str = "job.created") -> None:
    q.enqueue(tenant_id=tenant_id, topic=topic, event={"tenant_id": tenant_id, "payload": {"job_id": job_id}})


def test_worker_runtime_processes_multiple_tenants_fairly():
    q = InMemoryQueueBackend()
    consumers = RecordingConsumers()
    rt = _runtime(consumers, q, max_messages_per_iteration=2)
    _enqueue(q, "tenant_a", "job_a1")
    _enqueue(q, "tenant_a", "job_a2")
    _enqueue(q, "tenant_b", "job_b1")

    result = rt.run_once()

    assert result["processed"] == 2
    assert result["succeeded"] == 2
    assert consumers.seen == [("tenant_a", "job_a1"), ("tenant_b", "job_b1")]
    assert q.pending_count(tenant_id="tenant_a", topic="job.created") == 1


def test_failed_message_is_retried_then_succeeds():
    q = InMemoryQueueBackend()
    consumers = RecordingConsumers(fail_times=1)
    _enqueue(q, "tenant_a", "job_1")

    result = _runtime(consumers, q).run_once()

    assert result["processed"] == 2
    assert result["retrying"] == 1
    assert result["requeued"] == 1
    assert result["succeeded"] == 1
    assert q.pending_count(tenant_id="tenant_a", topic="job.created") == 0


def test_message_is_discarded_after_max_retries():
    q = InMemoryQueueBackend()
    consumers = RecordingConsumers(fail_times=99)
    _enqueue(q, "tenant_a", "job_1")

    result = _runtime(consumers, q).run_once()

    assert result["processed"] == 3
    assert result["retrying"] == 2
    assert result["discarded"] == 1
    assert result["failed"] == 1
    assert q.pending_count(tenant_id="tenant_a", topic="job.created") == 0


def test_unknown_topic_is_acked_and_counted_failed():
    q = InMemoryQueueBackend()
    _enqueue(q, "tenant_a", "job_1", topic="job.archived")

    result = _runtime(RecordingConsumers(), q, topics=["job.archived"]).run_once()

    assert result["acked"] == 1
    assert result["failed"] == 1
    assert q.pending_count(tenant_id="tenant_a", topic="job.archived") == 0


def test_retry_delay_grows_exponentially_and_is_capped():
    rt = _runtime(RecordingConsumers(), InMemoryQueueBackend(), retry_backoff_base_ms=1000, retry_backoff_max_ms=30000)
    assert rt.retry_delay_ms(0) == 1000
    assert rt.retry_delay_ms(1) == 2000
    assert rt.retry_delay_ms(3) == 8000
    assert rt.retry_delay_ms(10) == 30000


def test_backoff_delays_redelivery():
    q = InMemoryQueueBackend()
    consumers = RecordingConsumers(fail_times=1)
    _enqueue(q, "tenant_a", "job_1")

    result = _runtime(consumers, q, retry_backoff_base_ms=60_000, retry_backoff_max_ms=60_000).run_once()

    assert result["processed"] == 1
    assert result["retrying"] == 1
    assert q.pending_count(tenant_id="tenant_a", topic="job.created") == 1


def test_worker_runtime_reads_config_from_env():
    s = DispatchStore(settings=DispatchSettings())
    rt = create_worker_runtime_from_env(
        store=s,
        environ={
            "WORKER_MAX_RETRIES": "5",
            "WORKER_RETRY_BACKOFF_BASE_MS": "2000",
            "WORKER_RETRY_BACKOFF_MAX_MS": "45000",
            "WORKER_TOPICS": "job.created,job.assigned",
            "WORKER_TENANT_BURST_LIMIT": "3",
        },
    )
    assert rt.max_retries == 5
    assert rt.retry_backoff_base_ms == 2000
    assert rt.retry_backoff_max_ms == 45000
    assert rt.topics == ["job.created", "job.assigned"]
    assert rt.tenant_burst_limit == 3
    assert rt.queue_backend is s.queue_backend
