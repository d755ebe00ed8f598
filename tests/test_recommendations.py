from __future__ import annotations

import pytest

from conftest import make_job, make_vendor
from dispatch.ai_provider import AIProvider, MockAIProvider
from dispatch.context import RequestContext
from dispatch.errors import PersistenceError, VersionConflictError
from dispatch.settings import DispatchSettings
from dispatch.store import DispatchStore


class DownBroker:
    def __init__(self) -> None:
        self.calls = 0

    def enqueue(self, *, tenant_id, topic, event, delay_ms=0):
        self.calls += 1
        raise ConnectionError("broker unreachable")

    def reset(self) -> None:
        self.calls = 0


class CountingProvider(MockAIProvider):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def _complete(self, context, *, timeout_s):
        self.calls += 1
        return super()._complete(context, timeout_s=timeout_s)


class ExplodingProvider(AIProvider):
    name = "exploding"

    def __init__(self) -> None:
        super().__init__(model_version="x-1", timeout_s=5)

    def _complete(self, context, *, timeout_s):
        raise RuntimeError("model crashed")


def _request(s: DispatchStore, ctx: RequestContext) -> tuple[dict, dict]:
    job = make_job(s, ctx)
    recommendation = s.request_recommendation(ctx, job["job_id"])
    s.publisher.flush(timeout_s=5)
    return job, recommendation


def test_broker_down_fails_recommendation_synchronously(ctx):
    broker = DownBroker()
    s = DispatchStore(settings=DispatchSettings(), queue_backend=broker)
    job = make_job(s, ctx)

    recommendation = s.request_recommendation(ctx, job["job_id"])

    assert recommendation["status"] == "failed"
    assert recommendation["completed_at"] is not None
    assert recommendation["error_message"].startswith("Event broker unavailable:")
    stored = s.recommendations_repo.list_by_job(tenant_id=ctx.tenant_id, job_id=job["job_id"])
    assert [r["status"] for r in stored] == ["failed"]
    s.publisher.flush(timeout_s=5)
    assert broker.calls == 2


def test_job_creation_survives_broker_outage(ctx):
    s = DispatchStore(settings=DispatchSettings(), queue_backend=DownBroker())

    job = make_job(s, ctx)

    assert job["status"] == "new"
    assert s.jobs_repo.get(tenant_id=ctx.tenant_id, job_id=job["job_id"]) is not None


def test_fulfillment_keeps_looking_until_fifth_attempt(fresh_store, ctx, monkeypatch):
    make_vendor(fresh_store, ctx)
    job, recommendation = _request(fresh_store, ctx)
    real_get = fresh_store.recommendations_repo.get
    calls = {"n": 0}

    def _late_get(*, tenant_id, recommendation_id):
        calls["n"] += 1
        if calls["n"] <= 4:
            return None
        return real_get(tenant_id=tenant_id, recommendation_id=recommendation_id)

    monkeypatch.setattr(fresh_store.recommendations_repo, "get", _late_get)

    saved = fresh_store.fulfill_recommendation(
        ctx,
        {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
    )

    assert calls["n"] == 5
    assert saved is not None
    assert saved["status"] == "completed"


def test_fulfillment_gives_up_after_lookup_budget(fresh_store, ctx, monkeypatch):
    job, recommendation = _request(fresh_store, ctx)
    calls = {"n": 0}

    def _never(*, tenant_id, recommendation_id):
        calls["n"] += 1
        return None

    monkeypatch.setattr(fresh_store.recommendations_repo, "get", _never)

    result = fresh_store.fulfill_recommendation(
        ctx,
        {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
    )

    assert result is None
    assert calls["n"] == 5
    assert fresh_store.recommendations[recommendation["recommendation_id"]]["status"] == "pending"


def test_cancelled_context_stops_lookup_loop(fresh_store, ctx, monkeypatch):
    job, recommendation = _request(fresh_store, ctx)
    calls = {"n": 0}

    def _never(*, tenant_id, recommendation_id):
        calls["n"] += 1
        return None

    monkeypatch.setattr(fresh_store.recommendations_repo, "get", _never)
    worker_ctx = RequestContext(tenant_id=ctx.tenant_id)
    worker_ctx.cancel()

    result = fresh_store.fulfill_recommendation(
        worker_ctx,
        {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
    )

    assert result is None
    assert calls["n"] == 1


def test_fulfillment_ranks_matching_vendor_first(fresh_store, ctx):
    plumber = make_vendor(fresh_store, ctx, name="Pipe Pros", specializations=["plumbing"], rating=4.0)
    electrician = make_vendor(fresh_store, ctx, name="Sparky", specializations=["electrical"], rating=4.9)
    make_vendor(fresh_store, ctx, name="Retired Co", is_active=False)
    job, recommendation = _request(fresh_store, ctx)

    saved = fresh_store.fulfill_recommendation(
        ctx,
        {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
    )

    assert saved["status"] == "completed"
    assert saved["provider"] == "mock"
    assert saved["recommended_vendor_ids"] == [plumber["vendor_id"], electrician["vendor_id"]]
    assert saved["prompt_summary"] == "Job: Leaking kitchen sink, Type: plumbing, Vendors evaluated: 2"
    assert saved["job_summary"].startswith("[MOCK]")
    assert saved["error_message"] is None
    assert fresh_store.queue_backend.pending_count(tenant_id=ctx.tenant_id, topic="ai_recommendation.generated") == 1


def test_redelivered_request_for_terminal_recommendation_is_skipped(ctx):
    provider = CountingProvider()
    s = DispatchStore(settings=DispatchSettings(recommendation_lookup_delay_ms=0), ai_provider=provider)
    make_vendor(s, ctx)
    job, recommendation = _request(s, ctx)
    payload = {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]}

    first = s.fulfill_recommendation(ctx, payload)
    second = s.fulfill_recommendation(ctx, payload)

    assert provider.calls == 1
    assert first["status"] == "completed"
    assert second["status"] == "completed"
    assert second["version"] == first["version"]


def test_provider_failure_becomes_failed_recommendation(ctx):
    s = DispatchStore(settings=DispatchSettings(recommendation_lookup_delay_ms=0), ai_provider=ExplodingProvider())
    job, recommendation = _request(s, ctx)

    saved = s.fulfill_recommendation(
        ctx,
        {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
    )

    assert saved["status"] == "failed"
    assert saved["error_message"] == "model crashed"
    assert saved["recommended_vendor_ids"] == []
    assert saved["completed_at"] is not None


def test_save_failure_raises_persistence_error(fresh_store, ctx, monkeypatch):
    job, recommendation = _request(fresh_store, ctx)

    def _broken_update(*, tenant_id, row, expected_version):
        raise OSError("connection reset")

    monkeypatch.setattr(fresh_store.recommendations_repo, "update", _broken_update)

    with pytest.raises(PersistenceError):
        fresh_store.fulfill_recommendation(
            ctx,
            {"recommendation_id": recommendation["recommendation_id"], "job_id": job["job_id"]},
        )


def test_concurrently_finalized_recommendation_keeps_stored_result(fresh_store, ctx, monkeypatch):
    job, recommendation = _request(fresh_store, ctx)
    rec_id = recommendation["recommendation_id"]

    def _raced_update(*, tenant_id, row, expected_version):
        fresh_store.recommendations[rec_id]["status"] = "failed"
        fresh_store.recommendations[rec_id]["version"] = expected_version + 1
        raise VersionConflictError(entity="ai_recommendation", entity_id=rec_id, expected_version=expected_version)

    monkeypatch.setattr(fresh_store.recommendations_repo, "update", _raced_update)

    result = fresh_store.fulfill_recommendation(ctx, {"recommendation_id": rec_id, "job_id": job["job_id"]})

    assert result["status"] == "failed"


def test_job_detail_exposes_latest_recommendation(fresh_store, ctx):
    job, recommendation = _request(fresh_store, ctx)

    detail = fresh_store.get_job(ctx, job["job_id"])

    assert detail["latest_recommendation"]["recommendation_id"] == recommendation["recommendation_id"]
    assert detail["latest_recommendation"]["status"] == "pending"
    assert detail["assignments"] == []
