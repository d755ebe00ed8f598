from __future__ import annotations

import json

import pytest

from dispatch import realtime
from dispatch.realtime import (
    InMemoryRealtimeHub,
    RedisRealtimeNotifier,
    create_realtime_notifier_from_env,
    job_group,
    tenant_group,
)


class FakePubSubRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.lists: dict[str, list[str]] = {}

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:] if end == -1 else items[start : end + 1]

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start : end + 1]


class BrokenRedis(FakePubSubRedis):
    def publish(self, channel, message):
        raise ConnectionError("redis down")


def test_job_notification_reaches_job_and_tenant_groups():
    hub = InMemoryRealtimeHub()
    job_inbox = hub.subscribe(job_group("job_1"))
    tenant_inbox = hub.subscribe(tenant_group("tenant_a"))

    hub.notify_job("job_1", "tenant_a", "AIRecommendationReady", {"job_id": "job_1"})

    assert job_inbox.get_nowait()["event"] == "AIRecommendationReady"
    tenant_message = tenant_inbox.get_nowait()
    assert tenant_message["group"] == "tenant:tenant_a"
    assert tenant_message["payload"] == {"job_id": "job_1"}


def test_recent_buffer_is_bounded():
    hub = InMemoryRealtimeHub(recent_limit=3)
    for i in range(5):
        hub.notify_tenant("tenant_a", "JobAssigned", {"n": i})

    recent = hub.recent(tenant_group("tenant_a"))
    assert [m["payload"]["n"] for m in recent] == [2, 3, 4]
    assert [m["payload"]["n"] for m in hub.recent(tenant_group("tenant_a"), limit=1)] == [4]


def test_unsubscribed_inbox_receives_nothing():
    hub = InMemoryRealtimeHub()
    inbox = hub.subscribe(tenant_group("tenant_a"))
    hub.unsubscribe(tenant_group("tenant_a"), inbox)

    hub.notify_tenant("tenant_a", "JobAssigned", {})

    assert inbox.empty()


def test_redis_notifier_publishes_on_prefixed_channel():
    client = FakePubSubRedis()
    notifier = RedisRealtimeNotifier(dsn="", channel_prefix="fsd:rt", recent_limit=2, client=client)

    notifier.notify_tenant("tenant_a", "JobAssigned", {"job_id": "job_1"})
    notifier.notify_tenant("tenant_a", "JobAssigned", {"job_id": "job_2"})
    notifier.notify_tenant("tenant_a", "JobAssigned", {"job_id": "job_3"})

    channel, raw = client.published[0]
    assert channel == "fsd:rt:tenant:tenant_a"
    assert json.loads(raw)["event"] == "JobAssigned"
    assert [m["payload"]["job_id"] for m in notifier.recent(tenant_group("tenant_a"))] == ["job_2", "job_3"]


def test_delivery_failure_is_logged_not_raised():
    notifier = RedisRealtimeNotifier(dsn="", client=BrokenRedis())
    assert notifier.send(tenant_group("tenant_a"), "JobAssigned", {}) is False


def test_realtime_factory(monkeypatch):
    assert isinstance(create_realtime_notifier_from_env({}), InMemoryRealtimeHub)

    class FakeRedisModule:
        class Redis:
            @staticmethod
            def from_url(url, decode_responses=True):
                return FakePubSubRedis()

    monkeypatch.setattr(realtime, "_import_redis", lambda: FakeRedisModule)
    notifier = create_realtime_notifier_from_env({"DISPATCH_REALTIME_BACKEND": "redis", "REDIS_DSN": "redis://x"})
    assert isinstance(notifier, RedisRealtimeNotifier)

    with pytest.raises(RuntimeError, match="unsupported realtime backend"):
        create_realtime_notifier_from_env({"DISPATCH_REALTIME_BACKEND": "signalr"})


def test_hub_forgets_least_recently_written_group():
    hub = InMemoryRealtimeHub(max_groups=2)
    hub.notify_tenant("tenant_a", "JobAssigned", {"n": 1})
    hub.send(job_group("job_1"), "AIRecommendationReady", {"n": 2})
    hub.notify_tenant("tenant_a", "JobAssigned", {"n": 3})
    hub.send(job_group("job_2"), "AIRecommendationReady", {"n": 4})

    assert hub.recent(job_group("job_1")) == []
    assert [m["payload"]["n"] for m in hub.recent(tenant_group("tenant_a"))] == [1, 3]
    assert [m["payload"]["n"] for m in hub.recent(job_group("job_2"))] == [4]
