from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass
class BrokerMessage:
    message_id: str
    tenant_id: str
    topic: str
    event: dict[str, Any]
    attempt: int = 0
    available_at_ms: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class InMemoryQueueBackend:
    """Process-local broker; messages are partitioned by (tenant, topic)."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._pending: dict[tuple[str, str], list[BrokerMessage]] = {}
        self._inflight: dict[str, BrokerMessage] = {}

    def enqueue(
        self,
        *,
        tenant_id: str,
        topic: str,
        event: dict[str, Any],
        delay_ms: int = 0,
    ) -> BrokerMessage:
        msg = BrokerMessage(
            message_id=_new_message_id(),
            tenant_id=tenant_id,
            topic=topic,
            event=dict(event),
            available_at_ms=_now_ms() + max(0, int(delay_ms)),
        )
        with self._lock:
            self._pending.setdefault((tenant_id, topic), []).append(msg)
        return msg

    def dequeue(self, *, tenant_id: str, topic: str) -> BrokerMessage | None:
        now = _now_ms()
        with self._lock:
            queue = self._pending.get((tenant_id, topic), [])
            for idx, msg in enumerate(queue):
                if msg.available_at_ms <= now:
                    queue.pop(idx)
                    self._inflight[msg.message_id] = msg
                    return msg
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for broker message")
            del self._inflight[message_id]

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> BrokerMessage | None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return None
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for broker message")
            del self._inflight[message_id]
            msg.attempt += 1
            if requeue:
                msg.available_at_ms = _now_ms() + max(0, int(delay_ms))
                self._pending.setdefault((msg.tenant_id, msg.topic), []).insert(0, msg)
            return msg

    def pending_count(self, *, tenant_id: str, topic: str) -> int:
        with self._lock:
            return len(self._pending.get((tenant_id, topic), []))

    def list_tenants(self, *, topic: str) -> list[str]:
        with self._lock:
            return sorted(tenant for (tenant, name), queue in self._pending.items() if name == topic and queue)

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._inflight.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for DISPATCH_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis broker: one sorted set per (tenant, topic) scored by availability time.

    Claiming a message is a ``ZREM`` of the candidate member; only the worker whose
    ``ZREM`` returns 1 owns it, so several workers can poll the same topic.
    """

    def __init__(self, *, dsn: str, namespace: str = "fsd", client: Any | None = None) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis queue backend")
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._namespace = namespace.strip() or "fsd"

    def _pending_key(self, *, tenant_id: str, topic: str) -> str:
        return f"{self._namespace}:{tenant_id}:topic:{topic}:pending"

    def _inflight_key(self, *, tenant_id: str, topic: str) -> str:
        return f"{self._namespace}:{tenant_id}:topic:{topic}:inflight"

    def _tenants_key(self, *, topic: str) -> str:
        return f"{self._namespace}:topic:{topic}:tenants"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _registry_key(self) -> str:
        return f"{self._namespace}:keys"

    def _load(self, message_id: str) -> BrokerMessage | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        return BrokerMessage(
            message_id=message_id,
            tenant_id=str(data.get("tenant_id", "")),
            topic=str(data.get("topic", "")),
            event=data.get("event") or {},
            attempt=int(data.get("attempt", 0)),
            available_at_ms=int(data.get("available_at_ms", 0)),
        )

    def _save(self, msg: BrokerMessage, *, status: str) -> None:
        self._client.set(
            self._msg_key(msg.message_id),
            json.dumps(
                {
                    "tenant_id": msg.tenant_id,
                    "topic": msg.topic,
                    "event": msg.event,
                    "attempt": msg.attempt,
                    "available_at_ms": msg.available_at_ms,
                    "status": status,
                },
                sort_keys=True,
                ensure_ascii=True,
                separators=(",", ":"),
            ),
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        topic: str,
        event: dict[str, Any],
        delay_ms: int = 0,
    ) -> BrokerMessage:
        msg = BrokerMessage(
            message_id=_new_message_id(),
            tenant_id=tenant_id,
            topic=topic,
            event=dict(event),
            available_at_ms=_now_ms() + max(0, int(delay_ms)),
        )
        pending_key = self._pending_key(tenant_id=tenant_id, topic=topic)
        tenants_key = self._tenants_key(topic=topic)
        self._save(msg, status="pending")
        self._client.zadd(pending_key, {msg.message_id: msg.available_at_ms})
        self._client.sadd(tenants_key, tenant_id)
        self._client.sadd(
            self._registry_key(),
            pending_key,
            tenants_key,
            self._inflight_key(tenant_id=tenant_id, topic=topic),
            self._msg_key(msg.message_id),
        )
        return msg

    def dequeue(self, *, tenant_id: str, topic: str) -> BrokerMessage | None:
        pending_key = self._pending_key(tenant_id=tenant_id, topic=topic)
        while True:
            due = self._client.zrangebyscore(pending_key, "-inf", _now_ms(), start=0, num=1)
            if not due:
                return None
            message_id = str(due[0])
            if int(self._client.zrem(pending_key, message_id)) != 1:
                continue
            msg = self._load(message_id)
            if msg is None:
                continue
            self._save(msg, status="inflight")
            self._client.sadd(self._inflight_key(tenant_id=tenant_id, topic=topic), message_id)
            return msg

    def _claim_inflight(self, *, tenant_id: str, message_id: str) -> BrokerMessage | None:
        msg = self._load(message_id)
        if msg is None:
            return None
        if msg.tenant_id != tenant_id:
            raise RuntimeError("tenant mismatch for broker message")
        removed = self._client.srem(self._inflight_key(tenant_id=tenant_id, topic=msg.topic), message_id)
        if int(removed) != 1:
            return None
        return msg

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        msg = self._claim_inflight(tenant_id=tenant_id, message_id=message_id)
        if msg is None:
            return
        self._client.delete(self._msg_key(message_id))
        self._client.srem(self._registry_key(), self._msg_key(message_id))

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> BrokerMessage | None:
        msg = self._claim_inflight(tenant_id=tenant_id, message_id=message_id)
        if msg is None:
            return None
        msg.attempt += 1
        if not requeue:
            self._save(msg, status="discarded")
            return msg
        msg.available_at_ms = _now_ms() + max(0, int(delay_ms))
        self._save(msg, status="pending")
        self._client.zadd(self._pending_key(tenant_id=tenant_id, topic=msg.topic), {message_id: msg.available_at_ms})
        return msg

    def pending_count(self, *, tenant_id: str, topic: str) -> int:
        return int(self._client.zcard(self._pending_key(tenant_id=tenant_id, topic=topic)))

    def list_tenants(self, *, topic: str) -> list[str]:
        tenants = self._client.smembers(self._tenants_key(topic=topic))
        return sorted(
            str(tenant)
            for tenant in tenants
            if tenant and self.pending_count(tenant_id=str(tenant), topic=topic) > 0
        )

    def reset(self) -> None:
        registry = self._registry_key()
        keys = self._client.smembers(registry)
        if keys:
            self._client.delete(*list(keys))
        self._client.delete(registry)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("DISPATCH_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when DISPATCH_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=env.get("DISPATCH_QUEUE_KEY_PREFIX", "fsd"))
    raise RuntimeError(f"unsupported queue backend: {backend}")
