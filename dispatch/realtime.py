from __future__ import annotations

import json
import logging
import os
import queue
import threading
from collections import OrderedDict, deque
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


def tenant_group(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def job_group(job_id: str) -> str:
    return f"job:{job_id}"


def _message(group: str, event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "group": group,
        "event": event_name,
        "payload": dict(payload),
        "sent_at": datetime.now(UTC).isoformat(),
    }


class _GroupNotifier:
    """Fire-and-forget fan-out; delivery errors are logged, never raised."""

    def _send(self, group: str, message: dict[str, Any]) -> None:
        raise NotImplementedError

    def send(self, group: str, event_name: str, payload: dict[str, Any]) -> bool:
        try:
            self._send(group, _message(group, event_name, payload))
        except Exception:
            logger.warning("realtime delivery failed group=%s event=%s", group, event_name, exc_info=True)
            return False
        return True

    def notify_tenant(self, tenant_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self.send(tenant_group(tenant_id), event_name, payload)

    def notify_job(self, job_id: str, tenant_id: str, event_name: str, payload: dict[str, Any]) -> None:
        self.send(job_group(job_id), event_name, payload)
        self.send(tenant_group(tenant_id), event_name, payload)


class InMemoryRealtimeHub(_GroupNotifier):
    """In-process fan-out with a recent buffer for at most ``max_groups`` groups.

    The least recently written group is forgotten first.
    """

    def __init__(self, *, recent_limit: int = 100, max_groups: int = 1000) -> None:
        self._lock = threading.RLock()
        self._recent_limit = max(1, int(recent_limit))
        self._max_groups = max(1, int(max_groups))
        self._recent: OrderedDict[str, deque[dict[str, Any]]] = OrderedDict()
        self._subscribers: dict[str, list[queue.Queue[dict[str, Any]]]] = {}

    def subscribe(self, group: str) -> queue.Queue[dict[str, Any]]:
        inbox: queue.Queue[dict[str, Any]] = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(group, []).append(inbox)
        return inbox

    def unsubscribe(self, group: str, inbox: queue.Queue[dict[str, Any]]) -> None:
        with self._lock:
            members = self._subscribers.get(group, [])
            if inbox in members:
                members.remove(inbox)
            if not members:
                self._subscribers.pop(group, None)

    def _send(self, group: str, message: dict[str, Any]) -> None:
        with self._lock:
            buffer = self._recent.get(group)
            if buffer is None:
                buffer = self._recent[group] = deque(maxlen=self._recent_limit)
                while len(self._recent) > self._max_groups:
                    self._recent.popitem(last=False)
            else:
                self._recent.move_to_end(group)
            buffer.append(message)
            inboxes = list(self._subscribers.get(group, []))
        for inbox in inboxes:
            inbox.put_nowait(message)

    def recent(self, group: str, *, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._recent.get(group, deque()))
        return items[-max(1, int(limit)) :]

    def reset(self) -> None:
        with self._lock:
            self._recent.clear()
            self._subscribers.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for DISPATCH_REALTIME_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisRealtimeNotifier(_GroupNotifier):
    """Publishes each group message on ``<prefix>:<group>`` and keeps a capped recent list."""

    def __init__(
        self,
        *,
        dsn: str,
        channel_prefix: str = "fsd:realtime",
        recent_limit: int = 100,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis realtime backend")
            client = _import_redis().Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._prefix = channel_prefix.strip() or "fsd:realtime"
        self._recent_limit = max(1, int(recent_limit))

    def _channel(self, group: str) -> str:
        return f"{self._prefix}:{group}"

    def _send(self, group: str, message: dict[str, Any]) -> None:
        raw = json.dumps(message, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
        channel = self._channel(group)
        self._client.publish(channel, raw)
        self._client.rpush(f"{channel}:recent", raw)
        self._client.ltrim(f"{channel}:recent", -self._recent_limit, -1)

    def recent(self, group: str, *, limit: int = 50) -> list[dict[str, Any]]:
        raw_items = self._client.lrange(f"{self._channel(group)}:recent", -max(1, int(limit)), -1)
        return [json.loads(raw) for raw in raw_items]

    def reset(self) -> None:
        return None


def create_realtime_notifier_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryRealtimeHub | RedisRealtimeNotifier:
    env = os.environ if environ is None else environ
    backend = env.get("DISPATCH_REALTIME_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryRealtimeHub()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when DISPATCH_REALTIME_BACKEND=redis")
        return RedisRealtimeNotifier(dsn=dsn, channel_prefix=env.get("DISPATCH_REALTIME_CHANNEL_PREFIX", "fsd:realtime"))
    raise RuntimeError(f"unsupported realtime backend: {backend}")
