from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field

SYSTEM_USER = "system"


@dataclass(frozen=True)
class RequestContext:
    """Tenant, caller and time budget for one logical operation.

    Passed explicitly to every store operation and consumer. ``deadline`` is a
    ``time.monotonic()`` value; child calls never get more time than is left.
    """

    tenant_id: str
    user_id: str = SYSTEM_USER
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    deadline: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False, repr=False)

    @classmethod
    def for_system(cls, tenant_id: str, *, trace_id: str = "", budget_s: float | None = None) -> RequestContext:
        deadline = time.monotonic() + budget_s if budget_s is not None else None
        return cls(
            tenant_id=tenant_id,
            user_id=SYSTEM_USER,
            trace_id=trace_id or uuid.uuid4().hex,
            deadline=deadline,
        )

    def remaining_s(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def child_timeout(self, timeout_s: float) -> float:
        remaining = self.remaining_s()
        if remaining is None:
            return timeout_s
        return min(timeout_s, remaining)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        remaining = self.remaining_s()
        return remaining is not None and remaining <= 0

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; returns False when cancelled while waiting."""
        if seconds <= 0:
            return not self.cancelled
        wait_s = self.child_timeout(seconds)
        if self.cancel_event.wait(wait_s):
            return False
        return not self.cancelled
