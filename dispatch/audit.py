from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from dispatch.context import RequestContext

logger = logging.getLogger(__name__)


class AuditService:
    """Append-only audit sink.

    A failed write is logged and dropped; it never fails the mutation it describes.
    """

    def __init__(self, *, audit_repo: Any, utcnow: Callable[[], str]) -> None:
        self.audit_repo = audit_repo
        self._utcnow = utcnow

    def record(
        self,
        ctx: RequestContext,
        *,
        entity_name: str,
        entity_id: str,
        action: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        changed_by: str | None = None,
    ) -> dict[str, Any] | None:
        log = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "tenant_id": ctx.tenant_id,
            "entity_name": entity_name,
            "entity_id": entity_id,
            "action": action,
            "changed_by": changed_by or ctx.user_id,
            "old_values": old_values,
            "new_values": new_values,
            "trace_id": ctx.trace_id,
            "occurred_at": self._utcnow(),
        }
        try:
            return self.audit_repo.append(log=log)
        except Exception:
            logger.warning(
                "audit write failed entity=%s id=%s action=%s tenant=%s",
                entity_name,
                entity_id,
                action,
                ctx.tenant_id,
                exc_info=True,
            )
            return None
