from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from dispatch.context import RequestContext
from dispatch.errors import VersionConflictError, concurrency_conflict, invalid_operation, not_found

logger = logging.getLogger(__name__)


def ensure_can_accept(vendor: dict[str, Any]) -> None:
    if not vendor.get("is_active"):
        raise invalid_operation("Cannot assign an inactive vendor")
    if int(vendor.get("current_capacity", 0)) >= int(vendor.get("capacity_limit", 0)):
        raise invalid_operation("Vendor is at full capacity")


class CapacityLedger:
    """The only writer of ``vendor.current_capacity``.

    Each change re-reads the vendor, re-checks the rule and writes with the
    version it read; a concurrent writer causes a retry, not a lost update.
    """

    def __init__(
        self,
        *,
        vendors_repo: Any,
        utcnow: Callable[[], str],
        max_attempts: int = 3,
    ) -> None:
        self.vendors_repo = vendors_repo
        self._utcnow = utcnow
        self.max_attempts = max(1, int(max_attempts))

    def reserve_slot(self, *, ctx: RequestContext, vendor_id: str) -> dict[str, Any]:
        for _ in range(self.max_attempts):
            vendor = self.vendors_repo.get(tenant_id=ctx.tenant_id, vendor_id=vendor_id)
            if vendor is None:
                raise not_found("vendor", vendor_id)
            ensure_can_accept(vendor)
            updated = dict(vendor)
            updated["current_capacity"] = int(vendor.get("current_capacity", 0)) + 1
            updated["updated_at"] = self._utcnow()
            try:
                return self.vendors_repo.update(
                    tenant_id=ctx.tenant_id,
                    row=updated,
                    expected_version=int(vendor["version"]),
                )
            except VersionConflictError:
                logger.info("vendor %s changed while reserving a slot; retrying", vendor_id)
        raise concurrency_conflict("vendor", vendor_id)

    def release_slot(self, *, ctx: RequestContext, vendor_id: str) -> dict[str, Any] | None:
        for _ in range(self.max_attempts):
            vendor = self.vendors_repo.get(tenant_id=ctx.tenant_id, vendor_id=vendor_id)
            if vendor is None:
                logger.warning("vendor %s missing while releasing a slot; nothing to release", vendor_id)
                return None
            current = int(vendor.get("current_capacity", 0))
            if current <= 0:
                logger.warning("vendor %s capacity already at 0; release floored", vendor_id)
                return vendor
            updated = dict(vendor)
            updated["current_capacity"] = current - 1
            updated["updated_at"] = self._utcnow()
            try:
                return self.vendors_repo.update(
                    tenant_id=ctx.tenant_id,
                    row=updated,
                    expected_version=int(vendor["version"]),
                )
            except VersionConflictError:
                logger.info("vendor %s changed while releasing a slot; retrying", vendor_id)
        raise concurrency_conflict("vendor", vendor_id)
