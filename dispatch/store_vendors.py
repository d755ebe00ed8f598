from __future__ import annotations

import uuid
from typing import Any

from dispatch.context import RequestContext
from dispatch.errors import VersionConflictError, concurrency_conflict, invalid_operation, not_found

EDITABLE_VENDOR_FIELDS = (
    "name",
    "contact_email",
    "contact_phone",
    "service_area",
    "specializations",
    "capacity_limit",
    "rating",
    "is_active",
)


class StoreVendorsMixin:
    def create_vendor(self, ctx: RequestContext, payload: dict[str, Any]) -> dict[str, Any]:
        capacity_limit = int(payload.get("capacity_limit", 0))
        if capacity_limit < 0:
            raise invalid_operation("Capacity limit cannot be negative")
        now = self._utcnow_iso()
        vendor = self.vendors_repo.create(
            tenant_id=ctx.tenant_id,
            row={
                "vendor_id": f"vendor_{uuid.uuid4().hex[:12]}",
                "name": str(payload["name"]),
                "contact_email": payload.get("contact_email"),
                "contact_phone": payload.get("contact_phone"),
                "service_area": payload.get("service_area"),
                "specializations": list(payload.get("specializations") or []),
                "capacity_limit": capacity_limit,
                "current_capacity": 0,
                "rating": payload.get("rating"),
                "is_active": bool(payload.get("is_active", True)),
                "created_at": now,
                "updated_at": now,
                "version": 1,
            },
        )
        self.audit.record(
            ctx,
            entity_name="Vendor",
            entity_id=vendor["vendor_id"],
            action="Created",
            new_values={"name": vendor["name"], "capacity_limit": capacity_limit},
        )
        return vendor

    def get_vendor(self, ctx: RequestContext, vendor_id: str) -> dict[str, Any]:
        vendor = self.vendors_repo.get(tenant_id=ctx.tenant_id, vendor_id=vendor_id)
        if vendor is None:
            raise not_found("vendor", vendor_id)
        return vendor

    def update_vendor(self, ctx: RequestContext, vendor_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Edit profile fields; ``current_capacity`` is owned by the capacity ledger."""
        edits = {k: v for k, v in changes.items() if k in EDITABLE_VENDOR_FIELDS and v is not None}
        vendor = self.get_vendor(ctx, vendor_id)
        if "capacity_limit" in edits and int(edits["capacity_limit"]) < int(vendor.get("current_capacity", 0)):
            raise invalid_operation("Capacity limit cannot be below the vendor's active assignments")
        old_values = {k: vendor.get(k) for k in edits if vendor.get(k) != edits[k]}
        if not old_values:
            return vendor
        updated = dict(vendor)
        updated.update(edits)
        updated["updated_at"] = self._utcnow_iso()
        try:
            saved = self.vendors_repo.update(
                tenant_id=ctx.tenant_id,
                row=updated,
                expected_version=int(vendor["version"]),
            )
        except VersionConflictError as exc:
            raise concurrency_conflict("vendor", vendor_id) from exc
        self.audit.record(
            ctx,
            entity_name="Vendor",
            entity_id=vendor_id,
            action="Updated",
            old_values=old_values,
            new_values={k: saved.get(k) for k in old_values},
        )
        return saved

    def list_vendors(
        self,
        ctx: RequestContext,
        *,
        is_active: bool | None = None,
        has_capacity: bool | None = None,
        service_type: str = "",
        page: int = 1,
        page_size: int | None = None,
    ) -> dict[str, Any]:
        size = int(page_size or self.settings.vendor_list_page_size)
        items, total = self.vendors_repo.list_paged(
            tenant_id=ctx.tenant_id,
            is_active=is_active,
            has_capacity=has_capacity,
            service_type=service_type.strip(),
            page=page,
            page_size=size,
        )
        return {"items": items, "total": total, "page": max(1, int(page)), "page_size": size}
