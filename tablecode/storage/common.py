"""Store contracts and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, List, Optional, Protocol, Tuple

from tablecode.storage.models import (
    AuditLogEntry,
    Category,
    MenuItem,
    Tenant,
    TenantStatus,
)

# Tenant columns that callers may change through ``update_tenant``. ``id`` and
# ``code`` are immutable once assigned; counters change through dedicated calls.
MUTABLE_TENANT_FIELDS = frozenset({
    "name",
    "city",
    "phone",
    "email",
    "plan",
    "theme",
    "status",
    "pin_hash",
    "pin_changed_at",
    "last_pin_reset_at",
    "last_pin_reset_by",
    "trial_ends",
    "paid_until",
    "last_payment_note",
    "deleted_at",
    "deleted_by",
    "purge_after",
    "updated_at",
})

_TENANT_DATETIME_FIELDS = (
    "pin_changed_at",
    "last_pin_reset_at",
    "trial_ends",
    "paid_until",
    "last_view_at",
    "consented_at",
    "deleted_at",
    "purge_after",
    "created_at",
    "updated_at",
)


class TenantStore(Protocol):
    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def find_by_code(self, code: str) -> Optional[Tenant]: ...

    def find_by_id(self, tenant_id: str) -> Optional[Tenant]: ...

    def update_tenant(self, tenant_id: str, **fields: Any) -> Optional[Tenant]: ...

    def record_pin_change(
        self, tenant_id: str, pin_hash: str, *, reset_by: str, now: datetime
    ) -> Optional[Tenant]: ...

    def increment_views(self, code: str, *, now: datetime) -> bool: ...

    def delete_tenant(self, tenant_id: str) -> bool: ...

    def list_tenants(
        self,
        *,
        status: Optional[TenantStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tenant], int]: ...

    def list_asset_refs(self, tenant_id: str) -> List[str]: ...

    def create_category(
        self, tenant_id: str, name: str, *, sort_order: int = 0
    ) -> Category: ...

    def create_menu_item(
        self,
        tenant_id: str,
        category_id: str,
        name: str,
        *,
        price: int = 0,
        image_ref: Optional[str] = None,
    ) -> MenuItem: ...

    def transaction(self) -> ContextManager[None]: ...


class AuditStore(Protocol):
    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_recent_audit(self, tenant_id: str, limit: int = 50) -> List[AuditLogEntry]: ...

    def reassign_audit_actor(
        self, tenant_id: str, from_actor: str, to_actor: str
    ) -> int: ...


def check_mutable_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_TENANT_FIELDS
    if unknown:
        raise ValueError(f"immutable or unknown tenant fields: {sorted(unknown)}")


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from older rows as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_json_value(raw: Any) -> Optional[Dict]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, str)):
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def json_default(value: Any) -> Any:
    """``json.dumps`` fallback for audit payloads carrying datetimes/enums."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, TenantStatus):
        return value.value
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def dumps_json(value: Optional[Dict]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=json_default)


def tenant_to_dict(tenant: Tenant) -> Dict[str, Any]:
    data = dict(tenant.__dict__)
    data["status"] = tenant.status.value
    for key in _TENANT_DATETIME_FIELDS:
        if data.get(key) is not None:
            data[key] = data[key].isoformat()
    return data


def tenant_from_row(row: Dict[str, Any]) -> Tenant:
    """Build a Tenant from a DB row or a serialized dict."""
    values: Dict[str, Any] = {}
    for key in Tenant.__dataclass_fields__:
        if key in row:
            values[key] = row[key]
    values["id"] = str(values["id"])
    values["status"] = TenantStatus(values.get("status", TenantStatus.TRIAL.value))
    for key in _TENANT_DATETIME_FIELDS:
        raw = values.get(key)
        if isinstance(raw, str):
            values[key] = datetime.fromisoformat(raw)
        if key in values:
            values[key] = ensure_aware(values[key])
    return Tenant(**values)


def audit_to_dict(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "tenant_id": entry.tenant_id,
        "actor_type": entry.actor_type,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "old_value": json.loads(dumps_json(entry.old_value)) if entry.old_value else None,
        "new_value": json.loads(dumps_json(entry.new_value)) if entry.new_value else None,
        "created_at": entry.created_at.isoformat(),
    }


def audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
    created = row.get("created_at")
    if isinstance(created, str):
        created = datetime.fromisoformat(created)
    return AuditLogEntry(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        actor_type=row["actor_type"],
        action=row["action"],
        entity_type=row.get("entity_type") or "Hotel",
        entity_id=str(row["entity_id"]) if row.get("entity_id") is not None else None,
        old_value=parse_json_value(row.get("old_value")),
        new_value=parse_json_value(row.get("new_value")),
        created_at=ensure_aware(created) or datetime.now(timezone.utc),
    )


def matches_search(tenant: Tenant, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(
        needle in (value or "").lower()
        for value in (tenant.name, tenant.code, tenant.city)
    )
