from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from tablecode.logging import get_logger
from tablecode.storage.common import (
    audit_from_row,
    audit_to_dict,
    check_mutable_fields,
    matches_search,
    tenant_from_row,
    tenant_to_dict,
)
from tablecode.storage.errors import ConstraintViolation
from tablecode.storage.models import (
    AuditLogEntry,
    Category,
    MenuItem,
    Tenant,
    TenantStatus,
)


class MemoryStore:
    """In-process tenant and audit store used for development and tests.

    Records are replaced rather than mutated on update, so a transaction only
    needs a shallow copy of each table to roll back.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.categories: Dict[str, Category] = {}
        self.items: Dict[str, MenuItem] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so transaction() can wrap the individual write methods
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- transactions -----------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = (
                dict(self.tenants),
                dict(self.categories),
                dict(self.items),
                list(self.audit_logs),
            )
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self.tenants, self.categories, self.items, self.audit_logs = snapshot
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()

    # -- tenants ----------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            if any(existing.code == tenant.code for existing in self.tenants.values()):
                raise ConstraintViolation("tenant code already exists", {"field": "code"})
            if tenant.id in self.tenants:
                raise ConstraintViolation("tenant id already exists", {"field": "id"})
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return tenant

    def find_by_code(self, code: str) -> Optional[Tenant]:
        with self._data_lock:
            return next((t for t in self.tenants.values() if t.code == code), None)

    def find_by_id(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def update_tenant(self, tenant_id: str, **fields: Any) -> Optional[Tenant]:
        check_mutable_fields(fields)
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if tenant is None:
                return None
            fields.setdefault("updated_at", datetime.now(timezone.utc))
            updated = replace(tenant, **fields)
            self.tenants[tenant_id] = updated
            self._persist_state()
            return updated

    def record_pin_change(
        self, tenant_id: str, pin_hash: str, *, reset_by: str, now: datetime
    ) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if tenant is None:
                return None
            updated = replace(
                tenant,
                pin_hash=pin_hash,
                pin_changed_at=now,
                pin_reset_count=tenant.pin_reset_count + 1,
                last_pin_reset_at=now,
                last_pin_reset_by=reset_by,
                updated_at=now,
            )
            self.tenants[tenant_id] = updated
            self._persist_state()
            return updated

    def increment_views(self, code: str, *, now: datetime) -> bool:
        with self._data_lock:
            tenant = self.find_by_code(code)
            if tenant is None:
                return False
            self.tenants[tenant.id] = replace(
                tenant, views=tenant.views + 1, last_view_at=now
            )
            self._persist_state()
            return True

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._data_lock:
            if tenant_id not in self.tenants:
                return False
            self.items = {
                key: item for key, item in self.items.items() if item.tenant_id != tenant_id
            }
            self.categories = {
                key: cat
                for key, cat in self.categories.items()
                if cat.tenant_id != tenant_id
            }
            self.audit_logs = [e for e in self.audit_logs if e.tenant_id != tenant_id]
            del self.tenants[tenant_id]
            self._persist_state()
            return True

    def list_tenants(
        self,
        *,
        status: Optional[TenantStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tenant], int]:
        with self._data_lock:
            results = [
                t
                for t in self.tenants.values()
                if (status is None or t.status == status) and matches_search(t, search)
            ]
        results.sort(key=lambda t: t.created_at, reverse=True)
        return results[offset : offset + limit], len(results)

    # -- menu rows (seeded for purge; CRUD lives elsewhere) ----------------

    def create_category(
        self, tenant_id: str, name: str, *, sort_order: int = 0
    ) -> Category:
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            category = Category(
                id=str(uuid.uuid4()), tenant_id=tenant_id, name=name, sort_order=sort_order
            )
            self.categories[category.id] = category
            self._persist_state()
            return category

    def create_menu_item(
        self,
        tenant_id: str,
        category_id: str,
        name: str,
        *,
        price: int = 0,
        image_ref: Optional[str] = None,
    ) -> MenuItem:
        with self._data_lock:
            category = self.categories.get(category_id)
            if category is None or category.tenant_id != tenant_id:
                raise ConstraintViolation(
                    "category does not exist", {"category_id": category_id}
                )
            item = MenuItem(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                category_id=category_id,
                name=name,
                price=price,
                image_ref=image_ref,
            )
            self.items[item.id] = item
            self._persist_state()
            return item

    def list_asset_refs(self, tenant_id: str) -> List[str]:
        with self._data_lock:
            return [
                item.image_ref
                for item in self.items.values()
                if item.tenant_id == tenant_id and item.image_ref
            ]

    def count_menu_rows(self, tenant_id: str) -> Tuple[int, int]:
        with self._data_lock:
            categories = sum(1 for c in self.categories.values() if c.tenant_id == tenant_id)
            items = sum(1 for i in self.items.values() if i.tenant_id == tenant_id)
            return categories, items

    # -- audit ------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            self._persist_state()
            return entry

    def list_recent_audit(self, tenant_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [e for e in self.audit_logs if e.tenant_id == tenant_id]
        # Newest first; rows sharing a timestamp keep reverse insertion order
        entries.reverse()
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def reassign_audit_actor(
        self, tenant_id: str, from_actor: str, to_actor: str
    ) -> int:
        changed = 0
        with self._data_lock:
            rewritten: List[AuditLogEntry] = []
            for entry in self.audit_logs:
                if entry.tenant_id == tenant_id and entry.actor_type == from_actor:
                    entry = replace(entry, actor_type=to_actor)
                    changed += 1
                rewritten.append(entry)
            self.audit_logs = rewritten
            self._persist_state()
        return changed

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        # Inside a transaction the outermost block writes once on commit
        if self.fs_root is None or self._tx_depth:
            return
        state = {
            "tenants": [tenant_to_dict(t) for t in self.tenants.values()],
            "categories": [
                {
                    "id": c.id,
                    "tenant_id": c.tenant_id,
                    "name": c.name,
                    "sort_order": c.sort_order,
                    "created_at": c.created_at.isoformat(),
                }
                for c in self.categories.values()
            ],
            "items": [
                {
                    "id": i.id,
                    "tenant_id": i.tenant_id,
                    "category_id": i.category_id,
                    "name": i.name,
                    "price": i.price,
                    "image_ref": i.image_ref,
                    "is_available": i.is_available,
                    "created_at": i.created_at.isoformat(),
                }
                for i in self.items.values()
            ],
            "audit_logs": [audit_to_dict(e) for e in self.audit_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            row["id"]: tenant_from_row(row) for row in data.get("tenants", [])
        }
        self.categories = {
            row["id"]: Category(
                id=row["id"],
                tenant_id=row["tenant_id"],
                name=row["name"],
                sort_order=row.get("sort_order", 0),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in data.get("categories", [])
        }
        self.items = {
            row["id"]: MenuItem(
                id=row["id"],
                tenant_id=row["tenant_id"],
                category_id=row["category_id"],
                name=row["name"],
                price=row.get("price", 0),
                image_ref=row.get("image_ref"),
                is_available=row.get("is_available", True),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in data.get("items", [])
        }
        self.audit_logs = [audit_from_row(row) for row in data.get("audit_logs", [])]
        self.logger.info("memory_store_loaded", tenants=len(self.tenants))
        return True
