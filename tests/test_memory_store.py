"""Tests for the in-memory tenant/audit store."""

from datetime import datetime, timezone

import pytest

from tablecode.storage.errors import ConstraintViolation
from tablecode.storage.memory import MemoryStore
from tablecode.storage.models import AuditLogEntry, Tenant, TenantStatus


def _tenant(code="ABC234", **overrides):
    fields = dict(
        code=code,
        name="Sea View",
        city="Goa",
        phone="9876543210",
        pin_hash="$argon2id$placeholder",
    )
    fields.update(overrides)
    return Tenant.new(**fields)


class TestTenants:
    def test_code_is_unique(self, memory_store):
        memory_store.create_tenant(_tenant())
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_tenant(_tenant())
        assert excinfo.value.detail == {"field": "code"}

    def test_update_rejects_immutable_fields(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        with pytest.raises(ValueError):
            memory_store.update_tenant(tenant.id, code="XYZ789")
        with pytest.raises(ValueError):
            memory_store.update_tenant(tenant.id, views=10)

    def test_update_unknown_returns_none(self, memory_store):
        assert memory_store.update_tenant("missing", name="x") is None

    def test_record_pin_change_counts(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        now = datetime(2025, 3, 1, tzinfo=timezone.utc)
        updated = memory_store.record_pin_change(tenant.id, "new-hash", reset_by="owner", now=now)
        assert updated.pin_hash == "new-hash"
        assert updated.pin_reset_count == 1
        assert updated.pin_changed_at == now
        assert updated.last_pin_reset_by == "owner"

    def test_increment_views(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        now = datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert memory_store.increment_views("ABC234", now=now)
        assert memory_store.increment_views("ABC234", now=now)
        assert not memory_store.increment_views("ZZZ999", now=now)
        stored = memory_store.find_by_id(tenant.id)
        assert stored.views == 2
        assert stored.last_view_at == now

    def test_list_filters_by_status(self, memory_store):
        first = memory_store.create_tenant(_tenant("AAA222"))
        memory_store.create_tenant(_tenant("BBB333"))
        memory_store.update_tenant(first.id, status=TenantStatus.SUSPENDED)
        items, total = memory_store.list_tenants(status=TenantStatus.SUSPENDED)
        assert total == 1
        assert items[0].id == first.id


class TestTransactions:
    def test_rollback_restores_all_tables(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                memory_store.update_tenant(tenant.id, name="Changed")
                memory_store.append_audit(AuditLogEntry.new(tenant.id, "admin", "details_edited"))
                raise RuntimeError("abort")
        assert memory_store.find_by_id(tenant.id).name == "Sea View"
        assert memory_store.list_recent_audit(tenant.id) == []

    def test_commit_keeps_writes(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        with memory_store.transaction():
            memory_store.update_tenant(tenant.id, name="Changed")
        assert memory_store.find_by_id(tenant.id).name == "Changed"


class TestAudit:
    def test_reassign_actor(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        memory_store.append_audit(AuditLogEntry.new(tenant.id, "owner", "theme_changed"))
        memory_store.append_audit(AuditLogEntry.new(tenant.id, "admin", "status_changed"))
        assert memory_store.reassign_audit_actor(tenant.id, "owner", "deleted_user") == 1
        actors = sorted(e.actor_type for e in memory_store.list_recent_audit(tenant.id))
        assert actors == ["admin", "deleted_user"]

    def test_recent_audit_newest_first(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        same_time = datetime(2025, 3, 1, tzinfo=timezone.utc)
        for action in ("one", "two", "three"):
            memory_store.append_audit(AuditLogEntry.new(tenant.id, "admin", action, now=same_time))
        assert [e.action for e in memory_store.list_recent_audit(tenant.id, limit=2)] == [
            "three",
            "two",
        ]


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        tenant = store.create_tenant(_tenant(email="owner@seaview.example"))
        category = store.create_category(tenant.id, "Mains")
        store.create_menu_item(tenant.id, category.id, "Thali", price=250, image_ref="img/t.jpg")
        store.append_audit(AuditLogEntry.new(tenant.id, "admin", "tenant_created", new_value={"code": "ABC234"}))

        reloaded = MemoryStore(fs_root=str(tmp_path))

        stored = reloaded.find_by_code("ABC234")
        assert stored.email == "owner@seaview.example"
        assert stored.status is TenantStatus.TRIAL
        assert stored.created_at == tenant.created_at
        assert reloaded.list_asset_refs(tenant.id) == ["img/t.jpg"]
        assert reloaded.list_recent_audit(tenant.id)[0].new_value == {"code": "ABC234"}

    def test_delete_cascades(self, memory_store):
        tenant = memory_store.create_tenant(_tenant())
        category = memory_store.create_category(tenant.id, "Mains")
        memory_store.create_menu_item(tenant.id, category.id, "Thali")
        assert memory_store.delete_tenant(tenant.id)
        assert memory_store.count_menu_rows(tenant.id) == (0, 0)
        assert not memory_store.delete_tenant(tenant.id)

    def test_menu_rows_need_a_tenant(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_category("missing", "Mains")
