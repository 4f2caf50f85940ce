from __future__ import annotations

import math
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tablecode.logging import get_logger
from tablecode.storage.common import (
    audit_from_row,
    check_mutable_fields,
    dumps_json,
    tenant_from_row,
)
from tablecode.storage.errors import ConstraintViolation
from tablecode.storage.models import (
    AuditLogEntry,
    Category,
    MenuItem,
    Tenant,
    TenantStatus,
)

_TENANT_COLUMNS = (
    "id, code, name, city, phone, email, plan, theme, status, pin_hash,"
    " pin_changed_at, pin_reset_count, last_pin_reset_at, last_pin_reset_by,"
    " trial_ends, paid_until, last_payment_note, views, last_view_at,"
    " consented_at, consent_version, deleted_at, deleted_by, purge_after,"
    " created_at, updated_at"
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS hotel (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        city TEXT NOT NULL,
        phone TEXT NOT NULL,
        email TEXT,
        plan TEXT NOT NULL DEFAULT 'STARTER',
        theme TEXT NOT NULL DEFAULT 'classic',
        status TEXT NOT NULL DEFAULT 'TRIAL',
        pin_hash TEXT NOT NULL,
        pin_changed_at TIMESTAMPTZ,
        pin_reset_count INTEGER NOT NULL DEFAULT 0,
        last_pin_reset_at TIMESTAMPTZ,
        last_pin_reset_by TEXT,
        trial_ends TIMESTAMPTZ,
        paid_until TIMESTAMPTZ,
        last_payment_note TEXT,
        views INTEGER NOT NULL DEFAULT 0,
        last_view_at TIMESTAMPTZ,
        consented_at TIMESTAMPTZ,
        consent_version TEXT,
        deleted_at TIMESTAMPTZ,
        deleted_by TEXT,
        purge_after TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS category (
        id UUID PRIMARY KEY,
        hotel_id UUID NOT NULL REFERENCES hotel(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS menu_item (
        id UUID PRIMARY KEY,
        hotel_id UUID NOT NULL REFERENCES hotel(id) ON DELETE CASCADE,
        category_id UUID NOT NULL REFERENCES category(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        price INTEGER NOT NULL DEFAULT 0,
        image_ref TEXT,
        is_available BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        hotel_id UUID NOT NULL REFERENCES hotel(id) ON DELETE CASCADE,
        actor_type TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        old_value JSONB,
        new_value JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_hotel_created_idx ON audit_log (hotel_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS hotel_status_idx ON hotel (status)",
)


def connection_kwargs(timeout: float) -> Dict[str, Any]:
    """Per-connection settings so neither connects nor queries can hang."""
    return {
        "row_factory": dict_row,
        "autocommit": False,
        "connect_timeout": max(1, math.ceil(timeout)),
        "options": f"-c statement_timeout={int(timeout * 1000)}"
        f" -c lock_timeout={int(timeout * 1000)}",
    }


class PostgresStore:
    """Postgres-backed tenant and audit store.

    Each call borrows a pooled connection. Inside ``transaction()`` the calls
    made on the same thread share one connection and commit together.
    """

    def __init__(self, dsn: str, *, timeout: float = 10.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs=connection_kwargs(timeout),
        )
        self._local = threading.local()
        self._ensure_schema()
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                self._local.conn = conn
                try:
                    yield
                finally:
                    self._local.conn = None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when the tenant tables are not reachable."""

        required_tables = ["hotel", "category", "menu_item", "audit_log"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # -- tenants ----------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO hotel ({_TENANT_COLUMNS})
                    VALUES ({", ".join(["%s"] * 26)})
                    """,
                    (
                        tenant.id,
                        tenant.code,
                        tenant.name,
                        tenant.city,
                        tenant.phone,
                        tenant.email,
                        tenant.plan,
                        tenant.theme,
                        tenant.status.value,
                        tenant.pin_hash,
                        tenant.pin_changed_at,
                        tenant.pin_reset_count,
                        tenant.last_pin_reset_at,
                        tenant.last_pin_reset_by,
                        tenant.trial_ends,
                        tenant.paid_until,
                        tenant.last_payment_note,
                        tenant.views,
                        tenant.last_view_at,
                        tenant.consented_at,
                        tenant.consent_version,
                        tenant.deleted_at,
                        tenant.deleted_by,
                        tenant.purge_after,
                        tenant.created_at,
                        tenant.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant code already exists", {"field": "code"})
        return tenant

    def find_by_code(self, code: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TENANT_COLUMNS} FROM hotel WHERE code = %s", (code,)
            ).fetchone()
        return tenant_from_row(row) if row else None

    def find_by_id(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TENANT_COLUMNS} FROM hotel WHERE id = %s", (tenant_id,)
            ).fetchone()
        return tenant_from_row(row) if row else None

    def update_tenant(self, tenant_id: str, **fields: Any) -> Optional[Tenant]:
        check_mutable_fields(fields)
        values = {
            key: value.value if isinstance(value, TenantStatus) else value
            for key, value in fields.items()
        }
        # Column names come from MUTABLE_TENANT_FIELDS, never from callers
        assignments = ", ".join(f"{key} = %s" for key in values)
        if "updated_at" not in values:
            assignments = f"{assignments}, updated_at = now()" if assignments else "updated_at = now()"
        set_clause = assignments
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE hotel SET {set_clause} WHERE id = %s RETURNING {_TENANT_COLUMNS}",
                (*values.values(), tenant_id),
            ).fetchone()
        return tenant_from_row(row) if row else None

    def record_pin_change(
        self, tenant_id: str, pin_hash: str, *, reset_by: str, now: datetime
    ) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE hotel
                SET pin_hash = %s,
                    pin_changed_at = %s,
                    pin_reset_count = pin_reset_count + 1,
                    last_pin_reset_at = %s,
                    last_pin_reset_by = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING {_TENANT_COLUMNS}
                """,
                (pin_hash, now, now, reset_by, now, tenant_id),
            ).fetchone()
        return tenant_from_row(row) if row else None

    def increment_views(self, code: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE hotel SET views = views + 1, last_view_at = %s WHERE code = %s",
                (now, code),
            )
            return cur.rowcount > 0

    def delete_tenant(self, tenant_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM menu_item WHERE hotel_id = %s", (tenant_id,))
            conn.execute("DELETE FROM category WHERE hotel_id = %s", (tenant_id,))
            conn.execute("DELETE FROM audit_log WHERE hotel_id = %s", (tenant_id,))
            cur = conn.execute("DELETE FROM hotel WHERE id = %s", (tenant_id,))
            return cur.rowcount > 0

    def list_tenants(
        self,
        *,
        status: Optional[TenantStatus] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Tenant], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if search:
            clauses.append("(name ILIKE %s OR code ILIKE %s OR city ILIKE %s)")
            pattern = f"%{search}%"
            params.extend([pattern, pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM hotel {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT {_TENANT_COLUMNS} FROM hotel {where}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [tenant_from_row(row) for row in rows], total

    # -- menu rows --------------------------------------------------------

    def create_category(
        self, tenant_id: str, name: str, *, sort_order: int = 0
    ) -> Category:
        category = Category(
            id=str(uuid.uuid4()), tenant_id=tenant_id, name=name, sort_order=sort_order
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO category (id, hotel_id, name, sort_order, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (category.id, tenant_id, name, sort_order, category.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
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
        item = MenuItem(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            category_id=category_id,
            name=name,
            price=price,
            image_ref=image_ref,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO menu_item
                        (id, hotel_id, category_id, name, price, image_ref, is_available, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        item.id,
                        tenant_id,
                        category_id,
                        name,
                        price,
                        image_ref,
                        item.is_available,
                        item.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "category does not exist", {"category_id": category_id}
            )
        return item

    def list_asset_refs(self, tenant_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT image_ref FROM menu_item WHERE hotel_id = %s AND image_ref IS NOT NULL",
                (tenant_id,),
            ).fetchall()
        return [row["image_ref"] for row in rows if row["image_ref"]]

    # -- audit ------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, hotel_id, actor_type, action, entity_type, entity_id,
                     old_value, new_value, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.actor_type,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    dumps_json(entry.old_value),
                    dumps_json(entry.new_value),
                    entry.created_at,
                ),
            )
        return entry

    def list_recent_audit(self, tenant_id: str, limit: int = 50) -> List[AuditLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, hotel_id AS tenant_id, actor_type, action, entity_type,
                       entity_id, old_value, new_value, created_at
                FROM audit_log
                WHERE hotel_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (tenant_id, limit),
            ).fetchall()
        return [audit_from_row(row) for row in rows]

    def reassign_audit_actor(
        self, tenant_id: str, from_actor: str, to_actor: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE audit_log SET actor_type = %s WHERE hotel_id = %s AND actor_type = %s",
                (to_actor, tenant_id, from_actor),
            )
            return cur.rowcount
