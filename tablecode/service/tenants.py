"""Tenant onboarding, billing status, PIN resets, soft delete and purge."""

from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from tablecode.logging import get_logger
from tablecode.service.collaborators import AssetStorage, run_bounded
from tablecode.service.credentials import (
    CredentialStore,
    check_pin_strength,
    normalize_pin,
)
from tablecode.service.errors import (
    ConflictError,
    ExhaustedRetriesError,
    NotFoundError,
    ValidationError,
)
from tablecode.service.slugs import SlugGenerator, is_valid_code, normalize_code
from tablecode.storage.common import AuditStore, TenantStore
from tablecode.storage.errors import ConstraintViolation
from tablecode.storage.models import (
    CREATE_PLANS,
    DELETED_TENANT_NAME,
    DELETED_TENANT_PHONE,
    EDIT_PLANS,
    INVALIDATED_PIN_HASH,
    THEMES,
    ActorType,
    AuditLogEntry,
    Tenant,
    TenantStatus,
)

logger = get_logger(__name__)

PURGE_RETENTION = timedelta(days=180)
TRIAL_PERIOD = timedelta(days=30)
CONSENT_VERSION = "1.0"
MAX_PAGE_SIZE = 100
RECENT_AUDIT_LIMIT = 50
MAX_NOTE_LENGTH = 500
NAME_MAX_LENGTH = 200
CITY_MAX_LENGTH = 100

ADMIN_ACTOR = "super_admin"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class CreatedTenant:
    tenant: Tenant
    pin: str
    menu_url: str
    dashboard_url: str


@dataclass
class TenantPage:
    items: List[Tenant]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class PinResetInfo:
    pin_reset_count: int
    last_pin_reset_at: Optional[datetime]
    last_pin_reset_by: Optional[str]


@dataclass
class AdminPinReset:
    tenant: Tenant
    pin: str


@dataclass
class PurgeResult:
    tenant_id: str
    code: str
    assets_deleted: int
    assets_failed: int


def _text(value: Optional[str], field: str, *, max_length: int, min_length: int = 1) -> str:
    text = (value or "").strip()
    if not (min_length <= len(text) <= max_length):
        raise ValidationError.for_field(
            field, f"must be {min_length}-{max_length} characters"
        )
    return text


def _phone(value: Optional[str]) -> str:
    return _text(value, "phone", min_length=10, max_length=15)


def _email(value: Optional[str]) -> Optional[str]:
    email = (value or "").strip()
    if not email:
        return None
    if len(email) > 200 or not _EMAIL_PATTERN.match(email):
        raise ValidationError.for_field("email", "must be a valid email address")
    return email


def _plan(value: Optional[str], allowed: tuple) -> str:
    plan = (value or "").strip().upper()
    if plan not in allowed:
        raise ValidationError.for_field("plan", f"must be one of {', '.join(allowed)}")
    return plan


def _status(value: Union[str, TenantStatus]) -> TenantStatus:
    try:
        return TenantStatus(value)
    except ValueError:
        raise ValidationError.for_field("status", "unknown status")


class TenantLifecycle:
    """Admin and owner operations on a tenant's lifecycle.

    Each state change and its audit entry are written in one store
    transaction. Plaintext PINs leave this class only in ``CreatedTenant``
    and ``AdminPinReset``.
    """

    def __init__(
        self,
        store: TenantStore,
        audit: AuditStore,
        credentials: CredentialStore,
        slugs: SlugGenerator,
        assets: AssetStorage,
        *,
        app_base_url: str = "http://localhost:3000",
        asset_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.credentials = credentials
        self.slugs = slugs
        self.assets = assets
        self.app_base_url = app_base_url.rstrip("/")
        self.asset_timeout = asset_timeout
        self._clock = clock

    def _require(self, tenant_id: str) -> Tenant:
        tenant = self.store.find_by_id(tenant_id)
        if tenant is None:
            raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
        return tenant

    def _require_live(self, tenant_id: str) -> Tenant:
        tenant = self._require(tenant_id)
        if tenant.status is TenantStatus.DELETED:
            raise ConflictError("hotel is deleted", detail={"tenant_id": tenant_id})
        return tenant

    def _audit(
        self,
        tenant_id: str,
        actor: str,
        action: str,
        now: datetime,
        *,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.append_audit(
            AuditLogEntry.new(
                tenant_id,
                actor,
                action,
                old_value=old_value,
                new_value=new_value,
                now=now,
            )
        )

    def menu_url(self, code: str) -> str:
        return f"{self.app_base_url}/m/{code}"

    async def create_tenant(
        self,
        *,
        name: str,
        city: str,
        phone: str,
        pin: str,
        email: Optional[str] = None,
        plan: str = "STARTER",
    ) -> CreatedTenant:
        clean_name = _text(name, "name", max_length=NAME_MAX_LENGTH)
        clean_city = _text(city, "city", max_length=CITY_MAX_LENGTH)
        clean_phone = _phone(phone)
        clean_email = _email(email)
        clean_plan = _plan(plan, CREATE_PLANS)
        clean_pin = normalize_pin(pin)
        check_pin_strength(clean_pin)
        pin_hash = self.credentials.hash(clean_pin)

        for attempt in range(1, self.slugs.max_attempts + 1):
            code = self.slugs.generate()
            now = self._clock()
            tenant = Tenant.new(
                code=code,
                name=clean_name,
                city=clean_city,
                phone=clean_phone,
                pin_hash=pin_hash,
                email=clean_email,
                plan=clean_plan,
                trial_ends=now + TRIAL_PERIOD,
                consent_version=CONSENT_VERSION,
                now=now,
            )
            try:
                with self.store.transaction():
                    self.store.create_tenant(tenant)
                    self._audit(
                        tenant.id,
                        ActorType.ADMIN.value,
                        "tenant_created",
                        now,
                        new_value={
                            "code": code,
                            "plan": clean_plan,
                            "status": tenant.status.value,
                            "trial_ends": _iso(tenant.trial_ends),
                        },
                    )
            except ConstraintViolation:
                # Lost a race for the code between lookup and insert
                logger.warning("tenant_code_conflict", attempt=attempt, code=code)
                continue
            logger.info("tenant_created", tenant_id=tenant.id, code=code, plan=clean_plan)
            return CreatedTenant(
                tenant=tenant,
                pin=clean_pin,
                menu_url=self.menu_url(code),
                dashboard_url=f"{self.app_base_url}/dashboard",
            )
        raise ExhaustedRetriesError(
            "could not allocate a unique tenant code",
            detail={"attempts": self.slugs.max_attempts},
        )

    async def get_tenant(self, tenant_id: str) -> Tenant:
        return self._require(tenant_id)

    async def list_tenants(
        self,
        *,
        status: Optional[Union[str, TenantStatus]] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> TenantPage:
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or 50), MAX_PAGE_SIZE))
        items, total = self.store.list_tenants(
            status=_status(status) if status else None,
            search=(search or "").strip() or None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return TenantPage(items=items, total=total, page=page, limit=limit)

    async def recent_audit(
        self, tenant_id: str, limit: int = RECENT_AUDIT_LIMIT
    ) -> List[AuditLogEntry]:
        return self.audit.list_recent_audit(tenant_id, limit)

    async def set_status(
        self,
        tenant_id: str,
        status: Union[str, TenantStatus],
        *,
        paid_until: Optional[datetime] = UNSET,
        note: Optional[str] = None,
    ) -> Tenant:
        target = _status(status)
        tenant = self._require(tenant_id)
        if target is TenantStatus.DELETED:
            return await self.soft_delete(tenant_id)
        if tenant.status is TenantStatus.DELETED:
            raise ConflictError(
                "cannot revert a deleted hotel; purge it instead",
                detail={"tenant_id": tenant_id},
            )
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError.for_field("note", f"at most {MAX_NOTE_LENGTH} characters")

        changes: Dict[str, Any] = {"status": target}
        if paid_until is not UNSET:
            changes["paid_until"] = paid_until
        if note:
            changes["last_payment_note"] = note

        now = self._clock()
        with self.store.transaction():
            updated = self.store.update_tenant(tenant_id, updated_at=now, **changes)
            if updated is None:
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
            self._audit(
                tenant_id,
                ActorType.ADMIN.value,
                "status_changed",
                now,
                old_value={
                    "status": tenant.status.value,
                    "paid_until": _iso(tenant.paid_until),
                    "last_payment_note": tenant.last_payment_note,
                },
                new_value={
                    "status": target.value,
                    "paid_until": _iso(updated.paid_until),
                    "note": note,
                },
            )
        logger.info(
            "tenant_status_changed",
            tenant_id=tenant_id,
            old_status=tenant.status.value,
            new_status=target.value,
        )
        return updated

    async def update_details(
        self,
        tenant_id: str,
        *,
        name: str,
        city: str,
        phone: str,
        plan: str,
        email: Optional[str] = None,
    ) -> Tenant:
        changes = {
            "name": _text(name, "name", max_length=NAME_MAX_LENGTH),
            "city": _text(city, "city", max_length=CITY_MAX_LENGTH),
            "phone": _phone(phone),
            "email": _email(email),
            "plan": _plan(plan, EDIT_PLANS),
        }
        tenant = self._require_live(tenant_id)
        old = {key: getattr(tenant, key) for key in changes}
        now = self._clock()
        with self.store.transaction():
            updated = self.store.update_tenant(tenant_id, updated_at=now, **changes)
            if updated is None:
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
            self._audit(
                tenant_id,
                ActorType.ADMIN.value,
                "details_edited",
                now,
                old_value=old,
                new_value=changes,
            )
        logger.info("tenant_details_edited", tenant_id=tenant_id)
        return updated

    async def reset_pin(self, tenant_id: str) -> AdminPinReset:
        tenant = self._require_live(tenant_id)
        pin = self.credentials.generate_pin()
        pin_hash = self.credentials.hash(pin)
        now = self._clock()
        with self.store.transaction():
            updated = self.store.record_pin_change(
                tenant_id, pin_hash, reset_by=ADMIN_ACTOR, now=now
            )
            if updated is None:
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
            self._audit(
                tenant_id,
                ActorType.ADMIN.value,
                "pin_reset",
                now,
                old_value={"last_pin_reset_at": _iso(tenant.last_pin_reset_at)},
                new_value={
                    "pin_reset_count": updated.pin_reset_count,
                    "last_pin_reset_by": ADMIN_ACTOR,
                },
            )
        logger.info(
            "tenant_pin_reset",
            tenant_id=tenant_id,
            pin_reset_count=updated.pin_reset_count,
        )
        return AdminPinReset(tenant=updated, pin=pin)

    async def pin_reset_info(self, tenant_id: str) -> PinResetInfo:
        tenant = self._require(tenant_id)
        return PinResetInfo(
            pin_reset_count=tenant.pin_reset_count,
            last_pin_reset_at=tenant.last_pin_reset_at,
            last_pin_reset_by=tenant.last_pin_reset_by,
        )

    async def change_theme(self, tenant_id: str, theme: str) -> Tenant:
        if theme not in THEMES:
            raise ValidationError.for_field("theme", f"must be one of {', '.join(THEMES)}")
        tenant = self._require_live(tenant_id)
        now = self._clock()
        with self.store.transaction():
            updated = self.store.update_tenant(tenant_id, theme=theme, updated_at=now)
            if updated is None:
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
            self._audit(
                tenant_id,
                ActorType.OWNER.value,
                "theme_changed",
                now,
                old_value={"theme": tenant.theme},
                new_value={"theme": theme},
            )
        return updated

    async def public_menu(self, code: Optional[str]) -> Tenant:
        """Resolve the tenant behind a public menu link and count the view.

        Suspended and deleted hotels read as missing.
        """
        normalized = normalize_code(code or "")
        if not is_valid_code(normalized):
            raise ValidationError.for_field("code", "must be a 6 character hotel code")
        tenant = self.store.find_by_code(normalized)
        if tenant is None or tenant.status in (TenantStatus.SUSPENDED, TenantStatus.DELETED):
            raise NotFoundError("menu not found")
        await self.record_view(normalized)
        return tenant

    async def record_view(self, code: str) -> bool:
        """Count a public menu view. Never raises."""
        normalized = normalize_code(code)
        if not is_valid_code(normalized):
            return False
        try:
            return self.store.increment_views(normalized, now=self._clock())
        except Exception as exc:
            logger.error("view_increment_failed", code=normalized, error=str(exc))
            return False

    async def soft_delete(self, tenant_id: str, *, actor: str = ADMIN_ACTOR) -> Tenant:
        tenant = self._require(tenant_id)
        if tenant.status is TenantStatus.DELETED:
            raise ConflictError("hotel already deleted", detail={"tenant_id": tenant_id})

        now = self._clock()
        purge_after = now + PURGE_RETENTION
        with self.store.transaction():
            updated = self.store.update_tenant(
                tenant_id,
                status=TenantStatus.DELETED,
                name=DELETED_TENANT_NAME,
                phone=DELETED_TENANT_PHONE,
                email=None,
                pin_hash=INVALIDATED_PIN_HASH,
                deleted_at=now,
                deleted_by=actor,
                purge_after=purge_after,
                updated_at=now,
            )
            if updated is None:
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
            reassigned = self.audit.reassign_audit_actor(
                tenant_id, ActorType.OWNER.value, ActorType.DELETED_USER.value
            )
            self._audit(
                tenant_id,
                ActorType.ADMIN.value,
                "tenant_deleted",
                now,
                old_value={
                    "name": tenant.name,
                    "phone": tenant.phone,
                    "email": tenant.email,
                    "status": tenant.status.value,
                },
                new_value={
                    "status": TenantStatus.DELETED.value,
                    "deleted_at": _iso(now),
                    "purge_after": _iso(purge_after),
                },
            )
        logger.info(
            "tenant_soft_deleted",
            tenant_id=tenant_id,
            purge_after=_iso(purge_after),
            audit_rows_anonymized=reassigned,
        )
        return updated

    async def hard_purge(self, tenant_id: str) -> PurgeResult:
        tenant = self._require(tenant_id)
        if tenant.status is not TenantStatus.DELETED:
            raise ConflictError(
                "hotel must be deleted before it can be purged",
                detail={"tenant_id": tenant_id, "status": tenant.status.value},
            )

        refs = self.store.list_asset_refs(tenant_id)
        deleted = failed = 0
        for ref in refs:
            try:
                ok = await run_bounded(
                    self.assets.delete_by_reference, ref, timeout=self.asset_timeout
                )
            except asyncio.TimeoutError:
                ok = False
                logger.error("purge_asset_delete_timeout", tenant_id=tenant_id, ref=ref)
            except Exception as exc:
                # Any collaborator failure is counted, never fatal
                ok = False
                logger.error(
                    "purge_asset_delete_failed",
                    tenant_id=tenant_id,
                    ref=ref,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            if ok:
                deleted += 1
            else:
                failed += 1

        with self.store.transaction():
            if not self.store.delete_tenant(tenant_id):
                raise NotFoundError("hotel not found", detail={"tenant_id": tenant_id})
        logger.info(
            "tenant_purged",
            tenant_id=tenant_id,
            code=tenant.code,
            assets_deleted=deleted,
            assets_failed=failed,
        )
        return PurgeResult(
            tenant_id=tenant_id,
            code=tenant.code,
            assets_deleted=deleted,
            assets_failed=failed,
        )
