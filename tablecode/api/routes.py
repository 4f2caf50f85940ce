from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from tablecode.api.schemas import (
    AdminLoginRequest,
    AdminPinResetResponse,
    AuditEntryResponse,
    CreateTenantRequest,
    CreateTenantResponse,
    Envelope,
    ForgotPinRequest,
    ForgotPinResetRequest,
    ForgotPinVerifyRequest,
    ForgotPinVerifyResponse,
    OwnerLoginRequest,
    OwnerLoginResponse,
    OwnerProfileResponse,
    PinResetCountResponse,
    PublicMenuResponse,
    PurgeResponse,
    StatusRequest,
    TenantDetailResponse,
    TenantListResponse,
    TenantResponse,
    ThemeRequest,
    UpdateTenantRequest,
)
from tablecode.logging import get_logger
from tablecode.service.errors import ValidationError
from tablecode.service.rate_limit import api_key, pin_reset_key
from tablecode.service.runtime import get_runtime
from tablecode.service.sessions import (
    AdminContext,
    AdminSessionIssuer,
    CookieSpec,
    OwnerContext,
    OwnerSessionIssuer,
)
from tablecode.service.tenants import UNSET
from tablecode.storage.models import AuditLogEntry, Tenant

logger = get_logger(__name__)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_api_rate_limit(request: Request) -> None:
    runtime = get_runtime()
    await runtime.limiters.api.enforce(api_key(_client_ip(request)))


router = APIRouter(dependencies=[Depends(enforce_api_rate_limit)])


async def get_owner(request: Request) -> OwnerContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(OwnerSessionIssuer.actor_type, request.headers, request.cookies)


async def get_admin(request: Request) -> AdminContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(AdminSessionIssuer.actor_type, request.headers, request.cookies)


def _tenant_id(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise ValidationError.for_field("id", "must be a UUID")


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(**tenant.public_view())


def _audit_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_type=entry.actor_type,
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        old_value=entry.old_value,
        new_value=entry.new_value,
        created_at=entry.created_at,
    )


def _apply_cookie(response: Response, cookie: CookieSpec) -> None:
    response.set_cookie(
        key=cookie.key,
        value=cookie.value,
        max_age=cookie.max_age,
        httponly=cookie.httponly,
        secure=cookie.secure,
        samesite=cookie.samesite,
        path=cookie.path,
        domain=cookie.domain,
    )


@router.get("/health", response_model=Envelope, tags=["system"])
async def health():
    return Envelope(status="ok", data={"status": "healthy"})


# Owner


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def owner_login(body: OwnerLoginRequest, request: Request):
    runtime = get_runtime()
    login = await runtime.auth.owner_login(body.code, body.pin, ip=_client_ip(request))
    return Envelope(
        status="ok",
        data=OwnerLoginResponse(
            token=login.token.token,
            token_type=login.token.token_type,
            expires_at=login.token.expires_at,
            tenant_id=login.tenant.id,
            code=login.tenant.code,
            name=login.tenant.name,
        ),
    )


@router.get("/menu/{code}", response_model=Envelope, tags=["public"])
async def public_menu(code: str, response: Response):
    runtime = get_runtime()
    tenant = await runtime.tenants.public_menu(code)
    response.headers["Cache-Control"] = "public, max-age=60"
    return Envelope(
        status="ok",
        data=PublicMenuResponse(
            code=tenant.code, name=tenant.name, city=tenant.city, theme=tenant.theme
        ),
    )


@router.get("/me", response_model=Envelope, tags=["owner"])
async def owner_profile(owner: OwnerContext = Depends(get_owner)):
    runtime = get_runtime()
    tenant = owner.tenant
    return Envelope(
        status="ok",
        data=OwnerProfileResponse(
            id=tenant.id,
            code=tenant.code,
            name=tenant.name,
            city=tenant.city,
            plan=tenant.plan,
            theme=tenant.theme,
            status=tenant.status.value,
            views=tenant.views,
            trial_ends=tenant.trial_ends,
            paid_until=tenant.paid_until,
            menu_url=runtime.tenants.menu_url(tenant.code),
        ),
    )


@router.patch("/settings/theme", response_model=Envelope, tags=["owner"])
async def change_theme(body: ThemeRequest, owner: OwnerContext = Depends(get_owner)):
    runtime = get_runtime()
    tenant = await runtime.tenants.change_theme(owner.tenant_id, body.theme)
    return Envelope(status="ok", data={"theme": tenant.theme})


@router.post("/auth/forgot-pin/request", response_model=Envelope, tags=["auth"])
async def forgot_pin_request(body: ForgotPinRequest, request: Request):
    runtime = get_runtime()
    message = await runtime.forgot_pin.request(
        body.code, body.email, body.fingerprint, ip=_client_ip(request)
    )
    # Same acknowledgement whether or not the details matched an account
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/forgot-pin/verify", response_model=Envelope, tags=["auth"])
async def forgot_pin_verify(body: ForgotPinVerifyRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.forgot_pin.verify(
        body.code, body.otp, body.fingerprint, ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=ForgotPinVerifyResponse(
            reset_token=result.reset_token, expires_at=result.expires_at
        ),
    )


@router.post("/auth/forgot-pin/reset", response_model=Envelope, tags=["auth"])
async def forgot_pin_reset(body: ForgotPinResetRequest):
    runtime = get_runtime()
    result = await runtime.forgot_pin.reset(
        body.code, body.reset_token, body.new_pin, body.fingerprint
    )
    return Envelope(
        status="ok",
        data={"status": "reset", "pin_changed_at": result.pin_changed_at},
    )


# Super admin


@router.post("/auth/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    cookie = await runtime.auth.admin_login(body.admin_key, ip=_client_ip(request))
    _apply_cookie(response, cookie)
    return Envelope(status="ok", data={"authenticated": True})


@router.post("/auth/admin/logout", response_model=Envelope, tags=["admin"])
async def admin_logout(response: Response):
    runtime = get_runtime()
    _apply_cookie(response, runtime.auth.admin_logout())
    return Envelope(status="ok", data={"authenticated": False})


@router.get("/auth/admin/me", response_model=Envelope, tags=["admin"])
async def admin_me(admin: AdminContext = Depends(get_admin)):
    return Envelope(status="ok", data={"authenticated": True, "role": admin.actor_type})


@router.post("/admin/hotels", response_model=Envelope, status_code=201, tags=["admin"])
async def create_hotel(body: CreateTenantRequest, admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    created = await runtime.tenants.create_tenant(
        name=body.name,
        city=body.city,
        phone=body.phone,
        pin=body.pin,
        email=body.email,
        plan=body.plan,
    )
    return Envelope(
        status="ok",
        data=CreateTenantResponse(
            tenant=_tenant_response(created.tenant),
            pin=created.pin,
            menu_url=created.menu_url,
            dashboard_url=created.dashboard_url,
        ),
    )


@router.get("/admin/hotels", response_model=Envelope, tags=["admin"])
async def list_hotels(
    status: Optional[str] = Query(None, max_length=32),
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    admin: AdminContext = Depends(get_admin),
):
    runtime = get_runtime()
    result = await runtime.tenants.list_tenants(
        status=status, search=search, page=page, limit=limit
    )
    return Envelope(
        status="ok",
        data=TenantListResponse(
            items=[_tenant_response(t) for t in result.items],
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/admin/hotels/{hotel_id}", response_model=Envelope, tags=["admin"])
async def get_hotel(hotel_id: str, admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    tenant_id = _tenant_id(hotel_id)
    tenant = await runtime.tenants.get_tenant(tenant_id)
    audit = await runtime.tenants.recent_audit(tenant_id)
    return Envelope(
        status="ok",
        data=TenantDetailResponse(
            tenant=_tenant_response(tenant),
            menu_url=runtime.tenants.menu_url(tenant.code),
            recent_audit=[_audit_response(entry) for entry in audit],
        ),
    )


@router.patch("/admin/hotels/{hotel_id}", response_model=Envelope, tags=["admin"])
async def update_hotel(
    hotel_id: str, body: UpdateTenantRequest, admin: AdminContext = Depends(get_admin)
):
    runtime = get_runtime()
    tenant = await runtime.tenants.update_details(
        _tenant_id(hotel_id),
        name=body.name,
        city=body.city,
        phone=body.phone,
        plan=body.plan,
        email=body.email,
    )
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.patch("/admin/hotels/{hotel_id}/status", response_model=Envelope, tags=["admin"])
async def set_hotel_status(
    hotel_id: str, body: StatusRequest, admin: AdminContext = Depends(get_admin)
):
    runtime = get_runtime()
    paid_until = body.paid_until if "paid_until" in body.model_fields_set else UNSET
    tenant = await runtime.tenants.set_status(
        _tenant_id(hotel_id), body.status, paid_until=paid_until, note=body.note
    )
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.post("/admin/hotels/{hotel_id}/reset-pin", response_model=Envelope, tags=["admin"])
async def reset_hotel_pin(
    hotel_id: str, request: Request, admin: AdminContext = Depends(get_admin)
):
    runtime = get_runtime()
    tenant_id = _tenant_id(hotel_id)
    await runtime.limiters.pin_reset.enforce(pin_reset_key(_client_ip(request), tenant_id))
    reset = await runtime.tenants.reset_pin(tenant_id)
    return Envelope(
        status="ok",
        data=AdminPinResetResponse(
            tenant_id=reset.tenant.id,
            code=reset.tenant.code,
            pin=reset.pin,
            pin_reset_count=reset.tenant.pin_reset_count,
        ),
    )


@router.get(
    "/admin/hotels/{hotel_id}/pin-reset-count", response_model=Envelope, tags=["admin"]
)
async def hotel_pin_reset_count(hotel_id: str, admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    info = await runtime.tenants.pin_reset_info(_tenant_id(hotel_id))
    return Envelope(
        status="ok",
        data=PinResetCountResponse(
            pin_reset_count=info.pin_reset_count,
            last_pin_reset_at=info.last_pin_reset_at,
            last_pin_reset_by=info.last_pin_reset_by,
        ),
    )


@router.delete("/admin/hotels/{hotel_id}", response_model=Envelope, tags=["admin"])
async def delete_hotel(hotel_id: str, admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    tenant = await runtime.tenants.soft_delete(_tenant_id(hotel_id), actor=admin.actor_type)
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.delete("/admin/hotels/{hotel_id}/purge", response_model=Envelope, tags=["admin"])
async def purge_hotel(hotel_id: str, admin: AdminContext = Depends(get_admin)):
    runtime = get_runtime()
    result = await runtime.tenants.hard_purge(_tenant_id(hotel_id))
    return Envelope(
        status="ok",
        data=PurgeResponse(
            tenant_id=result.tenant_id,
            code=result.code,
            assets_deleted=result.assets_deleted,
            assets_failed=result.assets_failed,
        ),
    )
