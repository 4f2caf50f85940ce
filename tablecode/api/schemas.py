from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound for free-text request fields before service-level validation
MAX_STRING_LENGTH = 1024


def _normalize_unicode(value: Optional[str]) -> Optional[str]:
    """NFKC-normalize display text and strip invisible spoofing characters.

    Zero-width characters (U+200B..U+200D, U+FEFF) and bidi overrides
    (U+202A..U+202E, U+2066..U+2069) are dropped before normalization.
    """
    if value is None:
        return None
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "expired",
    "rate_limited",
    "validation_error",
    "invalid_otp",
    "conflict",
    "exhausted_retries",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Owner auth


class OwnerLoginRequest(BaseModel):
    code: str = Field(..., max_length=32)
    pin: str = Field(..., max_length=32)


class OwnerLoginResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    expires_at: datetime
    tenant_id: str
    code: str
    name: str


class OwnerProfileResponse(BaseModel):
    id: str
    code: str
    name: str
    city: str
    plan: str
    theme: str
    status: str
    views: int
    trial_ends: Optional[datetime] = None
    paid_until: Optional[datetime] = None
    menu_url: str


class PublicMenuResponse(BaseModel):
    code: str
    name: str
    city: str
    theme: str


class ThemeRequest(BaseModel):
    theme: str = Field(..., max_length=32)


class ForgotPinRequest(BaseModel):
    code: str = Field(..., max_length=32)
    email: str = Field(..., max_length=254)
    fingerprint: str = Field(..., max_length=MAX_STRING_LENGTH)


class ForgotPinVerifyRequest(BaseModel):
    code: str = Field(..., max_length=32)
    otp: str = Field(..., max_length=32)
    fingerprint: str = Field(..., max_length=MAX_STRING_LENGTH)


class ForgotPinVerifyResponse(BaseModel):
    reset_token: str
    expires_at: datetime


class ForgotPinResetRequest(BaseModel):
    code: str = Field(..., max_length=32)
    reset_token: str = Field(..., max_length=MAX_STRING_LENGTH)
    new_pin: str = Field(..., max_length=32)
    fingerprint: str = Field(..., max_length=MAX_STRING_LENGTH)


# Super admin


class AdminLoginRequest(BaseModel):
    admin_key: str = Field(..., max_length=MAX_STRING_LENGTH)


class CreateTenantRequest(BaseModel):
    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    city: str = Field(..., max_length=MAX_STRING_LENGTH)
    phone: str = Field(..., max_length=64)
    pin: str = Field(..., max_length=32)
    email: Optional[str] = Field(default=None, max_length=254)
    plan: str = Field(default="STARTER", max_length=32)

    @field_validator("name", "city")
    @classmethod
    def _clean_display_text(cls, value: str) -> str:
        return _normalize_unicode(value)


class UpdateTenantRequest(BaseModel):
    name: str = Field(..., max_length=MAX_STRING_LENGTH)
    city: str = Field(..., max_length=MAX_STRING_LENGTH)
    phone: str = Field(..., max_length=64)
    plan: str = Field(..., max_length=32)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("name", "city")
    @classmethod
    def _clean_display_text(cls, value: str) -> str:
        return _normalize_unicode(value)


class StatusRequest(BaseModel):
    """Billing status change; ``paid_until`` left out keeps the current value."""

    model_config = ConfigDict(extra="ignore")

    status: str = Field(..., max_length=32)
    paid_until: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class TenantResponse(BaseModel):
    id: str
    code: str
    name: str
    city: str
    phone: str
    email: str = ""
    plan: str
    theme: str
    status: str
    views: int = 0
    trial_ends: Optional[datetime] = None
    paid_until: Optional[datetime] = None
    last_payment_note: Optional[str] = None
    pin_reset_count: int = 0
    last_pin_reset_at: Optional[datetime] = None
    last_pin_reset_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    purge_after: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class AuditEntryResponse(BaseModel):
    id: str
    actor_type: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    old_value: Optional[dict] = None
    new_value: Optional[dict] = None
    created_at: datetime


class TenantDetailResponse(BaseModel):
    tenant: TenantResponse
    menu_url: str
    recent_audit: List[AuditEntryResponse] = Field(default_factory=list)


class TenantListResponse(BaseModel):
    items: List[TenantResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class CreateTenantResponse(BaseModel):
    """Returned once at onboarding; the plaintext PIN is never retrievable later."""

    tenant: TenantResponse
    pin: str
    menu_url: str
    dashboard_url: str


class AdminPinResetResponse(BaseModel):
    tenant_id: str
    code: str
    pin: str
    pin_reset_count: int


class PinResetCountResponse(BaseModel):
    pin_reset_count: int
    last_pin_reset_at: Optional[datetime] = None
    last_pin_reset_by: Optional[str] = None


class PurgeResponse(BaseModel):
    tenant_id: str
    code: str
    assets_deleted: int
    assets_failed: int
