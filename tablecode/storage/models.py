from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantStatus(str, Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"

    @property
    def is_live(self) -> bool:
        return self is not TenantStatus.DELETED


class ActorType(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    DELETED_USER = "deleted_user"


# Plans accepted at onboarding; legacy plan names remain editable.
CREATE_PLANS = ("STARTER", "STANDARD", "PRO")
EDIT_PLANS = ("FREE", "BASIC", "PREMIUM", "STARTER", "STANDARD", "PRO")
THEMES = ("classic", "warm", "nature", "elegant")

# Stored in place of a PIN hash once a tenant is deleted; not a valid argon2 hash.
INVALIDATED_PIN_HASH = "INVALIDATED"

# Anonymized placeholders written by soft delete.
DELETED_TENANT_NAME = "Deleted Hotel"
DELETED_TENANT_PHONE = "0000000000"


@dataclass
class Tenant:
    id: str
    code: str
    name: str
    city: str
    phone: str
    pin_hash: str
    email: Optional[str] = None
    plan: str = "STARTER"
    theme: str = "classic"
    status: TenantStatus = TenantStatus.TRIAL
    pin_changed_at: Optional[datetime] = None
    pin_reset_count: int = 0
    last_pin_reset_at: Optional[datetime] = None
    last_pin_reset_by: Optional[str] = None
    trial_ends: Optional[datetime] = None
    paid_until: Optional[datetime] = None
    last_payment_note: Optional[str] = None
    views: int = 0
    last_view_at: Optional[datetime] = None
    consented_at: Optional[datetime] = None
    consent_version: Optional[str] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    purge_after: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        *,
        code: str,
        name: str,
        city: str,
        phone: str,
        pin_hash: str,
        email: Optional[str] = None,
        plan: str = "STARTER",
        trial_ends: Optional[datetime] = None,
        consent_version: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Tenant":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            code=code,
            name=name,
            city=city,
            phone=phone,
            pin_hash=pin_hash,
            email=email,
            plan=plan,
            status=TenantStatus.TRIAL,
            pin_changed_at=created,
            trial_ends=trial_ends,
            consented_at=created,
            consent_version=consent_version,
            created_at=created,
            updated_at=created,
        )

    def public_view(self) -> Dict[str, Any]:
        """Admin-facing fields; never includes the PIN hash."""
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "city": self.city,
            "phone": self.phone,
            "email": self.email or "",
            "plan": self.plan,
            "theme": self.theme,
            "status": self.status.value,
            "views": self.views,
            "trial_ends": self.trial_ends,
            "paid_until": self.paid_until,
            "last_payment_note": self.last_payment_note,
            "pin_reset_count": self.pin_reset_count,
            "last_pin_reset_at": self.last_pin_reset_at,
            "last_pin_reset_by": self.last_pin_reset_by,
            "deleted_at": self.deleted_at,
            "deleted_by": self.deleted_by,
            "purge_after": self.purge_after,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Category:
    id: str
    tenant_id: str
    name: str
    sort_order: int = 0
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class MenuItem:
    id: str
    tenant_id: str
    category_id: str
    name: str
    price: int = 0
    image_ref: Optional[str] = None
    is_available: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AuditLogEntry:
    id: str
    tenant_id: str
    actor_type: str
    action: str
    entity_type: str
    entity_id: Optional[str]
    old_value: Dict | None = None
    new_value: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        tenant_id: str,
        actor_type: str,
        action: str,
        *,
        entity_type: str = "Hotel",
        entity_id: Optional[str] = None,
        old_value: Dict | None = None,
        new_value: Dict | None = None,
        now: Optional[datetime] = None,
    ) -> "AuditLogEntry":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            actor_type=actor_type,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id if entity_id is not None else tenant_id,
            old_value=old_value,
            new_value=new_value,
            created_at=now or _utcnow(),
        )


class PinResetState(str, Enum):
    REQUESTED = "REQUESTED"
    VERIFIED = "VERIFIED"


@dataclass
class PinResetRequest:
    """Pending forgot-PIN state; only hashes of the OTP and reset token are kept."""

    code: str
    otp_hash: str
    expires_at: datetime
    attempts_remaining: int
    fingerprint_hash: str
    state: PinResetState = PinResetState.REQUESTED
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "otp_hash": self.otp_hash,
            "expires_at": self.expires_at.isoformat(),
            "attempts_remaining": self.attempts_remaining,
            "fingerprint_hash": self.fingerprint_hash,
            "state": self.state.value,
            "reset_token_hash": self.reset_token_hash,
            "reset_expires_at": (
                self.reset_expires_at.isoformat() if self.reset_expires_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PinResetRequest":
        reset_expires = data.get("reset_expires_at")
        return cls(
            code=data["code"],
            otp_hash=data["otp_hash"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempts_remaining=int(data["attempts_remaining"]),
            fingerprint_hash=data["fingerprint_hash"],
            state=PinResetState(data.get("state", PinResetState.REQUESTED.value)),
            reset_token_hash=data.get("reset_token_hash"),
            reset_expires_at=datetime.fromisoformat(reset_expires) if reset_expires else None,
        )

    @property
    def active_until(self) -> datetime:
        """Absolute expiry of whichever stage the request is in."""
        if self.state is PinResetState.VERIFIED and self.reset_expires_at:
            return self.reset_expires_at
        return self.expires_at
