"""Owner self-service PIN recovery.

States run IDLE -> REQUESTED -> VERIFIED -> RESET, with the pending request
deleted on success, on the last failed attempt, and when it is found expired.
Only digests of the OTP, fingerprint and reset token are stored.
"""

from __future__ import annotations

import asyncio
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from tablecode.logging import get_logger
from tablecode.service.collaborators import Notifier, run_bounded
from tablecode.service.credentials import (
    CredentialStore,
    check_pin_strength,
    normalize_otp,
    normalize_pin,
)
from tablecode.service.errors import (
    ForbiddenError,
    InternalError,
    InvalidOtpError,
    PinResetExpiredError,
    ValidationError,
)
from tablecode.service.rate_limit import RateLimiter, forgot_pin_key
from tablecode.service.slugs import is_valid_code, normalize_code
from tablecode.storage.common import AuditStore, TenantStore
from tablecode.storage.models import (
    ActorType,
    AuditLogEntry,
    PinResetRequest,
    PinResetState,
)
from tablecode.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GENERIC_ACK = "If the details match an account, a verification code has been sent."
MAX_FINGERPRINT_LENGTH = 256


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PinResetStore(Protocol):
    async def get(self, code: str) -> Optional[PinResetRequest]: ...

    async def put(self, request: PinResetRequest, ttl_seconds: int) -> None: ...

    async def delete(self, code: str) -> None: ...


class MemoryPinResetStore:
    """Dict-backed pending requests; expiry is enforced by the flow's clock."""

    def __init__(self) -> None:
        self._pending: Dict[str, PinResetRequest] = {}
        self._lock = threading.Lock()

    async def get(self, code: str) -> Optional[PinResetRequest]:
        with self._lock:
            return self._pending.get(code)

    async def put(self, request: PinResetRequest, ttl_seconds: int) -> None:
        with self._lock:
            self._pending[request.code] = request

    async def delete(self, code: str) -> None:
        with self._lock:
            self._pending.pop(code, None)

    def __len__(self) -> int:
        return len(self._pending)


class RedisPinResetStore:
    """Pending requests as Redis keys that expire with the request."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def get(self, code: str) -> Optional[PinResetRequest]:
        payload = await self.cache.get_pin_reset(code)
        if payload is None:
            return None
        try:
            return PinResetRequest.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("pin_reset_payload_invalid")
            return None

    async def put(self, request: PinResetRequest, ttl_seconds: int) -> None:
        await self.cache.set_pin_reset(request.code, request.to_dict(), ttl_seconds)

    async def delete(self, code: str) -> None:
        await self.cache.delete_pin_reset(code)


@dataclass
class VerifyResult:
    reset_token: str
    expires_at: datetime


@dataclass
class ResetResult:
    tenant_id: str
    pin_changed_at: datetime


class ForgotPinFlow:
    def __init__(
        self,
        store: TenantStore,
        audit: AuditStore,
        credentials: CredentialStore,
        pending: PinResetStore,
        notifier: Notifier,
        *,
        request_limiter: RateLimiter,
        verify_limiter: RateLimiter,
        otp_ttl: timedelta = timedelta(minutes=10),
        reset_token_ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 3,
        notify_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.credentials = credentials
        self.pending = pending
        self.notifier = notifier
        self.request_limiter = request_limiter
        self.verify_limiter = verify_limiter
        self.otp_ttl = otp_ttl
        self.reset_token_ttl = reset_token_ttl
        self.max_attempts = max_attempts
        self.notify_timeout = notify_timeout
        self._clock = clock
        # Serializes read-modify-write of pending requests within this process
        self._lock = asyncio.Lock()

    @staticmethod
    def _code(value: Optional[str]) -> str:
        code = normalize_code(value or "")
        if not is_valid_code(code):
            raise ValidationError.for_field("code", "must be a 6 character hotel code")
        return code

    @staticmethod
    def _fingerprint(value: Optional[str]) -> str:
        fingerprint = (value or "").strip()
        if not fingerprint or len(fingerprint) > MAX_FINGERPRINT_LENGTH:
            raise ValidationError.for_field("fingerprint", "missing or too long")
        return fingerprint

    def _ttl_seconds(self, request: PinResetRequest, now: datetime) -> int:
        return max(1, int((request.active_until - now).total_seconds()))

    async def _load_active(
        self, code: str, state: PinResetState, now: datetime
    ) -> PinResetRequest:
        request = await self.pending.get(code)
        if request is None:
            raise PinResetExpiredError("reset request expired or not found")
        if request.active_until <= now:
            await self.pending.delete(code)
            raise PinResetExpiredError("reset request expired or not found")
        if request.state is not state:
            raise PinResetExpiredError("reset request expired or not found")
        return request

    async def request(
        self,
        code: Optional[str],
        email: Optional[str],
        fingerprint: Optional[str],
        *,
        ip: str,
    ) -> str:
        await self.request_limiter.enforce(forgot_pin_key(ip, code or ""))
        normalized = self._code(code)
        fp = self._fingerprint(fingerprint)
        supplied_email = (email or "").strip()

        tenant = self.store.find_by_code(normalized)
        if (
            tenant is None
            or not tenant.status.is_live
            or not tenant.email
            or tenant.email.casefold() != supplied_email.casefold()
        ):
            logger.info("forgot_pin_no_match", code=normalized)
            return GENERIC_ACK

        now = self._clock()
        otp = self.credentials.generate_otp()
        pending = PinResetRequest(
            code=normalized,
            otp_hash=self.credentials.digest(otp),
            expires_at=now + self.otp_ttl,
            attempts_remaining=self.max_attempts,
            fingerprint_hash=self.credentials.digest(fp),
        )
        async with self._lock:
            await self.pending.put(pending, self._ttl_seconds(pending, now))

        try:
            sent = await run_bounded(
                self.notifier.send_otp, tenant.email, otp, timeout=self.notify_timeout
            )
        except asyncio.TimeoutError:
            sent = False
            logger.error("forgot_pin_notify_timeout", tenant_id=tenant.id)
        except Exception as exc:
            sent = False
            logger.error(
                "forgot_pin_notify_failed",
                tenant_id=tenant.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if not sent:
            await self.pending.delete(normalized)
            raise InternalError("could not send verification code")

        logger.info("forgot_pin_requested", tenant_id=tenant.id)
        return GENERIC_ACK

    async def verify(
        self,
        code: Optional[str],
        otp: Optional[str],
        fingerprint: Optional[str],
        *,
        ip: str,
    ) -> VerifyResult:
        await self.verify_limiter.enforce(forgot_pin_key(ip, code or ""))
        normalized = self._code(code)
        supplied_otp = normalize_otp(otp)
        fp = self._fingerprint(fingerprint)

        async with self._lock:
            now = self._clock()
            request = await self._load_active(normalized, PinResetState.REQUESTED, now)
            if not self.credentials.matches_digest(fp, request.fingerprint_hash):
                logger.warning("forgot_pin_fingerprint_mismatch", code=normalized)
                raise ForbiddenError("forbidden")

            if not self.credentials.matches_digest(supplied_otp, request.otp_hash):
                remaining = request.attempts_remaining - 1
                if remaining <= 0:
                    await self.pending.delete(normalized)
                    logger.warning("forgot_pin_attempts_exhausted", code=normalized)
                else:
                    await self.pending.put(
                        replace(request, attempts_remaining=remaining),
                        self._ttl_seconds(request, now),
                    )
                raise InvalidOtpError(max(0, remaining))

            reset_token = secrets.token_urlsafe(32)
            verified = replace(
                request,
                state=PinResetState.VERIFIED,
                reset_token_hash=self.credentials.digest(reset_token),
                reset_expires_at=now + self.reset_token_ttl,
            )
            await self.pending.put(verified, self._ttl_seconds(verified, now))

        logger.info("forgot_pin_verified", code=normalized)
        return VerifyResult(reset_token=reset_token, expires_at=verified.active_until)

    async def reset(
        self,
        code: Optional[str],
        reset_token: Optional[str],
        new_pin: Optional[str],
        fingerprint: Optional[str],
    ) -> ResetResult:
        normalized = self._code(code)
        pin = normalize_pin(new_pin, field="new_pin")
        check_pin_strength(pin, field="new_pin")
        fp = self._fingerprint(fingerprint)

        async with self._lock:
            now = self._clock()
            request = await self._load_active(normalized, PinResetState.VERIFIED, now)
            token_ok = self.credentials.matches_digest(
                reset_token or "", request.reset_token_hash
            )
            fp_ok = self.credentials.matches_digest(fp, request.fingerprint_hash)
            if not (token_ok and fp_ok):
                logger.warning("forgot_pin_reset_rejected", code=normalized)
                raise ForbiddenError("forbidden")

            tenant = self.store.find_by_code(normalized)
            if tenant is None or not tenant.status.is_live:
                await self.pending.delete(normalized)
                raise PinResetExpiredError("reset request expired or not found")

            pin_hash = self.credentials.hash(pin)
            with self.store.transaction():
                updated = self.store.record_pin_change(
                    tenant.id, pin_hash, reset_by="owner", now=now
                )
                if updated is None:
                    raise PinResetExpiredError("reset request expired or not found")
                self.audit.append_audit(
                    AuditLogEntry.new(
                        tenant.id,
                        ActorType.OWNER.value,
                        "pin_reset",
                        new_value={
                            "pin_changed_at": now.isoformat(),
                            "pin_reset_count": updated.pin_reset_count,
                            "reset_by": "owner",
                        },
                        now=now,
                    )
                )
            await self.pending.delete(normalized)

        logger.info("forgot_pin_reset", tenant_id=tenant.id)
        return ResetResult(tenant_id=tenant.id, pin_changed_at=now)


__all__ = [
    "ForgotPinFlow",
    "GENERIC_ACK",
    "MemoryPinResetStore",
    "PinResetStore",
    "RedisPinResetStore",
    "ResetResult",
    "VerifyResult",
]
