from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from tablecode.logging import get_logger
from tablecode.service.credentials import CredentialStore, normalize_pin
from tablecode.service.errors import AuthenticationError, ForbiddenError, ValidationError
from tablecode.service.rate_limit import (
    RateLimiters,
    admin_login_key,
    owner_login_key,
)
from tablecode.service.sessions import (
    ActorContext,
    ActorVerifier,
    AdminSessionIssuer,
    CookieSpec,
    OwnerSessionIssuer,
    OwnerToken,
)
from tablecode.service.slugs import is_valid_code, normalize_code
from tablecode.storage.common import TenantStore
from tablecode.storage.models import Tenant, TenantStatus

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"
_sysrand = secrets.SystemRandom()


@dataclass
class OwnerLogin:
    token: OwnerToken
    tenant: Tenant


class AuthService:
    """Owner code+PIN login and the super-admin key login."""

    def __init__(
        self,
        store: TenantStore,
        credentials: CredentialStore,
        owner_sessions: OwnerSessionIssuer,
        admin_sessions: AdminSessionIssuer,
        limiters: RateLimiters,
        *,
        admin_failure_delay: Tuple[float, float] = (0.5, 1.0),
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.owner_sessions = owner_sessions
        self.admin_sessions = admin_sessions
        self.limiters = limiters
        self.admin_failure_delay = admin_failure_delay
        self.logger = logger
        self.verifiers: Dict[str, ActorVerifier] = {
            verifier.actor_type: verifier for verifier in (owner_sessions, admin_sessions)
        }

    async def owner_login(
        self, code: Optional[str], pin: Optional[str], *, ip: str
    ) -> OwnerLogin:
        await self.limiters.owner_login.enforce(owner_login_key(code or ""))
        normalized = normalize_code(code or "")
        if not is_valid_code(normalized):
            raise ValidationError.for_field("code", "must be a 6 character hotel code")
        clean_pin = normalize_pin(pin)

        tenant = self.store.find_by_code(normalized)
        if tenant is None:
            self.credentials.verify_dummy(clean_pin)
            self.logger.warning("owner_login_failed", code=normalized, ip=ip, reason="unknown")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        # Deleted tenants carry an invalidated hash, so they fail here too
        if not self.credentials.verify(clean_pin, tenant.pin_hash):
            self.logger.warning("owner_login_failed", code=normalized, ip=ip, reason="pin")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if tenant.status is TenantStatus.DELETED:
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if tenant.status is TenantStatus.SUSPENDED:
            raise ForbiddenError("account suspended")

        token = self.owner_sessions.issue(tenant)
        self.logger.info("owner_login", tenant_id=tenant.id)
        return OwnerLogin(token=token, tenant=tenant)

    def authenticate(
        self, actor_type: str, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> ActorContext:
        """Resolve the request principal with the strategy for ``actor_type``."""
        return self.verifiers[actor_type].authenticate(headers, cookies)

    async def admin_login(self, key: Optional[str], *, ip: str) -> CookieSpec:
        await self.limiters.admin_login.enforce(admin_login_key(ip))
        try:
            cookie = self.admin_sessions.login(key)
        except ForbiddenError:
            self.logger.warning("admin_login_failed", ip=ip)
            low, high = self.admin_failure_delay
            if high > 0:
                await asyncio.sleep(_sysrand.uniform(low, high))
            raise
        self.logger.info("admin_login", ip=ip)
        return cookie

    def admin_logout(self) -> CookieSpec:
        return self.admin_sessions.logout()
