from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Protocol, Union

from tablecode.logging import get_logger
from tablecode.service.credentials import CredentialStore
from tablecode.service.errors import AuthenticationError, ForbiddenError
from tablecode.storage.models import Tenant, TenantStatus

logger = get_logger(__name__)

OWNER_TOKEN_TYPE = "owner"
ADMIN_COOKIE_NAME = "superadmin_token"
ADMIN_COOKIE_MAX_AGE = 24 * 60 * 60
REQUESTED_WITH_VALUE = "XMLHttpRequest"

# Every owner token defect reads the same to the caller
_UNAUTHORIZED = "unauthorized"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantLookup(Protocol):
    def find_by_id(self, tenant_id: str) -> Optional[Tenant]: ...


@dataclass
class OwnerToken:
    token: str
    expires_at: datetime
    token_type: str = "Bearer"


@dataclass
class OwnerContext:
    tenant_id: str
    code: str
    tenant: Tenant
    actor_type: str = "owner"


@dataclass
class AdminContext:
    actor_type: str = "super_admin"


ActorContext = Union[OwnerContext, AdminContext]


class ActorVerifier(Protocol):
    """Resolves the acting principal from request headers and cookies, or raises.

    ``headers`` lookups must be case-insensitive for HTTP header names.
    """

    actor_type: str

    def authenticate(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> ActorContext: ...


class OwnerSessionIssuer:
    """Stateless HS256 bearer tokens for hotel owners."""

    actor_type = "owner"

    def __init__(
        self,
        store: TenantLookup,
        *,
        secret: str,
        issuer: str = "tablecode",
        ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("owner token secret is required")
        self.store = store
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl = ttl
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject "none" and any other algorithm before checking the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(
            self._sign(f"{header_b64}.{payload_b64}").encode(), sig_b64.encode()
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("type") != OWNER_TOKEN_TYPE:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload

    def issue(self, tenant: Tenant) -> OwnerToken:
        now = self._clock()
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "sub": tenant.id,
            "code": tenant.code,
            "type": OWNER_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return OwnerToken(token=self._encode_jwt(payload), expires_at=expires_at)

    def authenticate(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> OwnerContext:
        return self.verify(headers.get("authorization"))

    def verify(self, authorization: Optional[str]) -> OwnerContext:
        """Accept a bare token or an ``Authorization: Bearer`` header value."""
        token = (authorization or "").strip()
        if token[:7].lower() == "bearer ":
            token = token[7:].strip()
        if not token:
            raise AuthenticationError(_UNAUTHORIZED)
        payload = self._decode_jwt(token)
        if payload is None or not isinstance(payload.get("sub"), str):
            raise AuthenticationError(_UNAUTHORIZED)
        tenant = self.store.find_by_id(payload["sub"])
        if tenant is None or tenant.status is TenantStatus.DELETED:
            raise AuthenticationError(_UNAUTHORIZED)
        if tenant.status is TenantStatus.SUSPENDED:
            raise ForbiddenError("account suspended")
        return OwnerContext(tenant_id=tenant.id, code=tenant.code, tenant=tenant)


@dataclass(frozen=True)
class CookieSpec:
    """Parameters for setting or clearing the admin cookie."""

    key: str
    value: str
    max_age: int
    httponly: bool
    secure: bool
    samesite: str
    path: str = "/"
    domain: Optional[str] = None


class AdminSessionIssuer:
    """Super-admin cookie sessions verified by recomputing the key's HMAC.

    No server-side state: logout clears the cookie, and rotating the admin
    key or cookie secret invalidates every outstanding cookie.
    """

    actor_type = "super_admin"

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        production: bool = False,
        cookie_domain: Optional[str] = None,
    ) -> None:
        self.credentials = credentials
        self.production = production
        self.cookie_domain = cookie_domain

    def _cookie(self, value: str, max_age: int) -> CookieSpec:
        return CookieSpec(
            key=ADMIN_COOKIE_NAME,
            value=value,
            max_age=max_age,
            httponly=True,
            secure=self.production,
            samesite="strict" if self.production else "lax",
            domain=self.cookie_domain,
        )

    def login(self, key: Optional[str]) -> CookieSpec:
        if not self.credentials.verify_admin_key(key):
            raise ForbiddenError("invalid admin key")
        return self._cookie(self.credentials.admin_token(key), ADMIN_COOKIE_MAX_AGE)

    def logout(self) -> CookieSpec:
        return self._cookie("", 0)

    def authenticate(
        self, headers: Mapping[str, str], cookies: Mapping[str, str]
    ) -> AdminContext:
        return self.verify(cookies.get(ADMIN_COOKIE_NAME), headers.get("x-requested-with"))

    def verify(
        self, cookie: Optional[str], requested_with: Optional[str]
    ) -> AdminContext:
        if not self.credentials.verify_admin_token(cookie):
            raise ForbiddenError("forbidden")
        if requested_with != REQUESTED_WITH_VALUE:
            raise ForbiddenError("forbidden")
        return AdminContext()
