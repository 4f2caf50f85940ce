from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tablecode.config import Settings
from tablecode.logging import get_logger
from tablecode.service.errors import ValidationError
from tablecode.storage.models import INVALIDATED_PIN_HASH

logger = get_logger(__name__)

PIN_LENGTH = 8
OTP_LENGTH = 6

# ASCII digits only; ``\d`` would also accept other scripts' digits
_PIN_PATTERN = re.compile(r"^[0-9]{8}$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")


def normalize_pin(value: Optional[str], *, field: str = "pin") -> str:
    pin = (value or "").strip()
    if not _PIN_PATTERN.match(pin):
        raise ValidationError.for_field(field, "must be exactly 8 digits")
    return pin


def normalize_otp(value: Optional[str], *, field: str = "otp") -> str:
    otp = (value or "").strip()
    if not _OTP_PATTERN.match(otp):
        raise ValidationError.for_field(field, "must be exactly 6 digits")
    return otp


def weak_pin_reason(pin: str) -> Optional[str]:
    """Return why ``pin`` is guessable, or None when it passes."""
    digits = [int(ch) for ch in pin]
    if len(set(digits)) == 1:
        return "all digits are the same"
    steps = {b - a for a, b in zip(digits, digits[1:])}
    if steps == {1}:
        return "ascending sequence"
    if steps == {-1}:
        return "descending sequence"
    half = len(pin) // 2
    if pin[:half] == pin[half:]:
        return "repeated halves"
    if pin == pin[:2] * (len(pin) // 2):
        return "repeated pattern"
    if pin[:3] == pin[3:6]:
        return "repeated pattern"
    return None


def check_pin_strength(pin: str, *, field: str = "pin") -> None:
    reason = weak_pin_reason(pin)
    if reason:
        raise ValidationError(
            "PIN is too easy to guess",
            detail={"field": field, "reason": reason},
        )


class CredentialStore:
    """Hashes and verifies owner PINs and the super-admin key."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        cookie_secret: Optional[str] = None,
        admin_key: Optional[str] = None,
        digest_key: Optional[str] = None,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        self._cookie_secret = cookie_secret
        self._admin_token = (
            self._hmac_hex(cookie_secret, admin_key)
            if cookie_secret and admin_key
            else None
        )
        self._digest_key = (digest_key or secrets.token_urlsafe(32)).encode()
        # Verified against when the tenant is unknown so timing stays uniform
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialStore":
        return cls(
            time_cost=settings.pin_hash_time_cost,
            memory_cost=settings.pin_hash_memory_cost,
            cookie_secret=settings.cookie_secret,
            admin_key=settings.admin_key,
            digest_key=settings.jwt_secret,
        )

    @staticmethod
    def _hmac_hex(secret: str, message: str) -> str:
        return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, hashed: Optional[str]) -> bool:
        if not hashed or hashed == INVALIDATED_PIN_HASH:
            # Same argon2 cost as a real mismatch
            self._verify_against(self._dummy_hash, secret)
            return False
        return self._verify_against(hashed, secret)

    def _verify_against(self, hashed: str, secret: str) -> bool:
        try:
            return self._hasher.verify(hashed, secret)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def verify_dummy(self, secret: str) -> bool:
        """Spend the same hashing cost as ``verify`` for an unknown account."""
        self._verify_against(self._dummy_hash, secret)
        return False

    def admin_token(self, key: str) -> str:
        if not self._cookie_secret:
            raise RuntimeError("COOKIE_SECRET is not configured")
        return self._hmac_hex(self._cookie_secret, key)

    @property
    def admin_configured(self) -> bool:
        return self._admin_token is not None

    def verify_admin_key(self, key: Optional[str]) -> bool:
        if not key or self._admin_token is None:
            return False
        return hmac.compare_digest(self.admin_token(key), self._admin_token)

    def verify_admin_token(self, token: Optional[str]) -> bool:
        """Check a cookie value against the expected admin token."""
        if not token or self._admin_token is None:
            return False
        return hmac.compare_digest(token.encode(), self._admin_token.encode())

    def digest(self, value: str) -> str:
        """Keyed digest for short-lived secrets (OTPs, reset tokens, fingerprints)."""
        return hmac.new(self._digest_key, value.encode(), hashlib.sha256).hexdigest()

    def matches_digest(self, value: str, expected: Optional[str]) -> bool:
        if not expected:
            return False
        return hmac.compare_digest(self.digest(value), expected)

    @staticmethod
    def generate_pin() -> str:
        while True:
            pin = str(10_000_000 + secrets.randbelow(90_000_000))
            if weak_pin_reason(pin) is None:
                return pin

    @staticmethod
    def generate_otp() -> str:
        return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"
