"""Tests for PIN hashing, PIN policy and the admin key checks."""

import statistics
import time

import pytest

from tablecode.service.credentials import (
    CredentialStore,
    check_pin_strength,
    normalize_otp,
    normalize_pin,
    weak_pin_reason,
)
from tablecode.service.errors import ValidationError
from tablecode.storage.models import INVALIDATED_PIN_HASH


class TestHashing:
    def test_verify_roundtrip(self, credentials):
        hashed = credentials.hash("59273841")
        assert hashed != "59273841"
        assert hashed.startswith("$argon2id$")
        assert credentials.verify("59273841", hashed)

    def test_wrong_same_length_secret_fails(self, credentials):
        hashed = credentials.hash("59273841")
        assert not credentials.verify("59273842", hashed)

    def test_hashes_are_salted(self, credentials):
        assert credentials.hash("59273841") != credentials.hash("59273841")

    def test_invalidated_or_malformed_hash_never_verifies(self, credentials):
        assert not credentials.verify("59273841", INVALIDATED_PIN_HASH)
        assert not credentials.verify("59273841", "not-a-hash")
        assert not credentials.verify("59273841", None)

    def test_dummy_verify_is_always_false(self, credentials):
        assert credentials.verify_dummy("59273841") is False


class TestPinPolicy:
    @pytest.mark.parametrize("pin", ["11111111", "12345678", "87654321", "12341234"])
    def test_weak_pins_rejected(self, pin):
        assert weak_pin_reason(pin) is not None
        with pytest.raises(ValidationError) as excinfo:
            check_pin_strength(pin)
        assert excinfo.value.detail["field"] == "pin"

    def test_strong_pin_accepted(self):
        assert weak_pin_reason("59273841") is None
        check_pin_strength("59273841")

    @pytest.mark.parametrize("value", ["1234567", "123456789", "abcdefgh", "", None, "１２３４５６７８"])
    def test_pin_format_rejected(self, value):
        with pytest.raises(ValidationError) as excinfo:
            normalize_pin(value)
        assert excinfo.value.detail == {"field": "pin", "reason": "must be exactly 8 digits"}

    def test_pin_is_trimmed(self):
        assert normalize_pin("  59273841 ") == "59273841"

    def test_otp_format(self):
        assert normalize_otp(" 012345 ") == "012345"
        with pytest.raises(ValidationError):
            normalize_otp("12345")

    def test_generated_pins_are_strong(self):
        for _ in range(50):
            pin = CredentialStore.generate_pin()
            assert len(pin) == 8 and pin.isdigit()
            assert weak_pin_reason(pin) is None

    def test_generated_otp_is_six_digits(self):
        for _ in range(50):
            otp = CredentialStore.generate_otp()
            assert len(otp) == 6 and otp.isdigit()


class TestAdminKey:
    def test_admin_key_verification(self, credentials):
        assert credentials.admin_configured
        assert credentials.verify_admin_key("unit-admin-key")
        assert not credentials.verify_admin_key("wrong-key")
        assert not credentials.verify_admin_key("")
        assert not credentials.verify_admin_key(None)

    def test_admin_token_is_hmac_of_key(self, credentials):
        token = credentials.admin_token("unit-admin-key")
        assert len(token) == 64
        assert credentials.verify_admin_token(token)
        assert not credentials.verify_admin_token(token[:-1] + ("0" if token[-1] != "0" else "1"))
        assert not credentials.verify_admin_token("ünïcode")

    def test_unconfigured_admin_rejects_everything(self):
        store = CredentialStore(time_cost=1, memory_cost=1024)
        assert not store.admin_configured
        assert not store.verify_admin_key("anything")
        assert not store.verify_admin_token("anything")


class TestDigest:
    def test_digest_matches_only_same_value(self, credentials):
        expected = credentials.digest("123456")
        assert credentials.matches_digest("123456", expected)
        assert not credentials.matches_digest("123457", expected)
        assert not credentials.matches_digest("123456", None)

    def test_digest_is_keyed(self, credentials):
        other = CredentialStore(time_cost=1, memory_cost=1024, digest_key="another-key")
        assert credentials.digest("123456") != other.digest("123456")


def _median_seconds(func, rounds=15):
    samples = []
    for _ in range(rounds):
        start = time.perf_counter()
        func()
        samples.append(time.perf_counter() - start)
    return statistics.median(samples)


class TestVerifyTiming:
    """Rejections cost the same argon2 work whatever the reason."""

    TOLERANCE = 2.5

    @pytest.fixture
    def costly(self):
        # Enough memory cost that hashing dominates scheduler noise
        return CredentialStore(time_cost=1, memory_cost=16384, digest_key="timing")

    def _assert_comparable(self, first, second):
        ratio = max(first, second) / min(first, second)
        assert ratio < self.TOLERANCE, (first, second)

    def test_wrong_secret_costs_like_right_secret(self, costly):
        hashed = costly.hash("59273841")
        right = _median_seconds(lambda: costly.verify("59273841", hashed))
        wrong = _median_seconds(lambda: costly.verify("59273842", hashed))
        self._assert_comparable(right, wrong)

    def test_unknown_and_invalidated_cost_like_mismatch(self, costly):
        hashed = costly.hash("59273841")
        mismatch = _median_seconds(lambda: costly.verify("59273842", hashed))
        unknown = _median_seconds(lambda: costly.verify_dummy("59273842"))
        invalidated = _median_seconds(lambda: costly.verify("59273842", INVALIDATED_PIN_HASH))
        self._assert_comparable(mismatch, unknown)
        self._assert_comparable(mismatch, invalidated)
