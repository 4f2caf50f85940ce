"""Tests for owner bearer tokens and the admin cookie session."""

import base64
import json
from datetime import timedelta

import pytest

from tablecode.service.errors import AuthenticationError, ForbiddenError
from tablecode.service.sessions import (
    ADMIN_COOKIE_MAX_AGE,
    ADMIN_COOKIE_NAME,
    AdminSessionIssuer,
    OwnerSessionIssuer,
)
from tablecode.storage.models import Tenant, TenantStatus


@pytest.fixture
def tenant(memory_store, credentials):
    return memory_store.create_tenant(
        Tenant.new(
            code="ABC234",
            name="Sea View",
            city="Goa",
            phone="9876543210",
            pin_hash=credentials.hash("59273841"),
        )
    )


@pytest.fixture
def issuer(memory_store, clock):
    return OwnerSessionIssuer(
        memory_store, secret="unit-jwt-secret", ttl=timedelta(hours=24), clock=clock
    )


def _b64(data):
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestOwnerTokens:
    def test_issue_and_verify(self, issuer, tenant, clock):
        token = issuer.issue(tenant)
        assert token.expires_at == clock.now + timedelta(hours=24)

        ctx = issuer.verify(f"Bearer {token.token}")
        assert ctx.tenant_id == tenant.id
        assert ctx.code == "ABC234"
        assert ctx.actor_type == "owner"

    def test_bare_token_accepted(self, issuer, tenant):
        token = issuer.issue(tenant)
        assert issuer.verify(token.token).tenant_id == tenant.id

    def test_expired_token_unauthorized(self, issuer, tenant, clock):
        token = issuer.issue(tenant)
        clock.advance(hours=24, seconds=1)
        with pytest.raises(AuthenticationError):
            issuer.verify(f"Bearer {token.token}")

    def test_suspended_tenant_forbidden(self, issuer, tenant, memory_store):
        token = issuer.issue(tenant)
        memory_store.update_tenant(tenant.id, status=TenantStatus.SUSPENDED)
        with pytest.raises(ForbiddenError):
            issuer.verify(f"Bearer {token.token}")

    def test_deleted_tenant_unauthorized(self, issuer, tenant, memory_store):
        token = issuer.issue(tenant)
        memory_store.update_tenant(tenant.id, status=TenantStatus.DELETED)
        with pytest.raises(AuthenticationError):
            issuer.verify(f"Bearer {token.token}")

    def test_purged_tenant_unauthorized(self, issuer, tenant, memory_store):
        token = issuer.issue(tenant)
        memory_store.delete_tenant(tenant.id)
        with pytest.raises(AuthenticationError):
            issuer.verify(f"Bearer {token.token}")

    @pytest.mark.parametrize("value", [None, "", "Bearer ", "Bearer not.a.token", "garbage"])
    def test_malformed_tokens_unauthorized(self, issuer, value):
        with pytest.raises(AuthenticationError):
            issuer.verify(value)

    def test_tampered_payload_rejected(self, issuer, tenant):
        header, _, signature = issuer.issue(tenant).token.split(".")
        forged = _b64({"iss": "tablecode", "sub": "someone-else", "type": "owner", "exp": 9999999999})
        with pytest.raises(AuthenticationError):
            issuer.verify(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, issuer, tenant):
        _, payload, _ = issuer.issue(tenant).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(AuthenticationError):
            issuer.verify(f"{header}.{payload}.")

    def test_token_from_other_secret_rejected(self, memory_store, tenant, clock):
        other = OwnerSessionIssuer(memory_store, secret="another-secret", clock=clock)
        ours = OwnerSessionIssuer(memory_store, secret="unit-jwt-secret", clock=clock)
        with pytest.raises(AuthenticationError):
            ours.verify(other.issue(tenant).token)

    def test_secret_required(self, memory_store):
        with pytest.raises(ValueError):
            OwnerSessionIssuer(memory_store, secret="")


class TestAdminSessions:
    @pytest.fixture
    def admin(self, credentials):
        return AdminSessionIssuer(credentials, production=False)

    def test_login_sets_hmac_cookie(self, admin, credentials):
        cookie = admin.login("unit-admin-key")
        assert cookie.key == ADMIN_COOKIE_NAME
        assert cookie.value == credentials.admin_token("unit-admin-key")
        assert cookie.max_age == ADMIN_COOKIE_MAX_AGE
        assert cookie.httponly
        assert not cookie.secure
        assert cookie.samesite == "lax"

    def test_production_cookie_is_strict(self, credentials):
        cookie = AdminSessionIssuer(credentials, production=True).login("unit-admin-key")
        assert cookie.secure
        assert cookie.samesite == "strict"

    def test_wrong_key_forbidden(self, admin):
        with pytest.raises(ForbiddenError):
            admin.login("nope")

    def test_logout_clears_cookie(self, admin):
        cookie = admin.logout()
        assert cookie.value == ""
        assert cookie.max_age == 0

    def test_verify_requires_cookie_and_header(self, admin):
        value = admin.login("unit-admin-key").value
        assert admin.verify(value, "XMLHttpRequest").actor_type == "super_admin"
        with pytest.raises(ForbiddenError):
            admin.verify(value, None)
        with pytest.raises(ForbiddenError):
            admin.verify("forged", "XMLHttpRequest")
        with pytest.raises(ForbiddenError):
            admin.verify(None, "XMLHttpRequest")


class TestActorVerifiers:
    def test_strategies_resolve_from_request_parts(self, issuer, tenant, credentials):
        admin = AdminSessionIssuer(credentials, production=False)
        cookie = admin.login("unit-admin-key").value
        token = issuer.issue(tenant).token
        verifiers = {verifier.actor_type: verifier for verifier in (issuer, admin)}

        owner = verifiers["owner"].authenticate({"authorization": f"Bearer {token}"}, {})
        assert owner.tenant_id == tenant.id
        resolved = verifiers["super_admin"].authenticate(
            {"x-requested-with": "XMLHttpRequest"}, {ADMIN_COOKIE_NAME: cookie}
        )
        assert resolved.actor_type == "super_admin"

    def test_missing_credentials_rejected_per_strategy(self, issuer, credentials):
        admin = AdminSessionIssuer(credentials, production=False)
        with pytest.raises(AuthenticationError):
            issuer.authenticate({}, {})
        with pytest.raises(ForbiddenError):
            admin.authenticate({"x-requested-with": "XMLHttpRequest"}, {})
