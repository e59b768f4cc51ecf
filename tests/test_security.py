"""
Tests for the function auth gate and webhook signing.
"""

import jwt
import pytest

from crm_alerts.core.config import Settings
from crm_alerts.core.exceptions import AuthenticationError
from crm_alerts.core.security import (
    SIGNATURE_PREFIX,
    authenticate_request,
    looks_like_jwt,
    sign_payload,
    signature_header_value,
    verify_signature,
)

from conftest import CRON_SECRET, SERVICE_ROLE_KEY


@pytest.fixture
def user_token() -> str:
    return jwt.encode(
        {"sub": "5f0c7a6e-user", "role": "authenticated", "email": "gestor@bank.test"},
        "not-the-real-secret",
        algorithm="HS256",
    )


# =============================================================================
# TEST: AUTH GATE
# =============================================================================


class TestAuthenticateRequest:

    def test_cron_secret_is_accepted(self, settings):
        identity = authenticate_request({"x-cron-secret": CRON_SECRET}, settings)

        assert identity.kind == "cron"

    def test_service_role_key_is_accepted(self, settings):
        identity = authenticate_request({"authorization": f"Bearer {SERVICE_ROLE_KEY}"}, settings)

        assert identity.kind == "service_role"

    def test_user_jwt_is_labelled_from_claims(self, settings, user_token):
        identity = authenticate_request({"Authorization": f"Bearer {user_token}"}, settings)

        assert identity.kind == "user_jwt"
        assert identity.subject == "5f0c7a6e-user"
        assert identity.role == "authenticated"

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"x-cron-secret": "wrong"},
            {"authorization": "Bearer short.not.jwt"},
            {"authorization": "Basic dXNlcjpwYXNz"},
            {"authorization": "Bearer " + "a" * 80},
        ],
    )
    def test_rejected(self, settings, headers):
        with pytest.raises(AuthenticationError):
            authenticate_request(headers, settings)

    def test_unset_cron_secret_never_matches(self):
        settings = Settings(CRON_SECRET=None, SERVICE_ROLE_KEY=None, _env_file=None)

        with pytest.raises(AuthenticationError):
            authenticate_request({"x-cron-secret": ""}, settings)

    def test_jwt_shape(self, user_token):
        assert looks_like_jwt(user_token)
        assert not looks_like_jwt("a.b.c")
        assert not looks_like_jwt("x" * 60)


# =============================================================================
# TEST: SIGNING
# =============================================================================


class TestSigning:

    def test_signature_is_deterministic(self):
        body = b'{"event_type":"goal_at_risk"}'

        assert sign_payload("secret", body) == sign_payload("secret", body)
        assert sign_payload("secret", body) != sign_payload("other", body)

    def test_header_round_trip(self):
        body = b'{"a":1}'
        header = signature_header_value("secret", body)

        assert header.startswith(SIGNATURE_PREFIX)
        assert verify_signature("secret", body, header)
        assert not verify_signature("secret", b'{"a":2}', header)
