"""
Unit Tests for Configuration

Test Coverage:
- Field validation (URLs, paths, response type/mode, JSON parameters)
- Cross-field flow validation
- Derived properties
- Startup configuration report

Run tests:
    pytest oidc_middleware/tests/test_config.py -v
"""

import pytest
from pydantic import ValidationError

from oidc_middleware.config import DEFAULT_IDENTITY_CLAIM_FILTER, validate_configuration


# ============================================================================
# Field Validation
# ============================================================================

def test_defaults(make_settings):
    settings = make_settings(RESPONSE_TYPE="id_token", RESPONSE_MODE="form_post")

    assert settings.LOGIN_PATH == "/login"
    assert settings.LOGOUT_PATH == "/logout"
    assert settings.REDIRECT_URI_PATH == "/callback"
    assert settings.REQUIRED is True
    assert settings.callback_method == "POST"
    assert settings.IDENTITY_CLAIM_FILTER == DEFAULT_IDENTITY_CLAIM_FILTER


@pytest.mark.parametrize("field", ["ISSUER_BASE_URL", "BASE_URL"])
def test_invalid_url_rejected(make_settings, field):
    with pytest.raises(ValidationError, match="Invalid URL"):
        make_settings(**{field: "app.example"})


def test_paths_get_leading_slash(make_settings):
    settings = make_settings(LOGIN_PATH="signin", REDIRECT_URI_PATH="auth/callback")

    assert settings.LOGIN_PATH == "/signin"
    assert settings.REDIRECT_URI_PATH == "/auth/callback"


def test_unsupported_response_type(make_settings):
    with pytest.raises(ValidationError, match="RESPONSE_TYPE must be one of"):
        make_settings(RESPONSE_TYPE="token")


def test_response_type_whitespace_is_normalized(make_settings):
    settings = make_settings(RESPONSE_TYPE="code  id_token", RESPONSE_MODE="form_post")
    assert settings.RESPONSE_TYPE == "code id_token"


def test_unsupported_response_mode(make_settings):
    with pytest.raises(ValidationError, match="RESPONSE_MODE must be one of"):
        make_settings(RESPONSE_MODE="web_message")


def test_authorization_params_must_be_json_object(make_settings):
    with pytest.raises(ValidationError):
        make_settings(AUTHORIZATION_PARAMS="[1, 2]")
    with pytest.raises(ValidationError):
        make_settings(AUTHORIZATION_PARAMS="{not json")


def test_short_session_secret_rejected(make_settings):
    with pytest.raises(ValidationError):
        make_settings(APP_SESSION_SECRET="too-short")


# ============================================================================
# Flow Validation
# ============================================================================

def test_scope_must_contain_openid(make_settings):
    with pytest.raises(ValidationError, match="openid"):
        make_settings(SCOPE="profile email")


@pytest.mark.parametrize("auth_method", [None, "client_secret_basic", "client_secret_post"])
def test_code_flow_requires_client_secret(make_settings, auth_method):
    with pytest.raises(ValidationError, match="CLIENT_SECRET is required"):
        make_settings(CLIENT_SECRET=None, TOKEN_ENDPOINT_AUTH_METHOD=auth_method)


def test_code_flow_public_client_allowed(make_settings):
    settings = make_settings(CLIENT_SECRET=None, TOKEN_ENDPOINT_AUTH_METHOD="none")
    assert settings.token_endpoint_auth_method == "none"


@pytest.mark.parametrize("response_type", ["id_token", "code id_token", "id_token token"])
def test_query_mode_rejected_for_front_channel_tokens(make_settings, response_type):
    with pytest.raises(ValidationError, match="cannot be used"):
        make_settings(RESPONSE_TYPE=response_type, RESPONSE_MODE="query")


def test_implicit_flow_requires_response_mode(make_settings):
    with pytest.raises(ValidationError, match="RESPONSE_MODE is required"):
        make_settings(RESPONSE_TYPE="id_token", RESPONSE_MODE=None)


def test_transient_secret_required(make_settings):
    with pytest.raises(ValidationError, match="sign transient cookies"):
        make_settings(
            RESPONSE_TYPE="id_token",
            RESPONSE_MODE="form_post",
            CLIENT_SECRET=None,
            APP_SESSION_SECRET=None,
        )


# ============================================================================
# Derived Properties
# ============================================================================

def test_identity_claim_filter_list(make_settings):
    settings = make_settings(IDENTITY_CLAIM_FILTER=" aud, iss ,, email ")
    assert settings.identity_claim_filter_list == ["aud", "iss", "email"]


def test_authorization_params(make_settings):
    settings = make_settings(AUTHORIZATION_PARAMS='{"prompt": "login", "scope": "openid"}')

    assert settings.authorization_params == {
        "response_type": "code",
        "scope": "openid",
        "response_mode": "query",
        "prompt": "login",
    }


def test_transient_secret_fallback_order(make_settings, mock_settings):
    explicit = make_settings(TRANSIENT_SECRET="t" * 32)

    assert explicit.transient_secret == "t" * 32
    assert mock_settings.transient_secret == mock_settings.APP_SESSION_SECRET
    assert make_settings(APP_SESSION_SECRET=None).transient_secret == mock_settings.CLIENT_SECRET


def test_cookie_secure_follows_base_url(make_settings):
    assert make_settings().cookie_secure is True
    assert make_settings(BASE_URL="http://localhost:3000").cookie_secure is False
    assert make_settings(BASE_URL="http://localhost:3000", APP_SESSION_COOKIE_SECURE=True).cookie_secure is True


# ============================================================================
# Configuration Report
# ============================================================================

def test_validate_configuration_ok(mock_settings):
    report = validate_configuration(mock_settings)

    assert report["valid"] is True
    assert report["errors"] == []


def test_validate_configuration_duplicate_paths(make_settings):
    report = validate_configuration(make_settings(LOGIN_PATH="/callback"))

    assert report["valid"] is False
    assert "must be distinct" in report["errors"][0]


def test_validate_configuration_warnings(make_settings):
    report = validate_configuration(make_settings(
        BASE_URL="http://localhost:3000",
        APP_SESSION_SECRET=None,
    ))

    assert report["valid"] is True
    assert any("APP_SESSION_SECRET" in warning for warning in report["warnings"])
    assert any("not marked Secure" in warning for warning in report["warnings"])
