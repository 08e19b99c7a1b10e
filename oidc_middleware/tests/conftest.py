"""
Shared fixtures for the OpenID middleware tests.

The identity provider is simulated with httpx.MockTransport: discovery,
JWKS and token endpoint responses are served from a FakeProvider, and ID
tokens are signed with a test RSA key.
"""

import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm
from starlette.requests import Request

from oidc_middleware.auth import OpenIDClient, reset_client, set_client
from oidc_middleware.config import Settings
from oidc_middleware.main import create_app


ISSUER = "https://idp.example"
CLIENT_ID = "client-123"
CLIENT_SECRET = "client-secret-0123456789abcdefghijklmn"
BASE_URL = "https://app.example"
SESSION_SECRET = "session-secret-0123456789abcdefghijklmn"
TEST_KID = "test-key-id-2024"


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    return private_key, private_pem.decode()


# Generate test keys once for reuse
TEST_PRIVATE_KEY_OBJ, TEST_PRIVATE_KEY = generate_test_keys()


def create_mock_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    """Create a JWKS document with the test public key."""
    key = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY_OBJ.public_key(), as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


PROVIDER_METADATA = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/authorize",
    "token_endpoint": f"{ISSUER}/oauth/token",
    "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
    "end_session_endpoint": f"{ISSUER}/logout",
    "response_types_supported": ["code", "id_token", "code id_token"],
}


def create_id_token(
    nonce: Optional[str] = None,
    kid: str = TEST_KID,
    exp_delta_seconds: int = 3600,
    **claims: Any,
) -> str:
    """
    Create an ID token signed with the test private key.

    Args:
        nonce: Nonce to bind into the token
        kid: Key ID for JWKS matching
        exp_delta_seconds: Token expiry relative to now
        **claims: Extra or overriding claims
    """
    now = int(time.time())
    payload = {
        "iss": ISSUER,
        "sub": "u1",
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + exp_delta_seconds,
    }
    if nonce is not None:
        payload["nonce"] = nonce
    payload.update(claims)

    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


class FakeProvider:
    """Serves discovery, JWKS and token endpoint responses."""

    def __init__(self):
        self.metadata = dict(PROVIDER_METADATA)
        self.jwks = create_mock_jwks()
        self.token_status = 200
        self.token_body: Dict[str, Any] = {}
        self.token_requests: List[httpx.Request] = []
        self.discovery_status = 200
        self.unreachable = False

    def issue_tokens(self, nonce: Optional[str], **claims: Any) -> None:
        """Make the token endpoint return tokens for the given nonce."""
        self.token_status = 200
        self.token_body = {
            "access_token": "access-token-abc",
            "id_token": create_id_token(nonce=nonce, **claims),
            "token_type": "Bearer",
            "expires_in": 3600,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/.well-known/openid-configuration":
            return httpx.Response(self.discovery_status, json=self.metadata)
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json=self.jwks)
        if path == "/oauth/token":
            self.token_requests.append(request)
            return httpx.Response(self.token_status, json=self.token_body)
        return httpx.Response(404, json={"error": "not_found"})


def query_params(url: str) -> Dict[str, str]:
    """Flatten the query string of a URL into a dict."""
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def build_request(cookies: Optional[Dict[str, str]] = None, path: str = "/callback") -> Request:
    """Build a bare Starlette request carrying the given cookies."""
    headers = []
    if cookies:
        cookie_header = "; ".join(f"{name}={value}" for name, value in cookies.items())
        headers.append((b"cookie", cookie_header.encode("latin-1")))
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": headers,
    })


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def make_settings():
    """Factory for Settings with test defaults (authorization code flow, query mode)."""

    def _make(**overrides: Any) -> Settings:
        values = {
            "ISSUER_BASE_URL": ISSUER,
            "CLIENT_ID": CLIENT_ID,
            "CLIENT_SECRET": CLIENT_SECRET,
            "BASE_URL": BASE_URL,
            "APP_SESSION_SECRET": SESSION_SECRET,
            "RESPONSE_TYPE": "code",
            "RESPONSE_MODE": "query",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def mock_settings(make_settings):
    return make_settings()


@pytest.fixture
def openid_client(http_client):
    """OpenID client with preloaded metadata and JWKS, installed process-wide."""
    client = OpenIDClient(
        PROVIDER_METADATA,
        CLIENT_ID,
        client_secret=CLIENT_SECRET,
        jwks=create_mock_jwks(),
        http_client=http_client,
    )
    set_client(client)
    return client


@pytest.fixture(autouse=True)
def reset_openid_client():
    """Every test starts without a process-wide client."""
    reset_client()
    yield
    reset_client()


@pytest.fixture
def make_test_client(openid_client):
    """Factory for a TestClient around create_app()."""

    def _make(settings: Settings, **app_kwargs: Any) -> TestClient:
        app = create_app(settings, **app_kwargs)
        return TestClient(app, base_url=BASE_URL, follow_redirects=False)

    return _make


@pytest.fixture
def client(make_test_client, mock_settings):
    """Create test client"""
    return make_test_client(mock_settings)
