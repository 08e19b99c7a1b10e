"""
OpenID Connect client for the relying-party flow.

This module handles:
- Discovery of the provider metadata and JWKS (once, at startup)
- Building authorization and end-session URLs
- Reading callback parameters from query strings or form posts
- Validating the authorization response and exchanging codes for tokens
- Verifying ID tokens (signature, issuer, audience, expiry, nonce)

The client handle is process-wide: it is created by ``init_client()`` in the
application lifespan and only read afterwards.
"""

import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Request
from jose import jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from oidc_middleware.auth.errors import (
    ClientInitializationError,
    IdentityProviderUnavailable,
    OPError,
    OpenIDError,
    RPError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Token Set
# =============================================================================

class TokenSet:
    """
    Tokens produced by a successful callback.

    Attributes:
        access_token: OAuth 2.0 access token, if issued
        id_token: OIDC ID token (JWT), if issued
        refresh_token: Refresh token, if issued
        token_type: Token type (usually "Bearer")
        expires_at: Absolute expiry of the access token (epoch seconds)
    """

    def __init__(self, data: Dict[str, Any]):
        self.raw = dict(data)
        self.access_token: Optional[str] = data.get("access_token")
        self.id_token: Optional[str] = data.get("id_token")
        self.refresh_token: Optional[str] = data.get("refresh_token")
        self.token_type: Optional[str] = data.get("token_type")
        self.session_state: Optional[str] = data.get("session_state")

        expires_at = data.get("expires_at")
        expires_in = data.get("expires_in")
        if expires_at is None and expires_in is not None:
            expires_at = int(time.time()) + int(expires_in)
        self.expires_at: Optional[int] = int(expires_at) if expires_at is not None else None

    @property
    def expired(self) -> bool:
        """True if the access token has an expiry in the past."""
        return self.expires_at is not None and self.expires_at <= time.time()

    def claims(self) -> Dict[str, Any]:
        """
        Return the claims of the ID token as a new dictionary.

        The token was verified when the set was produced, so the payload is
        decoded without repeating signature checks.

        Raises:
            RPError: If the set has no ID token
        """
        if not self.id_token:
            raise RPError("id_token not present in TokenSet")
        return dict(jwt.get_unverified_claims(self.id_token))

    def __repr__(self) -> str:
        present = [name for name in ("access_token", "id_token", "refresh_token") if getattr(self, name)]
        return f"TokenSet({', '.join(present)})"


# =============================================================================
# HTTP Helper
# =============================================================================

async def _send(
    http_client: Optional[httpx.AsyncClient],
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request to the identity provider.

    Raises:
        IdentityProviderUnavailable: On connection errors and timeouts
    """
    try:
        if http_client is not None:
            return await http_client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, timeout=timeout, **kwargs)
    except httpx.TransportError as e:
        raise IdentityProviderUnavailable(
            f"Unable to reach identity provider at {url}: {type(e).__name__}"
        ) from e


def _find_key(jwks: Dict[str, Any], kid: Optional[str], alg: str) -> Optional[Dict[str, Any]]:
    """Pick the JWKS key matching the token header, or the only signing key."""
    keys = [k for k in jwks.get("keys", []) if k.get("use", "sig") == "sig"]
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
        return None
    candidates = [k for k in keys if k.get("alg") in (None, alg)]
    return candidates[0] if len(candidates) == 1 else None


# =============================================================================
# OpenID Client
# =============================================================================

class OpenIDClient:
    """
    Relying-party client bound to one issuer and one client registration.
    """

    def __init__(
        self,
        metadata: Dict[str, Any],
        client_id: str,
        client_secret: Optional[str] = None,
        jwks: Optional[Dict[str, Any]] = None,
        token_endpoint_auth_method: str = "client_secret_basic",
        clock_tolerance: int = 60,
        http_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        for field in ("issuer", "authorization_endpoint"):
            if not metadata.get(field):
                raise ClientInitializationError(f"Provider metadata is missing '{field}'")

        self.metadata = dict(metadata)
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_endpoint_auth_method = token_endpoint_auth_method
        self.clock_tolerance = clock_tolerance
        self.http_timeout = http_timeout
        self._http_client = http_client
        self._jwks = jwks

    @property
    def issuer(self) -> str:
        return self.metadata["issuer"]

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    @classmethod
    async def discover(
        cls,
        issuer: str,
        client_id: str,
        client_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 5.0,
        **kwargs: Any,
    ) -> "OpenIDClient":
        """
        Fetch the provider configuration and JWKS and build a client.

        Args:
            issuer: Issuer base URL or full discovery document URL
            client_id: Registered client ID
            client_secret: Client secret for confidential clients
            http_client: Optional shared httpx client
            http_timeout: Request timeout in seconds

        Returns:
            Configured OpenIDClient

        Raises:
            ClientInitializationError: If the document is unreachable or invalid
        """
        if "/.well-known/" in issuer:
            discovery_url = issuer
        else:
            discovery_url = f"{issuer.rstrip('/')}/.well-known/openid-configuration"

        try:
            response = await _send(http_client, "GET", discovery_url, http_timeout)
            response.raise_for_status()
            metadata = response.json()
        except httpx.HTTPStatusError as e:
            raise ClientInitializationError(
                f"Discovery document request failed with HTTP {e.response.status_code}"
            ) from e
        except ValueError as e:
            raise ClientInitializationError(f"Discovery document is not valid JSON: {e}") from e
        except IdentityProviderUnavailable as e:
            raise ClientInitializationError(str(e)) from e

        if not isinstance(metadata, dict):
            raise ClientInitializationError("Discovery document must be a JSON object")

        client = cls(
            metadata,
            client_id,
            client_secret=client_secret,
            http_client=http_client,
            http_timeout=http_timeout,
            **kwargs,
        )

        if metadata.get("jwks_uri"):
            try:
                await client.fetch_jwks()
            except OpenIDError as e:
                raise ClientInitializationError(f"Unable to load provider JWKS: {e}") from e

        logger.info(
            "Discovered OpenID provider",
            extra={"issuer": client.issuer, "discovery_url": discovery_url}
        )
        return client

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider JWKS, cached for the life of the client.

        Args:
            force_refresh: If True, bypass cache (used when a kid is unknown)

        Returns:
            JWKS document containing keys

        Raises:
            RPError: If the provider has no jwks_uri or returns an invalid document
        """
        if self._jwks is not None and not force_refresh:
            return self._jwks

        jwks_uri = self.metadata.get("jwks_uri")
        if not jwks_uri:
            raise RPError("Provider metadata has no jwks_uri")

        response = await _send(self._http_client, "GET", jwks_uri, self.http_timeout)
        if not response.is_success:
            raise RPError(f"JWKS request failed with HTTP {response.status_code}")

        try:
            jwks_data = response.json()
        except ValueError as e:
            raise RPError(f"Invalid JWKS response: {e}") from e

        if "keys" not in jwks_data:
            raise RPError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks_data
        return jwks_data

    # -------------------------------------------------------------------------
    # Authorization Request
    # -------------------------------------------------------------------------

    def authorization_url(self, params: Dict[str, Any]) -> str:
        """
        Build the authorization endpoint URL for the given parameters.

        ``client_id`` is added unless already present; ``None`` values are dropped.
        """
        query = {key: value for key, value in params.items() if value is not None}
        query.setdefault("client_id", self.client_id)

        endpoint = self.metadata["authorization_endpoint"]
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(query)}"

    def end_session_url(self, params: Dict[str, Any]) -> Optional[str]:
        """
        Build the provider logout URL, or return None if the provider has none.
        """
        endpoint = self.metadata.get("end_session_endpoint")
        if not endpoint:
            return None

        query = {key: value for key, value in params.items() if value is not None}
        query.setdefault("client_id", self.client_id)
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(query)}"

    # -------------------------------------------------------------------------
    # Callback
    # -------------------------------------------------------------------------

    async def callback_params(self, request: Request) -> Dict[str, str]:
        """
        Extract authorization response parameters from the request.

        POST callbacks (form_post) are read from the urlencoded body, everything
        else from the query string.
        """
        if request.method == "POST":
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
        return dict(request.query_params)

    async def callback(
        self,
        redirect_uri: str,
        params: Dict[str, str],
        checks: Optional[Dict[str, Optional[str]]] = None,
    ) -> TokenSet:
        """
        Validate an authorization response and obtain the token set.

        Args:
            redirect_uri: Redirect URI used in the authorization request
            params: Parameters from the callback request
            checks: Expected ``state``, ``nonce`` and ``response_type``

        Returns:
            Validated TokenSet

        Raises:
            RPError: State, nonce or ID token validation failed
            OPError: The provider returned an error
            IdentityProviderUnavailable: The token endpoint could not be reached
        """
        checks = checks or {}

        expected_state = checks.get("state")
        received_state = params.get("state")
        if not expected_state:
            raise RPError("state cookie is missing or was already used")
        if not received_state:
            raise RPError("state missing from the response")
        if not hmac.compare_digest(expected_state.encode("utf-8"), received_state.encode("utf-8")):
            raise RPError("state mismatch")

        if params.get("error"):
            raise OPError(params["error"], params.get("error_description"))

        response_types = set((checks.get("response_type") or "").split())
        nonce = checks.get("nonce")

        for required, name in (("code", "code"), ("id_token", "id_token"), ("token", "access_token")):
            if required in response_types and not params.get(name):
                raise RPError(f"{name} missing from the response")

        if "id_token" in response_types and not nonce:
            raise RPError("nonce cookie is missing or was already used")

        token_set = TokenSet({
            key: params[key]
            for key in ("access_token", "id_token", "token_type", "expires_in", "session_state")
            if params.get(key)
        })

        front_channel_claims = None
        if token_set.id_token:
            front_channel_claims = await self.validate_id_token(
                token_set.id_token, nonce=nonce, access_token=token_set.access_token
            )

        if "code" in response_types:
            token_set = await self.grant_authorization_code(params["code"], redirect_uri)
            if token_set.id_token:
                claims = await self.validate_id_token(
                    token_set.id_token, nonce=nonce, access_token=token_set.access_token
                )
                if front_channel_claims and claims.get("sub") != front_channel_claims.get("sub"):
                    raise RPError("sub mismatch between authorization and token endpoint ID tokens")

        return token_set

    async def grant_authorization_code(self, code: str, redirect_uri: str) -> TokenSet:
        """
        Exchange an authorization code at the token endpoint.

        Raises:
            OPError: If the provider rejects the grant
            IdentityProviderUnavailable: If the provider is down or unreachable
        """
        token_endpoint = self.metadata.get("token_endpoint")
        if not token_endpoint:
            raise RPError("Provider metadata has no token_endpoint")

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        request_kwargs: Dict[str, Any] = {"headers": {"Accept": "application/json"}}

        if self.token_endpoint_auth_method == "client_secret_basic":
            request_kwargs["auth"] = (self.client_id, self.client_secret or "")
        elif self.token_endpoint_auth_method == "client_secret_post":
            payload["client_id"] = self.client_id
            payload["client_secret"] = self.client_secret or ""
        else:
            payload["client_id"] = self.client_id

        response = await _send(
            self._http_client, "POST", token_endpoint, self.http_timeout,
            data=payload, **request_kwargs
        )

        if response.status_code >= 500:
            raise IdentityProviderUnavailable(
                f"Token endpoint responded with HTTP {response.status_code}"
            )

        try:
            token_data = response.json()
        except ValueError:
            token_data = {}

        if not response.is_success:
            raise OPError(
                token_data.get("error") or "invalid_response",
                token_data.get("error_description") or f"HTTP {response.status_code}",
            )

        if not isinstance(token_data, dict) or not (
            token_data.get("access_token") or token_data.get("id_token")
        ):
            raise RPError("Token endpoint response contains no tokens")

        return TokenSet(token_data)

    async def validate_id_token(
        self,
        id_token: str,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify an ID token and return its claims.

        Performs signature verification against the provider JWKS (or the
        client secret for HMAC algorithms), then validates iss, aud, exp,
        iat, at_hash and nonce.

        Raises:
            RPError: If any check fails
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise RPError(f"Failed to decode ID token header: {e}") from e

        alg = header.get("alg") or "RS256"
        if alg == "none":
            raise RPError("Unsigned ID tokens are not accepted")

        if alg.startswith("HS"):
            if not self.client_secret:
                raise RPError("HMAC-signed ID token but no client secret configured")
            key: Any = self.client_secret
        else:
            jwks = await self.fetch_jwks()
            signing_key = _find_key(jwks, header.get("kid"), alg)
            if not signing_key:
                # Keys may have rotated since discovery
                jwks = await self.fetch_jwks(force_refresh=True)
                signing_key = _find_key(jwks, header.get("kid"), alg)
            if not signing_key:
                raise RPError("Unable to find matching signing key in provider JWKS")
            try:
                key = jwk.construct(signing_key, algorithm=alg).to_pem().decode("utf-8")
            except Exception as e:
                raise RPError(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[alg],
                audience=self.client_id,
                issuer=self.issuer,
                access_token=access_token,
                options={"leeway": self.clock_tolerance},
            )
        except ExpiredSignatureError as e:
            raise RPError("ID token has expired") from e
        except JWTClaimsError as e:
            raise RPError(f"Invalid ID token claims: {e}") from e
        except JWTError as e:
            raise RPError(f"ID token verification failed: {e}") from e

        if not claims.get("sub"):
            raise RPError("ID token is missing the 'sub' claim")

        token_nonce = claims.get("nonce")
        if nonce or token_nonce:
            if not nonce or not isinstance(token_nonce, str) or not hmac.compare_digest(
                nonce.encode("utf-8"), token_nonce.encode("utf-8")
            ):
                raise RPError("nonce mismatch")

        return claims


# =============================================================================
# Process-wide Client Handle
# =============================================================================

_client: Optional[OpenIDClient] = None


async def init_client(settings, http_client: Optional[httpx.AsyncClient] = None) -> OpenIDClient:
    """
    Discover the provider and install the process-wide client.

    Called once from the application lifespan. Failure is fatal: the
    exception propagates and the application does not start serving.

    Raises:
        ClientInitializationError: If discovery fails
    """
    global _client

    if _client is not None:
        return _client

    client = await OpenIDClient.discover(
        settings.ISSUER_BASE_URL,
        settings.CLIENT_ID,
        client_secret=settings.CLIENT_SECRET,
        http_client=http_client,
        http_timeout=settings.HTTP_TIMEOUT,
        token_endpoint_auth_method=settings.token_endpoint_auth_method,
        clock_tolerance=settings.CLOCK_TOLERANCE,
    )
    _client = client
    return client


def set_client(client: OpenIDClient) -> None:
    """Install an already constructed client as the process-wide handle."""
    global _client
    _client = client


def get_client() -> OpenIDClient:
    """
    Return the process-wide client.

    Raises:
        ClientInitializationError: If init_client() did not run or failed
    """
    if _client is None:
        raise ClientInitializationError(
            "OpenID client is not initialized; discovery must complete at startup"
        )
    return _client


def reset_client() -> None:
    """Drop the process-wide client (application shutdown)."""
    global _client
    _client = None
