"""
Per-request authentication context.

RequestContext answers "who is this?" for the current request and
ResponseContext performs the redirects that start or end a session. Both are
created by OpenIDMiddleware and attached to ``request.state`` as ``openid``
and ``openid_response``.
"""

import inspect
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import RedirectResponse

from oidc_middleware.auth.client import OpenIDClient, TokenSet, get_client
from oidc_middleware.auth.cookies import CookieJar
from oidc_middleware.auth.session import SessionStore
from oidc_middleware.auth.transient import TransientStore

logger = logging.getLogger(__name__)


def _default_get_user(request: Request, session_store: Optional[SessionStore]) -> Optional[Dict[str, Any]]:
    if session_store is None:
        return None
    return session_store.load(request)


def join_base_url(base_url: str, path: str) -> str:
    """Join a path onto the base URL; absolute URLs are returned unchanged."""
    if urlparse(path).netloc:
        return path
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def is_same_origin(url: str, base_url: str) -> bool:
    """
    True for relative paths and for absolute URLs on the base URL's origin.

    Protocol-relative URLs (``//evil.example``) count as foreign.
    """
    parsed = urlparse(url)
    if not parsed.scheme and not parsed.netloc:
        return url.startswith("/") and not url.startswith("//")
    base = urlparse(base_url)
    return (parsed.scheme, parsed.netloc) == (base.scheme, base.netloc)


# =============================================================================
# Request Context
# =============================================================================

class RequestContext:
    """
    Authentication state of the current request.

    Attributes:
        client: Process-wide OpenID client handle
        user: Identity claims of the authenticated user, or None
        tokens: TokenSet obtained during this request (callback only)
    """

    def __init__(
        self,
        settings,
        request: Request,
        session_store: Optional[SessionStore] = None,
        get_user: Optional[Callable] = None,
    ):
        self.settings = settings
        self._request = request
        self.session_store = session_store
        self._get_user = get_user or _default_get_user

        self.client: Optional[OpenIDClient] = None
        self.user: Optional[Dict[str, Any]] = None
        self.tokens: Optional[TokenSet] = None

        # Deferred session write, applied by the middleware
        self.session_dirty = False
        self.session_claims: Optional[Dict[str, Any]] = None

    async def load(self) -> None:
        """
        Resolve the client handle and the current user.

        Raises:
            ClientInitializationError: If discovery did not complete at startup
        """
        self.client = get_client()

        user = self._get_user(self._request, self.session_store)
        if inspect.isawaitable(user):
            user = await user
        self.user = user or None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    def set_session(self, claims: Dict[str, Any]) -> None:
        """Schedule claims to be written to the session with the response."""
        self.session_claims = dict(claims)
        self.session_dirty = True
        self.user = self.session_claims

    def clear_session(self) -> None:
        """Schedule the session to be destroyed with the response."""
        self.session_claims = None
        self.session_dirty = True
        self.user = None


# =============================================================================
# Response Context
# =============================================================================

class ResponseContext:
    """
    Starts and ends sessions for the current request.
    """

    def __init__(
        self,
        settings,
        request: Request,
        request_context: RequestContext,
        transient: TransientStore,
        cookies: CookieJar,
    ):
        self.settings = settings
        self._request = request
        self._context = request_context
        self.transient = transient
        self.cookies = cookies

    @property
    def redirect_uri(self) -> str:
        return join_base_url(self.settings.BASE_URL, self.settings.REDIRECT_URI_PATH)

    @property
    def transient_same_site(self) -> str:
        # form_post callbacks are cross-site POSTs; Lax cookies would not be sent
        return "none" if self.settings.RESPONSE_MODE == "form_post" else "lax"

    def _default_return_to(self) -> str:
        if self._request.method == "GET":
            url = self._request.url
            return url.path + (f"?{url.query}" if url.query else "")
        return self.settings.BASE_URL

    def login(
        self,
        return_to: Optional[str] = None,
        authorization_params: Optional[Dict[str, Any]] = None,
    ) -> RedirectResponse:
        """
        Redirect to the identity provider's authorization endpoint.

        Generates fresh state (and nonce for flows returning an ID token from
        the authorization endpoint or token endpoint), stores them with the
        post-login destination in transient cookies, and builds the
        authorization URL.

        Args:
            return_to: Where to send the user after the callback
            authorization_params: Overrides for the configured parameters

        Returns:
            302 RedirectResponse to the authorization endpoint
        """
        same_site = self.transient_same_site

        params: Dict[str, Any] = {"redirect_uri": self.redirect_uri}
        params.update(self.settings.authorization_params)
        params.update(authorization_params or {})

        # nonce/state are always generated here, never taken from overrides
        params["state"] = self.transient.store("state", self.cookies, same_site=same_site)
        response_types = str(params.get("response_type", "")).split()
        if "id_token" in response_types or "code" in response_types:
            params["nonce"] = self.transient.store("nonce", self.cookies, same_site=same_site)
        else:
            params.pop("nonce", None)

        return_to = return_to or self._default_return_to()
        self.transient.store("returnTo", self.cookies, value=return_to, same_site=same_site)

        url = self._context.client.authorization_url(params)
        logger.info(
            "Redirecting to identity provider",
            extra={"response_type": params.get("response_type"), "response_mode": params.get("response_mode")}
        )
        return RedirectResponse(url=url, status_code=302)

    def logout(self, return_to: Optional[str] = None) -> RedirectResponse:
        """
        Clear the session and redirect to the post-logout location.

        With IDP_LOGOUT enabled and a provider end-session endpoint, the
        redirect goes through the provider first.
        """
        return_url = join_base_url(
            self.settings.BASE_URL,
            return_to or self.settings.POST_LOGOUT_REDIRECT_URI,
        )

        was_authenticated = self._context.is_authenticated
        self._context.clear_session()

        # Sessions hold filtered claims, never an ID token to pass as id_token_hint
        if was_authenticated and self.settings.IDP_LOGOUT:
            end_session = self._context.client.end_session_url({
                "post_logout_redirect_uri": return_url,
            })
            if end_session:
                return_url = end_session

        return RedirectResponse(url=return_url, status_code=302)
