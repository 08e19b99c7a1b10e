"""
Authentication routes for OIDC login, logout and callback handling.

This module implements the relying-party side of the authorization code,
hybrid and implicit flows for the query, fragment and form_post response
modes.
"""

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from oidc_middleware.auth.context import RequestContext, is_same_origin
from oidc_middleware.auth.errors import (
    ContinuationError,
    IdentityProviderUnavailable,
    OpenIDError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Claim Filtering
# =============================================================================

def filter_claims(claims: Dict[str, Any], excluded: Iterable[str]) -> Dict[str, Any]:
    """
    Return a copy of claims without the excluded claim names.

    Args:
        claims: ID token claims
        excluded: Claim names that must not reach the session

    Returns:
        New dictionary with every other claim
    """
    excluded = set(excluded)
    return {name: value for name, value in claims.items() if name not in excluded}


def _project_claims(context: RequestContext) -> None:
    if context.session_store is None or context.tokens is None:
        return
    claims = filter_claims(context.tokens.claims(), context.settings.identity_claim_filter_list)
    context.set_session(claims)


# =============================================================================
# Callback Continuation
# =============================================================================

class CallbackContinuation:
    """
    Continuation handed to the handle_callback hook.

    The hook must call it exactly once: ``proceed()`` to continue to the
    final redirect or ``proceed(error)`` to fail the callback with ``error``.
    """

    def __init__(self):
        self.calls = 0
        self.error: Optional[BaseException] = None

    def __call__(self, error: Optional[BaseException] = None) -> None:
        self.calls += 1
        if self.calls > 1:
            raise ContinuationError("handle_callback invoked its continuation more than once")
        self.error = error

    def resolve(self) -> None:
        """
        Check the hook used the continuation correctly and re-raise its error.

        Raises:
            ContinuationError: If the continuation was called zero or several times
        """
        if self.calls == 0:
            raise ContinuationError("handle_callback returned without invoking its continuation")
        if self.calls > 1:
            raise ContinuationError("handle_callback invoked its continuation more than once")
        if self.error is not None:
            raise self.error


async def _run_hook(hook: Callable, request: Request, context: RequestContext) -> None:
    proceed = CallbackContinuation()
    tokens_before = context.tokens

    result = hook(request, context, proceed)
    if inspect.isawaitable(result):
        await result

    proceed.resolve()

    if context.tokens is not tokens_before:
        logger.debug("handle_callback replaced the token set; re-projecting session claims")
        _project_claims(context)


# =============================================================================
# Router Factory
# =============================================================================

def create_auth_router(settings, handle_callback: Optional[Callable] = None) -> APIRouter:
    """
    Create an APIRouter with the login, logout and callback endpoints.

    Args:
        settings: Application settings
        handle_callback: Optional hook ``hook(request, context, proceed)``
            run after a successful token exchange and before the redirect

    Returns:
        APIRouter to include in the application
    """
    router = APIRouter(tags=["authentication"])

    if settings.ROUTES:

        @router.get(settings.LOGIN_PATH, name="openid_login")
        async def login(request: Request):
            """Redirect the user to the identity provider login page."""
            return request.state.openid_response.login(return_to=settings.BASE_URL)

        @router.get(settings.LOGOUT_PATH, name="openid_logout")
        async def logout(request: Request):
            """Clear the session and redirect to the post-logout location."""
            return request.state.openid_response.logout()

    @router.api_route(settings.REDIRECT_URI_PATH, methods=["GET", "POST"], name="openid_callback")
    async def callback(request: Request) -> Response:
        """
        Handle the authorization response from the identity provider.

        This endpoint:
        1. Checks the HTTP method matches the configured response_mode
        2. Consumes the nonce, state and returnTo transient cookies
        3. Validates the response and exchanges it for tokens
        4. Stores the filtered identity claims in the session
        5. Runs the handle_callback hook, if configured
        6. Redirects to the stored returnTo (or BASE_URL)
        """
        context: RequestContext = request.state.openid
        response_context = request.state.openid_response
        transient = response_context.transient
        cookies = response_context.cookies

        expected_method = settings.callback_method
        if request.method != expected_method:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=(
                    f"Callback must use {expected_method} "
                    f"for response_mode '{settings.RESPONSE_MODE or 'query'}'"
                ),
            )

        if settings.RESPONSE_MODE == "fragment" and not request.query_params:
            return _render_fragment_page()

        nonce = transient.get_once("nonce", request, cookies)
        state = transient.get_once("state", request, cookies)
        return_to = transient.get_once("returnTo", request, cookies)

        client = context.client
        try:
            params = await client.callback_params(request)
            token_set = await client.callback(
                response_context.redirect_uri,
                params,
                {
                    "nonce": nonce,
                    "state": state,
                    "response_type": settings.RESPONSE_TYPE,
                },
            )
        except IdentityProviderUnavailable as e:
            logger.error(f"Identity provider unavailable during callback: {e}")
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="Identity provider is unavailable; please try logging in again",
            )
        except OpenIDError as e:
            logger.warning(
                f"Callback validation failed: {e}",
                extra={"exception_type": type(e).__name__}
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Authentication callback failed: {e}",
            )

        context.tokens = token_set
        request.state.openid_tokens = token_set

        try:
            _project_claims(context)
        except OpenIDError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Authentication callback failed: {e}",
            )

        if handle_callback is not None:
            try:
                await _run_hook(handle_callback, request, context)
            except ContinuationError:
                raise
            except OpenIDError as e:
                logger.warning(
                    f"handle_callback failed: {e}",
                    extra={"exception_type": type(e).__name__}
                )
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Authentication callback failed: {e}",
                )

        destination = return_to or settings.BASE_URL
        if not is_same_origin(destination, settings.BASE_URL):
            logger.warning("Ignoring returnTo outside the application origin")
            destination = settings.BASE_URL

        logger.info(
            "Login completed",
            extra={"sub": context.user.get("sub") if context.user else None}
        )
        return RedirectResponse(url=destination, status_code=302)

    return router


# =============================================================================
# HTML Response Templates
# =============================================================================

def _render_fragment_page() -> HTMLResponse:
    """
    Render the page that forwards a fragment-mode response to the server.

    Browsers never send the URI fragment, so the page moves it into the
    query string and reloads the callback URL.
    """
    html_content = """
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <title>Signing in</title>
        <script>
            window.onload = function() {
                var fragment = window.location.hash.substring(1);
                if (fragment) {
                    window.location.replace(window.location.pathname + "?" + fragment);
                } else {
                    document.getElementById("message").textContent =
                        "The identity provider did not return a response.";
                }
            };
        </script>
    </head>
    <body>
        <p id="message">Signing you in...</p>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content, status_code=200)
