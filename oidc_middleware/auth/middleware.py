"""
OpenID middleware.

Creates the authentication context for every request, enforces the
authentication requirement outside the auth routes, and attaches pending
cookie writes (transient values, session) to the outgoing response.
"""

import logging
from typing import Callable, Optional, Union

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from oidc_middleware.auth.context import RequestContext, ResponseContext
from oidc_middleware.auth.cookies import CookieJar
from oidc_middleware.auth.gate import (
    AuthRequirement,
    LoginRequired,
    login_required_handler,
    reject_unauthenticated,
)
from oidc_middleware.auth.routes import create_auth_router
from oidc_middleware.auth.session import AppSession, SessionStore
from oidc_middleware.auth.transient import TransientStore
from oidc_middleware.models import ErrorResponse

logger = logging.getLogger(__name__)


class OpenIDMiddleware(BaseHTTPMiddleware):
    """Per-request OpenID Connect context and route protection."""

    def __init__(
        self,
        app,
        settings,
        transient: TransientStore,
        session_store: Optional[SessionStore] = None,
        requirement: Optional[AuthRequirement] = None,
        get_user: Optional[Callable] = None,
    ):
        super().__init__(app)
        self.settings = settings
        self.transient = transient
        self.session_store = session_store
        self.requirement = requirement or AuthRequirement.never()
        self.get_user = get_user

        self.auth_paths = {settings.REDIRECT_URI_PATH}
        if settings.ROUTES:
            self.auth_paths.update({settings.LOGIN_PATH, settings.LOGOUT_PATH})

    async def dispatch(self, request: Request, call_next):
        cookies = CookieJar()
        context = RequestContext(
            self.settings,
            request,
            session_store=self.session_store,
            get_user=self.get_user,
        )
        await context.load()

        request.state.openid = context
        request.state.openid_response = ResponseContext(
            self.settings, request, context, self.transient, cookies
        )
        request.state.openid_cookies = cookies

        if (
            request.url.path not in self.auth_paths
            and not context.is_authenticated
            and self.requirement.applies(request)
        ):
            response = reject_unauthenticated(request)
        else:
            try:
                response = await call_next(request)
            except Exception as e:
                # Pending transient deletions must still reach the client
                logger.error(
                    f"Unhandled exception: {str(e)}",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "exception_type": type(e).__name__
                    },
                    exc_info=True
                )
                body = ErrorResponse(
                    error="internal_server_error",
                    message="An unexpected error occurred",
                )
                response = JSONResponse(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    content=body.model_dump(mode="json"),
                )

        self._finalize(request, context, cookies, response)
        return response

    def _finalize(
        self,
        request: Request,
        context: RequestContext,
        cookies: CookieJar,
        response: Response,
    ) -> None:
        # Failed requests never create or update a session
        if context.session_dirty and self.session_store is not None:
            if context.session_claims is None:
                self.session_store.clear(request, cookies)
            elif response.status_code < 400:
                self.session_store.save(request, cookies, context.session_claims)

        cookies.apply(response)


def setup_openid(
    app: FastAPI,
    settings,
    required: Union[bool, Callable[[Request], bool], AuthRequirement, None] = None,
    handle_callback: Optional[Callable] = None,
    get_user: Optional[Callable] = None,
    session_store: Optional[SessionStore] = None,
) -> None:
    """
    Install the OpenID middleware, auth routes and exception handler.

    Args:
        app: FastAPI application
        settings: Application settings
        required: Authentication requirement; defaults to settings.REQUIRED
        handle_callback: Hook run after a successful callback
        get_user: Custom ``get_user(request, session_store)`` resolver
        session_store: External session store; ignored when APP_SESSION_SECRET is set
    """
    if settings.APP_SESSION_SECRET:
        session_store = AppSession.from_settings(settings)
    elif session_store is None:
        logger.warning("No APP_SESSION_SECRET and no session store: identity claims will not persist")

    transient = TransientStore(
        settings.transient_secret,
        max_age=settings.TRANSIENT_COOKIE_MAX_AGE,
        legacy_same_site_cookie=settings.LEGACY_SAME_SITE_COOKIE,
    )

    requirement = AuthRequirement.from_config(
        settings.REQUIRED if required is None else required
    )

    app.include_router(create_auth_router(settings, handle_callback=handle_callback))
    app.add_exception_handler(LoginRequired, login_required_handler)
    app.add_middleware(
        OpenIDMiddleware,
        settings=settings,
        transient=transient,
        session_store=session_store,
        requirement=requirement,
        get_user=get_user,
    )
