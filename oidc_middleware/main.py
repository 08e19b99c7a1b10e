"""
FastAPI Application Factory
===========================

Entry point for a web application protected by the OpenID Connect
relying-party middleware.

Routes:
    - LOGIN_PATH        : Start the login (default /login)
    - LOGOUT_PATH       : End the session (default /logout)
    - REDIRECT_URI_PATH : Authorization response (default /callback)
    - /                 : Session status
    - /profile          : Claims of the logged in user (requires login)
    - /health           : Health check endpoint (never requires login)

Environment Variables Required:
    - ISSUER_BASE_URL: Identity provider issuer URL
    - CLIENT_ID: Client ID registered with the provider
    - BASE_URL: Public URL of this application
    - APP_SESSION_SECRET: Secret for the encrypted session cookie (32+ chars)
    - CLIENT_SECRET: Required for response types including 'code'
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn oidc_middleware.main:create_app --factory --reload --port 3000
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional, Union

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from oidc_middleware.auth import (
    AuthRequirement,
    ClientInitializationError,
    ContinuationError,
    SessionStore,
    get_client,
    init_client,
    requires_auth,
    reset_client,
    setup_openid,
)
from oidc_middleware.config import Settings, get_settings, validate_configuration
from oidc_middleware.models import ErrorResponse, HealthResponse, SessionStatus, UserProfile

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health"})


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def _default_requirement(settings: Settings) -> AuthRequirement:
    if not settings.REQUIRED:
        return AuthRequirement.never()
    return AuthRequirement.predicate(lambda request: request.url.path not in PUBLIC_PATHS)


def create_app(
    settings: Optional[Settings] = None,
    required: Union[bool, Callable[[Request], bool], AuthRequirement, None] = None,
    handle_callback: Optional[Callable] = None,
    get_user: Optional[Callable] = None,
    session_store: Optional[SessionStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management (provider discovery before serving)
        - OpenID middleware and auth routes
        - Exception handlers
        - Demo routes

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Discover the identity provider before serving requests.

        A discovery failure aborts startup.
        """
        setup_logging(settings.LOG_LEVEL)

        status_report = validate_configuration(settings)
        for warning in status_report["warnings"]:
            logger.warning(f"Configuration warning: {warning}")
        if not status_report["valid"]:
            raise ClientInitializationError(
                "Invalid configuration: " + "; ".join(status_report["errors"])
            )

        try:
            client = await init_client(settings, http_client=http_client)
        except ClientInitializationError as e:
            logger.critical(f"OpenID Connect discovery failed: {e}")
            raise

        logger.info(
            "Service started",
            extra={"issuer": client.issuer, "base_url": settings.BASE_URL}
        )

        yield

        reset_client()
        logger.info("Service shutdown complete")

    app = FastAPI(
        title="OpenID Connect Relying Party",
        description="Web application protected by OpenID Connect login",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_openid(
        app,
        settings,
        required=_default_requirement(settings) if required is None else required,
        handle_callback=handle_callback,
        get_user=get_user,
        session_store=session_store,
    )

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """
        Health check endpoint.

        Returns:
            HealthResponse: Service status and discovered issuer
        """
        return HealthResponse(
            status="ok",
            service="oidc-middleware",
            issuer=get_client().issuer,
        )

    @app.get("/", tags=["System"], response_model=SessionStatus)
    async def root(request: Request) -> SessionStatus:
        """Report whether the request is authenticated."""
        context = request.state.openid
        return SessionStatus(authenticated=context.is_authenticated, user=context.user)

    @app.get("/profile", tags=["Authentication"], response_model=UserProfile)
    async def profile(user: Dict = Depends(requires_auth())) -> UserProfile:
        """Return the identity claims stored in the session."""
        return UserProfile.from_claims(user)

    @app.exception_handler(ContinuationError)
    async def continuation_error_handler(request: Request, exc: ContinuationError) -> JSONResponse:
        """
        Misuse of the handle_callback continuation is a programming error.
        """
        logger.error(
            f"Callback continuation error: {exc}",
            extra={"path": request.url.path}
        )
        body = ErrorResponse(
            error="callback_continuation_error",
            message="The login callback hook did not complete correctly",
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        body = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
            details={"detail": str(exc)} if settings.LOG_LEVEL == "DEBUG" else None,
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    return app


if __name__ == "__main__":
    """
    Direct execution entry point.

    This allows running the service directly with: python -m oidc_middleware.main
    However, using uvicorn command is recommended for production.
    """
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "oidc_middleware.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=3000,
        reload=True,
        log_level=settings.LOG_LEVEL.lower()
    )
