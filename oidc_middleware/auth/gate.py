"""
Route protection.

AuthRequirement decides, per request, whether authentication is required.
The middleware enforces it for every request outside the auth routes, and
``requires_auth()`` enforces it for single routes as a FastAPI dependency.
"""

import logging
from typing import Any, Callable, Dict, Optional, Union

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from oidc_middleware.models import ErrorResponse

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = "Authentication is required for this route."


class AuthRequirement:
    """
    Authentication policy: always, never, or decided by a predicate.

    Example:
        >>> AuthRequirement.predicate(lambda request: request.url.path.startswith("/admin"))
    """

    ALWAYS = "always"
    NEVER = "never"
    PREDICATE = "predicate"

    def __init__(self, kind: str, predicate: Optional[Callable[[Request], bool]] = None):
        if kind == self.PREDICATE and predicate is None:
            raise ValueError("A predicate requirement needs a predicate function")
        self.kind = kind
        self._predicate = predicate

    @classmethod
    def always(cls) -> "AuthRequirement":
        return cls(cls.ALWAYS)

    @classmethod
    def never(cls) -> "AuthRequirement":
        return cls(cls.NEVER)

    @classmethod
    def predicate(cls, fn: Callable[[Request], bool]) -> "AuthRequirement":
        return cls(cls.PREDICATE, fn)

    @classmethod
    def from_config(cls, value: Union[bool, Callable[[Request], bool], "AuthRequirement", None]) -> "AuthRequirement":
        """Build a requirement from a bool, a callable, or an existing requirement."""
        if isinstance(value, AuthRequirement):
            return value
        if callable(value):
            return cls.predicate(value)
        return cls.always() if value else cls.never()

    def applies(self, request: Request) -> bool:
        if self.kind == self.ALWAYS:
            return True
        if self.kind == self.NEVER:
            return False
        return bool(self._predicate(request))

    def __repr__(self) -> str:
        return f"AuthRequirement({self.kind})"


class LoginRequired(Exception):
    """Raised by requires_auth() to send a browser to the identity provider."""

    def __init__(self, return_to: str):
        self.return_to = return_to
        super().__init__(UNAUTHORIZED_MESSAGE)


def _original_url(request: Request) -> str:
    url = request.url
    return url.path + (f"?{url.query}" if url.query else "")


def reject_unauthenticated(request: Request) -> Response:
    """
    Response for an unauthenticated request to a protected route.

    Returns 401 when ERROR_ON_REQUIRED_AUTH is set, otherwise starts a login
    that returns to the requested URL.
    """
    context = request.state.openid
    logger.info(
        "Rejected unauthenticated request",
        extra={"path": request.url.path, "method": request.method}
    )

    if context.settings.ERROR_ON_REQUIRED_AUTH:
        body = ErrorResponse(error="unauthorized", message=UNAUTHORIZED_MESSAGE)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=body.model_dump(mode="json"),
        )

    return request.state.openid_response.login(return_to=_original_url(request))


def requires_auth():
    """
    Dependency: the request must be authenticated.

    Use as: Depends(requires_auth()). Returns the user's claims.
    """

    async def _dep(request: Request) -> Dict[str, Any]:
        context = getattr(request.state, "openid", None)
        if context is None:
            raise RuntimeError("request.state.openid is not set; is OpenIDMiddleware installed?")

        if not context.is_authenticated:
            if context.settings.ERROR_ON_REQUIRED_AUTH:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail=UNAUTHORIZED_MESSAGE,
                )
            raise LoginRequired(_original_url(request))

        return context.user

    return _dep


async def login_required_handler(request: Request, exc: LoginRequired) -> Response:
    """Exception handler turning LoginRequired into a login redirect."""
    return request.state.openid_response.login(return_to=exc.return_to)
