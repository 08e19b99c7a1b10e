"""
Authentication Package

This package handles the OpenID Connect relying-party flow for the
application.

Key responsibilities:
- Login initiation with single-use nonce/state/returnTo transient cookies
- Callback handling for the query, fragment and form_post response modes
- Token exchange and ID token validation against the provider JWKS
- Encrypted cookie session holding filtered identity claims
- Route protection (always, never, or per-request predicate)

Modules:
- client: Provider discovery, authorization URLs, token exchange
- transient: Signed single-use cookies
- session: Encrypted session cookie and external session stores
- context: Per-request RequestContext / ResponseContext
- routes: Login, logout and callback endpoints
- gate: AuthRequirement and the requires_auth dependency
- middleware: OpenIDMiddleware and setup_openid()

The authentication flow:
1. Browser hits /login (or a protected route)
2. Middleware stores state/nonce/returnTo and redirects to the provider
3. Provider sends the authorization response to /callback
4. Middleware validates it, exchanges the code, stores filtered claims
5. Browser is redirected to returnTo with the session cookie set
"""

from .client import OpenIDClient, TokenSet, get_client, init_client, reset_client, set_client
from .context import RequestContext, ResponseContext
from .errors import (
    ClientInitializationError,
    ContinuationError,
    IdentityProviderUnavailable,
    OpenIDError,
    OPError,
    RPError,
)
from .gate import AuthRequirement, requires_auth
from .middleware import OpenIDMiddleware, setup_openid
from .routes import CallbackContinuation, create_auth_router, filter_claims
from .session import AppSession, SessionStore, StarletteSessionStore
from .transient import TransientStore

__all__ = [
    "OpenIDClient",
    "TokenSet",
    "get_client",
    "init_client",
    "reset_client",
    "set_client",
    "RequestContext",
    "ResponseContext",
    "ClientInitializationError",
    "ContinuationError",
    "IdentityProviderUnavailable",
    "OpenIDError",
    "OPError",
    "RPError",
    "AuthRequirement",
    "requires_auth",
    "OpenIDMiddleware",
    "setup_openid",
    "CallbackContinuation",
    "create_auth_router",
    "filter_claims",
    "AppSession",
    "SessionStore",
    "StarletteSessionStore",
    "TransientStore",
]
