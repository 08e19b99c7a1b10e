"""
Application Session Module
==========================

Holds the authenticated user's identity claims between requests.

Two stores implement the same interface:
- AppSession: claims encrypted into a cookie (JWE, dir + A256GCM) with a key
  derived from APP_SESSION_SECRET. Used when a session secret is configured.
- StarletteSessionStore: claims kept in ``request.session`` provided by
  Starlette's SessionMiddleware, for applications that already run their own
  session.

A missing, corrupt or expired session is never an error: ``load`` returns
None and the request is treated as anonymous.
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from fastapi import Request
from jose import jwe
from jose.exceptions import JOSEError

from oidc_middleware.auth.cookies import CookieJar

logger = logging.getLogger(__name__)

# Browsers drop cookies larger than this
MAX_COOKIE_SIZE = 4096


# =============================================================================
# Store Protocol
# =============================================================================

@runtime_checkable
class SessionStore(Protocol):
    """Where identity claims are kept between requests."""

    def load(self, request: Request) -> Optional[Dict[str, Any]]:
        """Return stored claims, or None if there is no valid session."""
        ...

    def save(self, request: Request, cookies: CookieJar, claims: Dict[str, Any]) -> None:
        """Persist claims for the next requests."""
        ...

    def clear(self, request: Request, cookies: CookieJar) -> None:
        """Destroy the session."""
        ...


# =============================================================================
# Encrypted Cookie Session
# =============================================================================

def derive_encryption_key(secret: str) -> bytes:
    """
    Derive the 256-bit content encryption key from the session secret.

    Args:
        secret: APP_SESSION_SECRET value

    Returns:
        32 key bytes suitable for A256GCM
    """
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"JWE CEK",
    ).derive(secret.encode("utf-8"))


class AppSession:
    """
    Encrypted cookie holding the session claims.

    The JWE payload is ``{"claims": {...}, "iat": ..., "uat": ..., "exp": ...}``.
    ``exp`` is checked on every load, so a cookie that outlives its Max-Age
    in a misbehaving client still stops working.
    """

    def __init__(
        self,
        secret: str,
        name: str = "identity",
        duration: int = 7 * 24 * 60 * 60,
        domain: Optional[str] = None,
        path: str = "/",
        secure: bool = True,
        httponly: bool = True,
        samesite: str = "lax",
        ephemeral: bool = False,
    ):
        self.name = name
        self.duration = duration
        self.ephemeral = ephemeral
        self.cookie_attributes: Dict[str, Any] = {
            "domain": domain,
            "path": path,
            "secure": secure,
            "httponly": httponly,
            "samesite": samesite,
        }
        self._key = derive_encryption_key(secret)

    @classmethod
    def from_settings(cls, settings) -> "AppSession":
        return cls(
            settings.APP_SESSION_SECRET,
            name=settings.APP_SESSION_NAME,
            duration=settings.APP_SESSION_DURATION,
            domain=settings.APP_SESSION_COOKIE_DOMAIN,
            path=settings.APP_SESSION_COOKIE_PATH,
            secure=settings.cookie_secure,
            httponly=settings.APP_SESSION_COOKIE_HTTPONLY,
            samesite=settings.APP_SESSION_COOKIE_SAMESITE,
            ephemeral=settings.APP_SESSION_COOKIE_EPHEMERAL,
        )

    def encrypt(self, claims: Dict[str, Any], now: Optional[int] = None) -> str:
        """Encrypt claims into a compact JWE string."""
        now = int(now if now is not None else time.time())
        payload = {
            "claims": claims,
            "iat": now,
            "uat": now,
            "exp": now + self.duration,
        }
        token = jwe.encrypt(
            json.dumps(payload, separators=(",", ":")),
            self._key,
            algorithm="dir",
            encryption="A256GCM",
        )
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def decrypt(self, value: str) -> Optional[Dict[str, Any]]:
        """
        Decrypt a session value.

        Returns:
            The claims, or None if the value is corrupt, tampered or expired
        """
        try:
            payload = json.loads(jwe.decrypt(value, self._key))
        except (JOSEError, ValueError, TypeError) as e:
            logger.debug(f"Discarding undecryptable session cookie: {type(e).__name__}")
            return None

        if not isinstance(payload, dict):
            return None

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= time.time():
            logger.debug("Discarding expired session cookie")
            return None

        claims = payload.get("claims")
        return claims if isinstance(claims, dict) else None

    def load(self, request: Request) -> Optional[Dict[str, Any]]:
        value = request.cookies.get(self.name)
        if not value:
            return None
        return self.decrypt(value)

    def save(self, request: Request, cookies: CookieJar, claims: Dict[str, Any]) -> None:
        value = self.encrypt(claims)

        if len(value) + len(self.name) > MAX_COOKIE_SIZE:
            logger.warning(
                "Session cookie exceeds browser size limit; add claims to IDENTITY_CLAIM_FILTER",
                extra={"cookie_size": len(value), "claim_count": len(claims)}
            )

        attributes = dict(self.cookie_attributes)
        if not self.ephemeral:
            attributes["max_age"] = self.duration
        cookies.set(self.name, value, **attributes)

    def clear(self, request: Request, cookies: CookieJar) -> None:
        cookies.delete(self.name, **self.cookie_attributes)


# =============================================================================
# External Session
# =============================================================================

class StarletteSessionStore:
    """
    Keeps claims in the session managed by Starlette's SessionMiddleware.

    SessionMiddleware must be added outside the OpenID middleware so that
    ``request.session`` exists when the claims are read and written.
    """

    def __init__(self, key: str = "openid_claims"):
        self.key = key

    def load(self, request: Request) -> Optional[Dict[str, Any]]:
        if "session" not in request.scope:
            logger.warning("StarletteSessionStore used without SessionMiddleware")
            return None
        claims = request.session.get(self.key)
        return claims if isinstance(claims, dict) else None

    def save(self, request: Request, cookies: CookieJar, claims: Dict[str, Any]) -> None:
        request.session[self.key] = claims

    def clear(self, request: Request, cookies: CookieJar) -> None:
        if "session" in request.scope:
            request.session.pop(self.key, None)
