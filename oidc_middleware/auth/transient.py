"""
Transient cookie storage for values that live for one login attempt.

The login route stores ``nonce``, ``state`` and ``returnTo`` here and the
callback reads each of them exactly once. Values are signed and timestamped
with itsdangerous so they cannot be forged and expire with the attempt.
"""

import logging
import secrets
from typing import Optional

from fastapi import Request
from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer

from oidc_middleware.auth.cookies import CookieJar

logger = logging.getLogger(__name__)

TRANSIENT_SALT = "oidc_middleware.transient"


def generate_value(nbytes: int = 32) -> str:
    """Generate an unpredictable URL-safe value for nonce/state."""
    return secrets.token_urlsafe(nbytes)


class TransientStore:
    """
    Writes and consumes single-use signed cookies.

    Args:
        secret: Signing secret
        max_age: Seconds after which a stored value is rejected
        legacy_same_site_cookie: Also write ``_<name>`` fallback cookies without
            a SameSite attribute for user agents that reject ``SameSite=None``
    """

    def __init__(self, secret: str, max_age: int = 600, legacy_same_site_cookie: bool = True):
        self.serializer = URLSafeTimedSerializer(secret, salt=TRANSIENT_SALT)
        self.max_age = max_age
        self.legacy_same_site_cookie = legacy_same_site_cookie

    def store(
        self,
        key: str,
        cookies: CookieJar,
        value: Optional[str] = None,
        same_site: str = "none",
    ) -> str:
        """
        Store a transient value and return it.

        A random value is generated when none is given.
        """
        value = value if value is not None else generate_value()
        same_site = same_site.lower()
        signed = self.serializer.dumps(value)

        cookies.set(
            key,
            signed,
            max_age=self.max_age,
            path="/",
            httponly=True,
            secure=True,
            samesite=same_site,
        )

        if same_site == "none" and self.legacy_same_site_cookie:
            cookies.set(
                f"_{key}",
                signed,
                max_age=self.max_age,
                path="/",
                httponly=True,
                secure=True,
                samesite=None,
            )

        return value

    def get_once(self, key: str, request: Request, cookies: CookieJar) -> Optional[str]:
        """
        Return a stored value and clear it.

        The backing cookie(s) are deleted whether or not a valid value was
        found. Later calls for the same key in this request return None, and
        the deleted cookie means later requests do too.
        """
        consumed = getattr(request.state, "openid_consumed", None)
        if consumed is None:
            consumed = set()
            request.state.openid_consumed = consumed

        raw = None
        if key not in consumed:
            raw = request.cookies.get(key)
            if raw is None and self.legacy_same_site_cookie:
                raw = request.cookies.get(f"_{key}")
        consumed.add(key)

        cookies.delete(key, path="/", secure=True, httponly=True, samesite="none")
        if self.legacy_same_site_cookie:
            cookies.delete(f"_{key}", path="/", secure=True, httponly=True, samesite=None)

        if raw is None:
            return None

        try:
            return self.serializer.loads(raw, max_age=self.max_age)
        except SignatureExpired:
            logger.info(f"Transient cookie '{key}' expired")
            return None
        except BadData:
            logger.warning(f"Transient cookie '{key}' has an invalid signature")
            return None
