"""
Exceptions raised by the OpenID Connect flow.

Protocol and validation failures are turned into HTTP errors by the callback
route; initialization and continuation errors are programming or deployment
problems and surface as 500s.
"""

from typing import Optional


class OpenIDError(Exception):
    """Base exception for OpenID Connect errors"""
    pass


class ClientInitializationError(OpenIDError):
    """Discovery or client construction failed, or the client was never initialized."""
    pass


class OPError(OpenIDError):
    """
    Error reported by the identity provider.

    Raised when the authorization response or the token endpoint carries an
    OAuth 2.0 ``error`` parameter.
    """

    def __init__(self, error: str, error_description: Optional[str] = None):
        self.error = error
        self.error_description = error_description
        message = f"{error} ({error_description})" if error_description else error
        super().__init__(message)


class RPError(OpenIDError):
    """Relying-party side validation failure (state, nonce, ID token checks)."""
    pass


class IdentityProviderUnavailable(OpenIDError):
    """The identity provider could not be reached."""
    pass


class ContinuationError(OpenIDError):
    """The callback extension hook did not call its continuation exactly once."""
    pass
