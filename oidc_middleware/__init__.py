"""
OpenID Connect relying-party middleware for FastAPI.

Usage:
    from oidc_middleware.main import create_app
    app = create_app()
"""

__version__ = "1.0.0"
