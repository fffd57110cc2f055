"""
Authentication helpers for the metering gateway.
"""

from .jwks import JWKSTokenVerifier, VerifiedToken

__all__ = [
    "JWKSTokenVerifier",
    "VerifiedToken",
]
