"""
Authentication helpers for the Access Gateway service.
"""

from .identity import (
    ANONYMOUS_KIND,
    USER_KIND,
    AnonymousIdentity,
    Identity,
    IdentityResolver,
    RequestCredential,
    UserIdentity,
)

__all__ = [
    "ANONYMOUS_KIND",
    "USER_KIND",
    "AnonymousIdentity",
    "Identity",
    "IdentityResolver",
    "RequestCredential",
    "UserIdentity",
]
