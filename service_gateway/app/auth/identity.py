"""
Caller identity resolution for the Access Gateway.

Every request resolves to exactly one identity: a ``UserIdentity`` when it
carries a valid bearer token for a user that still exists, otherwise an
``AnonymousIdentity`` keyed by the caller's network origin. A bad credential
is never an error here; it simply yields the anonymous variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from ..adapters.user_directory_client import UserRecord

USER_KIND = "user"
ANONYMOUS_KIND = "anonymous"


class UserDirectory(Protocol):
    async def lookup_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        ...


@dataclass(frozen=True)
class RequestCredential:
    """Credential material pulled off an incoming request."""

    bearer_token: Optional[str]
    origin: str

    @classmethod
    def from_request(cls, request: Request, *, trust_forwarded_for: bool = False) -> "RequestCredential":
        authorization = request.headers.get("Authorization") or ""
        scheme, _, token = authorization.partition(" ")
        bearer_token = token.strip() if scheme == "Bearer" and token.strip() else None
        return cls(bearer_token=bearer_token, origin=client_origin(request, trust_forwarded_for))


def client_origin(request: Request, trust_forwarded_for: bool = False) -> str:
    """Extract the caller IP, honouring proxy headers only when trusted."""
    if trust_forwarded_for:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated caller backed by a durable user record."""

    user_id: str
    role: str
    user: Optional[UserRecord] = None

    kind = USER_KIND
    is_authenticated = True

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"

    def has_role(self, *roles: str) -> bool:
        return self.role in roles

    @property
    def is_admin(self) -> bool:
        return self.has_role("admin")

    @property
    def is_instructor(self) -> bool:
        return self.has_role("instructor")

    @property
    def is_student(self) -> bool:
        return self.has_role("student")


@dataclass(frozen=True)
class AnonymousIdentity:
    """Unauthenticated caller, known only by network origin."""

    origin: str

    kind = ANONYMOUS_KIND
    is_authenticated = False
    role = None

    @property
    def key(self) -> str:
        return f"ip:{self.origin}"

    def has_role(self, *roles: str) -> bool:
        return False

    is_admin = False
    is_instructor = False
    is_student = False


Identity = Union[UserIdentity, AnonymousIdentity]


class IdentityResolver:
    """Turn request credentials into a User or Anonymous identity."""

    def __init__(self, user_directory: UserDirectory, jwt_secret: str, *, algorithm: str = "HS256"):
        self.user_directory = user_directory
        self.jwt_secret = jwt_secret
        self.algorithm = algorithm
        self.logger = get_logger("gateway.identity_resolver")

    async def resolve(self, credential: RequestCredential) -> Identity:
        anonymous = AnonymousIdentity(origin=credential.origin)
        if not credential.bearer_token:
            return anonymous

        user_id = self._verified_subject(credential.bearer_token)
        if user_id is None:
            return anonymous

        try:
            user = await self.user_directory.lookup_user_by_id(user_id)
        except ExternalServiceError as e:
            self.logger.warning("User lookup failed, treating caller as anonymous",
                                user_id=user_id, error=e.message)
            return anonymous

        if user is None:
            self.logger.info("Token subject not found, treating caller as anonymous", user_id=user_id)
            return anonymous

        return UserIdentity(user_id=user.id, role=user.role, user=user)

    def _verified_subject(self, token: str) -> Optional[str]:
        """Return the ``sub`` claim of a valid token, or ``None``."""
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=[self.algorithm])
        except JWTError as e:
            self.logger.info("Invalid auth token, treating caller as anonymous", error=str(e))
            return None

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            self.logger.info("Auth token missing subject claim, treating caller as anonymous")
            return None
        return subject
