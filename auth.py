"""
Bearer-token verification and the role gate.

Tokens are Firebase ID tokens: RS256 JWTs signed with one of Google's
rotating securetoken certificates. The verifier checks signature, audience,
issuer and expiry with python-jose and yields a ``Principal``.

The role gate never trusts token claims for roles; it reads the stored role
of the principal's email.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, Field

from context import get_context, get_store
from database import Store
from errors import ForbiddenError, UnauthenticatedError, UpstreamError
from schemas import ROLE_RANK

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
ISSUER_PREFIX = "https://securetoken.google.com/"

bearer_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    email: str
    uid: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Principal: ...


class FirebaseTokenVerifier:
    """Verify Firebase ID tokens for one project."""

    def __init__(self, project_id: str, http: httpx.Client, certs_url: str = GOOGLE_CERTS_URL):
        self.project_id = project_id
        self.http = http
        self.certs_url = certs_url

    def _fetch_certs(self) -> Dict[str, str]:
        try:
            response = self.http.get(self.certs_url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch identity provider certificates: %s", e)
            raise UpstreamError("Identity provider unavailable")

    def verify(self, token: str) -> Principal:
        if not self.project_id:
            raise UpstreamError("Identity provider is not configured")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            raise ForbiddenError("Invalid token")

        if header.get("alg") != "RS256":
            raise ForbiddenError("Invalid token algorithm")
        cert = self._fetch_certs().get(header.get("kid"))
        if cert is None:
            raise ForbiddenError("Invalid token signing key")

        try:
            claims = jwt.decode(
                token,
                cert,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=ISSUER_PREFIX + self.project_id,
            )
        except ExpiredSignatureError:
            raise ForbiddenError("Token has expired")
        except JWTError as e:
            logger.info("Token rejected: %s", e)
            raise ForbiddenError("Invalid token")

        email = claims.get("email")
        if not email:
            raise ForbiddenError("Token has no email claim")
        return Principal(email=email, uid=claims.get("sub"), claims=claims)


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    context=Depends(get_context),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise UnauthenticatedError("Unauthorized access: missing bearer token")
    return context.verifier.verify(credentials.credentials)


def has_role(store: Store, email: str, required: str) -> bool:
    role = store.get_role(email)
    if role is None:
        return False
    return ROLE_RANK.get(role, -1) >= ROLE_RANK[required]


def require_role(role: str):
    """Dependency admitting principals whose stored role ranks at least ``role``."""
    if role not in ROLE_RANK:
        raise ValueError(f"Unknown role: {role}")

    def role_dep(principal: Principal = Depends(get_principal), store: Store = Depends(get_store)) -> Principal:
        if not has_role(store, principal.email, role):
            raise ForbiddenError("Forbidden access: insufficient role")
        return principal

    return role_dep


def require_self(principal: Principal, email: Optional[str]) -> None:
    if not email or email != principal.email:
        raise ForbiddenError("Forbidden access: email does not match the signed-in user")
