"""
Bearer-token identity for company owners.

The token subject is the owner's user id; the company is looked up (or
created) from it on every request. Tokens arrive in the ``Authorization``
header or, for browser sessions, in the ``access_token`` cookie.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from pydantic import BaseModel
from starlette.requests import Request

from .config import settings
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

ACCESS_COOKIE_NAME = "access_token"
TOKEN_TYPE = "access"


class TokenSubject(BaseModel):
    user_id: str
    email: str | None = None
    name: str | None = None


def create_access_token(subject: TokenSubject, expires_delta: timedelta | None = None) -> str:
    issued_at = datetime.now(timezone.utc)
    ttl = expires_delta or timedelta(minutes=settings.access_token_ttl_minutes)
    claims: dict[str, Any] = {
        "sub": subject.user_id,
        "type": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    if subject.email:
        claims["email"] = subject.email
    if subject.name:
        claims["name"] = subject.name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> TokenSubject | None:
    """Return the subject, or None for an expired, forged or non-access token."""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.info("[AUTH] Rejected expired access token")
        return None
    except jwt.PyJWTError:
        return None

    if claims.get("type") != TOKEN_TYPE or not claims.get("sub"):
        return None
    return TokenSubject(user_id=claims["sub"], email=claims.get("email"), name=claims.get("name"))


def token_from_request(request: Request) -> str | None:
    scheme, _, credentials = (request.headers.get("Authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(ACCESS_COOKIE_NAME)


def authenticate(request: Request) -> TokenSubject:
    token = token_from_request(request)
    if not token:
        raise AuthenticationError("Missing access token")

    subject = decode_token(token)
    if subject is None:
        raise AuthenticationError("Invalid or expired access token")
    return subject
