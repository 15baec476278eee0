from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from fastapi import Request, Response

from tamilsubs.core.errors import Forbidden, InvalidAssertion, NotFound, Unauthorized
from tamilsubs.core.settings import settings

logger = logging.getLogger(__name__)

SESSION_TOKEN_TYPE = "tamilsubs_session"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


@dataclass(frozen=True)
class IdentityClaims:
    subject_id: str
    email: str | None = None
    name: str | None = None
    picture: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_session_secret() -> str:
    if not settings.session_secret:
        raise RuntimeError("SESSION_SECRET is not configured")
    return settings.session_secret


def create_session_token(account_id: str, now: datetime | None = None) -> str:
    issued = now or _utcnow()
    claims: dict[str, Any] = {
        "sub": account_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(days=max(1, settings.session_ttl_days))).timestamp()),
    }
    return jwt.encode(claims, _require_session_secret(), algorithm="HS256")


def decode_session_token(token: str) -> str:
    try:
        payload = jwt.decode(
            token,
            _require_session_secret(),
            algorithms=["HS256"],
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError:
        raise Unauthorized()
    if str(payload.get("type") or "") != SESSION_TOKEN_TYPE:
        raise Unauthorized()
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise Unauthorized()
    return subject


def set_session_cookie(response: Response, account_id: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=create_session_token(account_id),
        max_age=max(1, settings.session_ttl_days) * 24 * 60 * 60,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=settings.session_cookie_name, httponly=True, samesite="lax")


def get_current_account_id(request: Request) -> str:
    token = (request.cookies.get(settings.session_cookie_name) or "").strip()
    if not token:
        raise Unauthorized()
    return decode_session_token(token)


_JWKS_CLIENTS: dict[str, jwt.PyJWKClient] = {}


def _jwks_client(url: str) -> jwt.PyJWKClient:
    client = _JWKS_CLIENTS.get(url)
    if client is None:
        client = jwt.PyJWKClient(url)
        _JWKS_CLIENTS[url] = client
    return client


def verify_google_credential(credential: str) -> IdentityClaims:
    """Verify a Google Sign-In ID token and return the identity it asserts.

    Blocking: the signing key may be fetched over the network.
    """
    if not settings.google_client_id:
        raise RuntimeError("GOOGLE_CLIENT_ID is not configured")
    token = (credential or "").strip()
    if not token:
        raise InvalidAssertion("Missing credential")
    try:
        signing_key = _jwks_client(settings.google_jwks_url).get_signing_key_from_jwt(token).key
        payload = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.google_client_id,
            options={"require": ["exp", "sub", "iss"]},
        )
    except jwt.PyJWTError as exc:
        logger.warning("auth.google_rejected error=%s", type(exc).__name__)
        raise InvalidAssertion() from exc
    if str(payload.get("iss") or "") not in GOOGLE_ISSUERS:
        raise InvalidAssertion()
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise InvalidAssertion("Invalid token payload")
    return IdentityClaims(
        subject_id=subject,
        email=(str(payload["email"]) if payload.get("email") else None),
        name=(str(payload["name"]) if payload.get("name") else None),
        picture=(str(payload["picture"]) if payload.get("picture") else None),
    )


def _get_request_ip(request: Request) -> str | None:
    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client else None
    if host:
        return str(host).strip()
    return None


def is_loopback_request(request: Request) -> bool:
    host = _get_request_ip(request)
    if not host:
        return False
    if host.startswith("::ffff:"):
        host = host[7:]
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def require_dev_login_allowed(request: Request) -> None:
    if not settings.dev_bypass_login:
        raise NotFound()
    if not is_loopback_request(request):
        raise Forbidden("Dev login allowed only from localhost")
    origin = request.headers.get("origin")
    allowed = settings.dev_bypass_allowed_origins
    if origin and allowed and origin not in allowed:
        raise Forbidden("Origin not permitted for dev login")
