"""
iam/tokens.py -- Access/refresh JWTs and the auth cookies that carry them.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. Access tokens carry the
       full principal (user_id, tenant_id, email, name, scopes) plus the
       registered claims iss/sub/aud/exp/nbf/iat. Refresh tokens carry only
       registered claims, with sub = user id and a random jti so two tokens
       issued in the same second never collide.

  Verification returns None on any failure. Expired, tampered, wrong
       issuer/audience and malformed tokens are indistinguishable to callers,
       so nothing about the failure leaks to the client.

  Closed claim set: a payload with claim keys outside the known set is
       rejected. Refresh tokens therefore cannot pass as access tokens (they
       lack the principal claims) and access tokens cannot pass as refresh
       tokens (they carry extra claims).

  A valid refresh JWT is necessary but not sufficient: iam/sessions.py also
       requires an unrevoked, unexpired row for its hash.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings
from iam.models import TokenClaims

logger = logging.getLogger("tenantgate.iam.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_REGISTERED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "nbf", "iat", "jti"})
_ACCESS_CLAIMS = frozenset({"user_id", "tenant_id", "email", "name", "scopes"})


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: str,
    tenant_id: str,
    email: str,
    name: str,
    scopes: list[str],
    expire_seconds: int = 0,
) -> str:
    """Encode a signed access token for a user principal.

    expire_seconds of 0 (default) uses Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "email": email,
        "name": name,
        "scopes": list(scopes),
        "iss": _settings.jwt_issuer,
        "sub": user_id,
        "aud": [_settings.jwt_audience],
        "exp": now + timedelta(seconds=duration),
        "nbf": now,
        "iat": now,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> TokenClaims | None:
    """Verify an access token and return its claims, or None on any failure."""
    payload = _decode(token)
    if payload is None:
        return None
    if not set(payload) <= _REGISTERED_CLAIMS | _ACCESS_CLAIMS:
        return None
    if not _ACCESS_CLAIMS <= set(payload):
        return None
    scopes = payload["scopes"]
    if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
        return None
    try:
        return TokenClaims(
            user_id=str(payload["user_id"]),
            tenant_id=str(payload["tenant_id"]),
            email=str(payload["email"]),
            name=str(payload["name"]),
            scopes=scopes,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def create_refresh_token(user_id: str, expire_seconds: int = 0) -> str:
    """Encode a refresh token carrying only registered claims."""
    duration = expire_seconds if expire_seconds > 0 else _settings.refresh_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "iss": _settings.jwt_issuer,
        "sub": user_id,
        "aud": [_settings.jwt_audience],
        "exp": now + timedelta(seconds=duration),
        "nbf": now,
        "iat": now,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_refresh_token(token: str) -> str | None:
    """Verify a refresh token and return its subject (user id), or None."""
    payload = _decode(token)
    if payload is None or not set(payload) <= _REGISTERED_CLAIMS:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) and subject else None


def _decode(token: str) -> dict | None:
    try:
        return jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
        )
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, refresh_token: str | None = None) -> None:
    """Write the access (and optionally refresh) token as httpOnly cookies.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age matches each token's lifetime so cookie and token expire together.
    """
    response.set_cookie(
        _settings.access_cookie_name,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.access_token_expire_seconds,
    )
    if refresh_token is not None:
        response.set_cookie(
            _settings.refresh_cookie_name,
            value=refresh_token,
            httponly=True,
            samesite="lax",
            secure=_settings.secure_cookies,
            max_age=_settings.refresh_token_expire_seconds,
        )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(_settings.access_cookie_name)
    response.delete_cookie(_settings.refresh_cookie_name)
