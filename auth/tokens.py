"""
auth/tokens.py -- Stateless session cookies and login authentication.

Security design decisions:
  Cookie: URL-encoded JSON
          {"role", "username", "signature", "timestamp"}  (database mode)
          {"role", "password"?}                           (single-tenant mode)
       No server-side session state. Expiry is the caller's concern:
       verify_session() accepts a max_age, the cookie itself carries max-age.

  Signature: HMAC-SHA256(SECRET_KEY, "<username>\\n<role>\\n<timestamp>") as hex.
       The whole identity payload is signed, not just the username, so a
       client that edits the JSON cannot raise its own role. Comparison uses
       hmac.compare_digest.

  Single-tenant mode: there is no username to sign. The cookie carries the
       shared deployment password, checked in constant time against
       Settings.password on every request.

  authenticate_user(): one generic AuthenticationError for unknown user,
       wrong password, and banned account -- the response never reveals which.

SECRET_KEY: sourced from core.config.get_settings() at call time.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

from auth.models import SessionToken
from core.config import get_settings
from core.errors import AuthenticationError

if TYPE_CHECKING:
    from auth.store import UserStore
    from core.models import AdminConfig

logger = logging.getLogger("tvcore.auth")

AUTH_COOKIE = "auth"


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def sign_payload(username: str, role: str, timestamp: int, secret: str | None = None) -> str:
    """Return the hex HMAC-SHA256 signature over username, role and timestamp."""
    key = secret if secret is not None else get_settings().secret_key
    message = f"{username}\n{role}\n{timestamp}"
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _encode(payload: dict) -> str:
    return quote(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), safe="")


def issue_session(username: str, role: str, secret: str | None = None, now: int | None = None) -> str:
    """Issue a signed cookie value for a database-mode user."""
    timestamp = now if now is not None else _now_ms()
    return _encode(
        {
            "role": role,
            "username": username,
            "signature": sign_payload(username, role, timestamp, secret),
            "timestamp": timestamp,
        }
    )


def issue_single_tenant_session(password: str | None = None) -> str:
    """Issue an unsigned role-only cookie value for single-tenant deployments."""
    payload: dict = {"role": "user"}
    if password:
        payload["password"] = password
    return _encode(payload)


# ---------------------------------------------------------------------------
# Decoding / verification
# ---------------------------------------------------------------------------


def decode_session(cookie: str | None) -> SessionToken | None:
    """Parse a cookie value without verifying it. Returns None if malformed."""
    if not cookie:
        return None
    try:
        data = json.loads(unquote(cookie))
    except (ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None

    role = data.get("role", "user")
    username = data.get("username")
    signature = data.get("signature")
    timestamp = data.get("timestamp")
    password = data.get("password")
    if not isinstance(role, str):
        return None
    if username is not None and not isinstance(username, str):
        return None
    if signature is not None and not isinstance(signature, str):
        return None
    if timestamp is not None and (isinstance(timestamp, bool) or not isinstance(timestamp, int)):
        return None
    if password is not None and not isinstance(password, str):
        return None
    return SessionToken(role=role, username=username, signature=signature, timestamp=timestamp, password=password)


def verify_session(
    cookie: str | None,
    secret: str | None = None,
    max_age: int | None = None,
    now: int | None = None,
) -> SessionToken | None:
    """Return the SessionToken if the signature is valid, else None.

    max_age is in seconds. When given, tokens older than that (or issued in
    the future) are rejected. Never raises.
    """
    token = decode_session(cookie)
    if token is None or not token.username or not token.signature or token.timestamp is None:
        return None
    if not token.signature.isascii():
        return None
    try:
        expected = sign_payload(token.username, token.role, token.timestamp, secret)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(expected, token.signature):
        logger.debug("Rejected session cookie with bad signature for %r", token.username)
        return None
    if max_age is not None:
        current = now if now is not None else _now_ms()
        age_ms = current - token.timestamp
        if age_ms < 0 or age_ms > max_age * 1000:
            return None
    return token


def verify_single_tenant_session(cookie: str | None, password: str) -> SessionToken | None:
    """Validate a single-tenant cookie against the deployment password.

    An empty deployment password means the site is open: every request gets
    an anonymous user session.
    """
    if not password:
        return SessionToken(role="user")
    token = decode_session(cookie)
    if token is None or token.password is None:
        return None
    if not passwords_match(token.password, password):
        return None
    return token


def passwords_match(given: str, expected: str) -> bool:
    """Constant-time comparison of a presented secret with the deployment password."""
    try:
        return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))
    except UnicodeEncodeError:
        return False


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, config: AdminConfig, username: str, password: str) -> str:
    """Verify credentials and the banned flag; return the user's role.

    The role comes from the credential store (the roster), banned comes from
    the reconciled configuration. Every failure raises the same
    AuthenticationError.
    """
    if not store.verify_user(username, password):
        raise AuthenticationError()
    config_user = config.find_user(username)
    if config_user is not None and config_user.banned:
        logger.info("Login rejected for banned user %r", username)
        raise AuthenticationError()
    return store.get_role(username) or "user"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, value: str, max_age: int = 0) -> None:
    """Write the session cookie on a Starlette response.

    samesite="lax": sent on same-site navigations, not on cross-site POST.
    secure: only over HTTPS when SECURE_COOKIES=true.
    httponly is off: the front end reads role and username from the cookie.
    """
    settings = get_settings()
    response.set_cookie(
        AUTH_COOKIE,
        value=value,
        path="/",
        httponly=False,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max_age if max_age > 0 else settings.session_max_age_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(AUTH_COOKIE, path="/")
