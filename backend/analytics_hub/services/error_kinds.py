"""
Error taxonomies shared by the token layer and the platform fetch layer.

Platform errors are classified lexically from the raw error text because
provider clients surface failures as messages; the mapping is kept here as
pure functions so it can be unit-tested on its own.
"""
from __future__ import annotations

import re
from enum import Enum


class TokenFailureKind(str, Enum):
    no_tokens = "NO_TOKENS"
    refresh_failed = "REFRESH_FAILED"
    decryption_failed = "DECRYPTION_FAILED"
    db_error = "DB_ERROR"


class PlatformErrorKind(str, Enum):
    auth_required = "auth_required"
    scope_missing = "scope_missing"
    rate_limited = "rate_limited"
    api_error = "api_error"

    @property
    def wire_value(self) -> str:
        # Rate limits are reported as api_error with a separate flag.
        if self is PlatformErrorKind.rate_limited:
            return PlatformErrorKind.api_error.value
        return self.value


# Provider refresh error codes meaning the grant is gone and the user must reconnect.
REVOKED_GRANT_CODES = frozenset(
    {
        "invalid_grant",
        "unauthorized_client",
        "invalid_client",
        "revoked_access_token",
        "expired_refresh_token",
    }
)

_AUTH_MARKERS = (
    "TOKEN_REFRESH_FAILED",
    "NO_TOKENS",
    "DECRYPTION_FAILED",
    "invalid_grant",
    "invalid credentials",
    "unauthenticated",
    "authentication failed",
    "no valid access token",
    "re-authenticate",
)
_SCOPE_MARKERS = (
    "missing required",
    "insufficient_scope",
    "insufficient authentication scopes",
    "access_token_scope_insufficient",
    "missing scope",
    "required scope",
)
_RATE_LIMIT_MARKERS = (
    "rate limit",
    "ratelimit",
    "rate_limit",
    "quota",
    "too many requests",
    "resource_exhausted",
)
_STATUS_RE = re.compile(r"\b(401|403|429)\b")


def is_revoked_grant(error_code: str | None, description: str | None = None) -> bool:
    """True when a refresh endpoint error means the grant was revoked or expired."""
    for value in (error_code, description):
        if not value:
            continue
        lowered = value.lower()
        if lowered in REVOKED_GRANT_CODES or any(code in lowered for code in REVOKED_GRANT_CODES):
            return True
    return False


def classify_error(text: str | None) -> PlatformErrorKind:
    """Map raw provider/token error text to a platform error kind.

    Scope problems win over generic auth problems, since a missing scope also
    tends to come back as a 403.
    """
    if not text:
        return PlatformErrorKind.api_error
    lowered = text.lower()

    if any(marker.lower() in lowered for marker in _SCOPE_MARKERS):
        return PlatformErrorKind.scope_missing
    if any(marker.lower() in lowered for marker in _AUTH_MARKERS):
        return PlatformErrorKind.auth_required
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return PlatformErrorKind.rate_limited

    status_match = _STATUS_RE.search(text)
    if status_match:
        code = status_match.group(1)
        if code == "429":
            return PlatformErrorKind.rate_limited
        if code == "401":
            return PlatformErrorKind.auth_required
    return PlatformErrorKind.api_error
