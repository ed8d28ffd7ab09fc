"""Error taxonomy for the Whoop sync engine.

Four classes of failure are distinguished:

    PERMANENT  — credentials confirmed invalid; the athlete must re-authorize.
    TRANSIENT  — rate limit, timeout, 5xx; safe to retry on the next run.
    VALIDATION — one malformed record; logged and dropped, never raised.
    UNKNOWN    — anything unclassified; treated like TRANSIENT but logged loudly.

Exceptions are only raised at the vendor boundary (HTTP calls).  Inside the
engine, outcomes travel as explicit result values (see ``TokenResult`` and
``UserSyncResult``).
"""

from __future__ import annotations

from enum import Enum

import httpx

# HTTP status codes that mean "try again later"
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# Token endpoint statuses that mean the refresh token is dead
PERMANENT_AUTH_STATUS_CODES: frozenset[int] = frozenset({400, 401, 403})

# OAuth2 ``error`` values (RFC 6749 §5.2 plus Whoop extensions) that mean revoked
PERMANENT_OAUTH_ERROR_CODES: frozenset[str] = frozenset(
    {
        "invalid_grant",
        "invalid_token",
        "unauthorized_client",
        "token_revoked",
        "revoked",
    }
)


class ErrorKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class WhoopAPIError(Exception):
    """Non-2xx response from the Whoop API.

    Attributes:
        status_code: HTTP status of the response.
        error_code:  OAuth ``error`` field when the body carried one.
        body:        Response text, truncated for logging.
    """

    def __init__(
        self, status_code: int, error_code: str | None = None, body: str = ""
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.body = body[:500]
        detail = f" ({error_code})" if error_code else ""
        super().__init__(f"Whoop API returned HTTP {status_code}{detail}")

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES

    @classmethod
    def from_response(cls, response: httpx.Response) -> "WhoopAPIError":
        error_code: str | None = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            raw_code = payload.get("error") or payload.get("error_code")
            if isinstance(raw_code, str):
                error_code = raw_code
        return cls(response.status_code, error_code, response.text)


class RefreshError(WhoopAPIError):
    """The token endpoint rejected a refresh-token grant."""


class SyncError(Exception):
    """Base for engine-level failures surfaced to callers."""


class NoTokenError(SyncError):
    """No tokens are stored for the user — never connected or fully disconnected."""


class ReauthRequiredError(SyncError):
    """Credentials are permanently invalid; the athlete must reconnect."""


class TransientRefreshError(SyncError):
    """The token could not be refreshed right now; retry on the next run."""


class SyncInProgressError(SyncError):
    """A sync for this user is already running."""


def classify_refresh_error(exc: BaseException) -> ErrorKind:
    """Classify a token-refresh failure on structured fields.

    Args:
        exc: Whatever the refresh call raised.

    Returns:
        PERMANENT for rejected credentials, TRANSIENT for rate limits,
        server errors and network failures, UNKNOWN for anything else.
    """
    if isinstance(exc, WhoopAPIError):
        if exc.error_code and exc.error_code.lower() in PERMANENT_OAUTH_ERROR_CODES:
            return ErrorKind.PERMANENT
        if exc.status_code in PERMANENT_AUTH_STATUS_CODES:
            return ErrorKind.PERMANENT
        if exc.status_code == 429 or exc.status_code >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.UNKNOWN
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
