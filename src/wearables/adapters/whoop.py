"""Whoop API v2 client.

Uses OAuth2 (authorization-code + refresh-token grants).  Both grants POST
form-encoded with ``client_id``/``client_secret`` in the body; Whoop rejects
HTTP Basic client authentication.

API base: https://api.prod.whoop.com/developer/v2

Endpoints used:
    /cycle                  — Physiological cycles (daily strain)
    /recovery               — Recovery scores
    /activity/sleep         — Sleep data
    /activity/workout       — Workout sessions
    /user/profile/basic     — Name and Whoop user id
    /user/measurement/body  — Height, weight, max heart rate

Collection endpoints are paginated: ``limit`` per page, ``nextToken`` on the
request, ``next_token`` on the response.  Every request goes through
``fetch_with_retry``, so a failure mid-pagination retries only that page.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode
from uuid import UUID

import httpx

from src.wearables.base import OAuthTokens, RecordType, utc_now
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.errors import RefreshError, WhoopAPIError
from src.wearables.retry import SleepFn, fetch_with_retry

logger = logging.getLogger("prime.wearables.whoop")

WHOOP_SCOPES: tuple[str, ...] = (
    "offline",  # required to receive refresh tokens
    "read:recovery",
    "read:sleep",
    "read:workout",
    "read:cycles",
    "read:profile",
    "read:body_measurement",
)

STATE_TTL = timedelta(minutes=10)

# Collection endpoint per record type
ENDPOINTS: dict[RecordType, str] = {
    RecordType.CYCLE: "/cycle",
    RecordType.RECOVERY: "/recovery",
    RecordType.SLEEP: "/activity/sleep",
    RecordType.WORKOUT: "/activity/workout",
}


class InvalidStateError(ValueError):
    """OAuth ``state`` is missing, malformed, tampered with, or expired."""


def format_whoop_timestamp(dt: datetime) -> str:
    """Render a datetime as Whoop expects: UTC, millisecond precision, ``Z``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


class WhoopClient:
    """Async Whoop API client.

    The httpx client is injected and owned by the caller (the FastAPI
    lifespan in production, an ``httpx.MockTransport`` client in tests).

    Usage::

        client = WhoopClient.from_settings(get_settings(), http)
        records = await client.fetch_paginated("/cycle", token, start, end)
    """

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "Whoop"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "",
        api_base: str = "https://api.prod.whoop.com/developer/v2",
        oauth_base: str = "https://api.prod.whoop.com/oauth/oauth2",
        config: SyncConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the Whoop client.

        Args:
            http_client:   Shared httpx client.
            client_id:     OAuth2 client ID (WHOOP_CLIENT_ID).
            client_secret: OAuth2 client secret (WHOOP_CLIENT_SECRET).
            redirect_uri:  Callback registered with Whoop.
            api_base:      Developer API root.
            oauth_base:    OAuth root holding ``/auth`` and ``/token``.
            config:        Sync config; the global singleton by default.
            sleep:         Backoff sleep, injectable for tests.
            now:           Clock, injectable for tests.
        """
        self._http = http_client
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._api_base = api_base.rstrip("/")
        self._oauth_base = oauth_base.rstrip("/")
        self._config = config or get_sync_config()
        self._sleep = sleep
        self._now = now

    @classmethod
    def from_settings(cls, settings, http_client: httpx.AsyncClient, **kwargs) -> "WhoopClient":
        return cls(
            http_client=http_client,
            client_id=settings.whoop_client_id,
            client_secret=settings.whoop_client_secret,
            redirect_uri=settings.whoop_redirect_uri,
            api_base=settings.whoop_api_base,
            oauth_base=settings.whoop_oauth_base,
            **kwargs,
        )

    @property
    def token_url(self) -> str:
        return f"{self._oauth_base}/token"

    # ------------------------------------------------------------------
    # Authorization-code flow
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(WHOOP_SCOPES),
            "state": state,
        }
        return f"{self._oauth_base}/auth?{urlencode(params)}"

    def _sign_state(self, payload: str) -> str:
        digest = hmac.new(
            self._client_secret.encode(), payload.encode(), hashlib.sha256
        ).hexdigest()
        return digest[:32]

    def generate_state(self, user_id: UUID) -> str:
        """Build an OAuth ``state`` binding the callback to ``user_id``.

        Format: ``base64(user_id):epoch_ms:nonce:signature``.  The signature
        is an HMAC over the first three parts keyed by the client secret.
        """
        encoded = base64.urlsafe_b64encode(str(user_id).encode()).decode()
        timestamp = int(self._now().timestamp() * 1000)
        nonce = secrets.token_hex(8)
        payload = f"{encoded}:{timestamp}:{nonce}"
        return f"{payload}:{self._sign_state(payload)}"

    def validate_state(self, state: str | None) -> UUID:
        """Verify a ``state`` produced by ``generate_state`` and return its user.

        Raises:
            InvalidStateError: Missing, malformed, bad signature, or older
                               than ten minutes.
        """
        if not state:
            raise InvalidStateError("Missing state parameter")

        parts = state.split(":")
        if len(parts) != 4:
            raise InvalidStateError("Invalid state format")
        encoded, ts_raw, nonce, signature = parts

        payload = f"{encoded}:{ts_raw}:{nonce}"
        if not hmac.compare_digest(self._sign_state(payload), signature):
            raise InvalidStateError("State signature mismatch")

        try:
            timestamp_ms = int(ts_raw)
            user_id = UUID(base64.urlsafe_b64decode(encoded.encode()).decode())
        except (ValueError, binascii.Error) as exc:
            raise InvalidStateError("Malformed state content") from exc

        issued = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        if self._now() - issued > STATE_TTL:
            raise InvalidStateError("State expired")
        return user_id

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            WhoopAPIError: The token endpoint rejected the code.
        """
        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code.strip(),
                "redirect_uri": self._redirect_uri,
            },
            error_cls=WhoopAPIError,
        )
        tokens = OAuthTokens.from_grant_response(data, self._now())
        logger.info(
            "Whoop: code exchanged (refresh_token=%s, expires_at=%s)",
            bool(tokens.refresh_token), tokens.expires_at,
        )
        return tokens

    # ------------------------------------------------------------------
    # Refresh-token flow
    # ------------------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new token pair.

        Rate limits, 5xx and network errors are retried under the configured
        policy before giving up.  If Whoop does not rotate the refresh token
        the old one is kept.

        Raises:
            RefreshError:          The token endpoint answered non-2xx.
            httpx.TransportError:  Network failure after the last retry.
        """
        data = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token.strip()},
            error_cls=RefreshError,
        )
        tokens = OAuthTokens.from_grant_response(data, self._now())
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def _post_token(self, form: dict[str, str], error_cls: type[WhoopAPIError]) -> dict:
        body = {
            **form,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }

        async def _attempt() -> dict:
            response = await self._http.post(
                self.token_url,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            if response.is_error:
                raise error_cls.from_response(response)
            return response.json()

        result = await fetch_with_retry(
            _attempt,
            policy=self._config.retry,
            sleep=self._sleep,
            label=f"whoop token ({form['grant_type']})",
        )
        return result.data

    # ------------------------------------------------------------------
    # Data endpoints
    # ------------------------------------------------------------------

    async def fetch_paginated(
        self,
        endpoint: str,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a windowed collection endpoint.

        Args:
            endpoint:     Path relative to the API base, e.g. ``"/cycle"``.
            access_token: Bearer token.
            window_start: Inclusive lower bound.
            window_end:   Upper bound.

        Returns:
            Concatenated ``records`` from all pages, in API order.

        Raises:
            WhoopAPIError:        Non-retryable or exhausted HTTP failure.
            httpx.TransportError: Network failure after the last retry.
        """
        params: dict[str, Any] = {
            "start": format_whoop_timestamp(window_start),
            "end": format_whoop_timestamp(window_end),
            "limit": self._config.page_size,
        }
        records: list[dict[str, Any]] = []
        pages = 0

        while True:
            page = await self._get(endpoint, access_token, params=dict(params))
            pages += 1
            records.extend(page.get("records") or [])
            next_token = page.get("next_token")
            if not next_token:
                break
            params["nextToken"] = next_token

        logger.debug(
            "Whoop %s: %d record(s) across %d page(s)", endpoint, len(records), pages
        )
        return records

    async def fetch_records(
        self,
        record_type: RecordType,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[dict[str, Any]]:
        return await self.fetch_paginated(
            ENDPOINTS[record_type], access_token, window_start, window_end
        )

    async def fetch_cycles(self, access_token: str, start: datetime, end: datetime) -> list[dict]:
        return await self.fetch_records(RecordType.CYCLE, access_token, start, end)

    async def fetch_recovery(self, access_token: str, start: datetime, end: datetime) -> list[dict]:
        return await self.fetch_records(RecordType.RECOVERY, access_token, start, end)

    async def fetch_sleep(self, access_token: str, start: datetime, end: datetime) -> list[dict]:
        return await self.fetch_records(RecordType.SLEEP, access_token, start, end)

    async def fetch_workouts(self, access_token: str, start: datetime, end: datetime) -> list[dict]:
        return await self.fetch_records(RecordType.WORKOUT, access_token, start, end)

    async def fetch_profile(self, access_token: str) -> dict[str, Any]:
        return await self._get("/user/profile/basic", access_token)

    async def fetch_body_measurements(self, access_token: str) -> dict[str, Any]:
        return await self._get("/user/measurement/body", access_token)

    # ------------------------------------------------------------------
    # Private HTTP helper
    # ------------------------------------------------------------------

    async def _get(
        self, path: str, access_token: str, params: dict | None = None
    ) -> dict:
        """Make an authenticated GET request to the Whoop API with retry.

        Args:
            path:         Endpoint path relative to the API base.
            access_token: Bearer token.
            params:       Query parameters.

        Returns:
            JSON response dict.
        """
        url = f"{self._api_base}{path}"
        headers = {"Authorization": f"Bearer {access_token}"}

        async def _attempt() -> dict:
            response = await self._http.get(url, params=params, headers=headers)
            if response.is_error:
                raise WhoopAPIError.from_response(response)
            return response.json()

        result = await fetch_with_retry(
            _attempt,
            policy=self._config.retry,
            sleep=self._sleep,
            label=f"GET {path}",
        )
        return result.data
