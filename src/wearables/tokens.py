"""OAuth token storage and lifecycle for Whoop.

Tokens are Fernet-encrypted before they reach ``whoop_tokens`` and decrypted
only for the duration of one sync or request.  ``TokenLifecycleManager``
decides between reusing the stored access token and running the refresh
grant, and classifies refresh failures:

    permanent → connection deactivated, tokens deleted, athlete must reconnect
    transient → nothing touched, next run retries the refresh
    unknown   → treated as transient, logged loudly

Token values are never logged.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
from uuid import UUID

from cryptography.fernet import Fernet, InvalidToken

from src.wearables.adapters.whoop import WhoopClient
from src.wearables.base import OAuthTokens, TokenRecord, utc_now
from src.wearables.config_loader import get_sync_config
from src.wearables.errors import (
    ErrorKind,
    NoTokenError,
    ReauthRequiredError,
    TransientRefreshError,
    classify_refresh_error,
)
from src.wearables.sync.repository import EncryptedTokenRow, SyncRepository

logger = logging.getLogger("prime.wearables.tokens")

RECONNECT_MESSAGE = "Whoop authorization expired or was revoked. Please reconnect your Whoop account."
RETRY_MESSAGE = "Temporary issue refreshing Whoop access. We will retry automatically."
NOT_CONNECTED_MESSAGE = "No Whoop account is connected."


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


class TokenCipher:
    """Symmetric encryption for stored OAuth tokens.

    Accepts a ready Fernet key; any other secret is stretched with SHA-256
    into one.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("whoop_encryption_key must be set")
        self._fernet = Fernet(self._derive_key(secret))

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        raw = secret.encode()
        try:
            if len(base64.urlsafe_b64decode(raw)) == 32:
                return raw
        except (binascii.Error, ValueError):
            pass
        return base64.urlsafe_b64encode(hashlib.sha256(raw).digest())

    def encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str | None) -> str | None:
        """Decrypt a stored value.

        Raises:
            cryptography.fernet.InvalidToken: Wrong key or corrupted ciphertext.
        """
        if value is None:
            return None
        return self._fernet.decrypt(value.encode()).decode()


class TokenStore:
    """Encrypting facade over the whoop_tokens table."""

    def __init__(self, repository: SyncRepository, cipher: TokenCipher) -> None:
        self._repo = repository
        self._cipher = cipher

    async def load(self, user_id: UUID) -> TokenRecord | None:
        row = await self._repo.load_token_row(user_id)
        if row is None:
            return None
        return TokenRecord(
            user_id=user_id,
            access_token=self._cipher.decrypt(row.access_token),
            refresh_token=self._cipher.decrypt(row.refresh_token),
            expires_at=row.expires_at,
        )

    async def save(self, user_id: UUID, tokens: OAuthTokens) -> None:
        await self._repo.save_token_row(
            EncryptedTokenRow(
                user_id=user_id,
                access_token=self._cipher.encrypt(tokens.access_token),
                refresh_token=self._cipher.encrypt(tokens.refresh_token),
                expires_at=tokens.expires_at,
            )
        )
        logger.info("Stored Whoop tokens for user %s (expires_at=%s)", user_id, tokens.expires_at)

    async def delete(self, user_id: UUID) -> None:
        await self._repo.delete_token_row(user_id)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TokenStatus(str, Enum):
    VALID = "valid"
    MISSING = "missing"
    REAUTH_REQUIRED = "reauth_required"
    TRANSIENT = "transient"


@dataclass
class TokenResult:
    """Outcome of ``ensure_valid_token``.

    Attributes:
        status:       Which branch was taken.
        access_token: Usable bearer token when ``status`` is VALID.
        message:      User-presentable explanation for every other status.
        refreshed:    True when the refresh grant ran and succeeded.
    """

    status: TokenStatus
    access_token: str | None = None
    message: str | None = None
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.VALID

    def unwrap(self) -> str:
        """Return the access token or raise the matching SyncError."""
        if self.status is TokenStatus.VALID and self.access_token:
            return self.access_token
        if self.status is TokenStatus.MISSING:
            raise NoTokenError(self.message or NOT_CONNECTED_MESSAGE)
        if self.status is TokenStatus.REAUTH_REQUIRED:
            raise ReauthRequiredError(self.message or RECONNECT_MESSAGE)
        raise TransientRefreshError(self.message or RETRY_MESSAGE)


class TokenLifecycleManager:
    """Hand out a valid Whoop access token, refreshing when needed.

    Usage::

        manager = TokenLifecycleManager(store, repository, whoop_client)
        result = await manager.ensure_valid_token(user_id)
        if result.ok:
            ...
    """

    def __init__(
        self,
        store: TokenStore,
        repository: SyncRepository,
        client: WhoopClient,
        now: Callable[[], datetime] = utc_now,
        refresh_buffer_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._repo = repository
        self._client = client
        self._now = now
        if refresh_buffer_seconds is None:
            refresh_buffer_seconds = get_sync_config().refresh_buffer_seconds
        self._buffer = timedelta(seconds=refresh_buffer_seconds)

    @property
    def store(self) -> TokenStore:
        return self._store

    async def ensure_valid_token(self, user_id: UUID) -> TokenResult:
        try:
            record = await self._store.load(user_id)
        except InvalidToken:
            logger.error("Stored Whoop tokens for user %s cannot be decrypted", user_id)
            await self._revoke(user_id)
            return TokenResult(TokenStatus.REAUTH_REQUIRED, message=RECONNECT_MESSAGE)

        if record is None or not record.access_token:
            logger.info("No Whoop tokens stored for user %s", user_id)
            return TokenResult(TokenStatus.MISSING, message=NOT_CONNECTED_MESSAGE)

        now = self._now()
        if record.expires_at is not None and record.expires_at - now > self._buffer:
            logger.debug(
                "Whoop token for user %s valid for %ds",
                user_id, int((record.expires_at - now).total_seconds()),
            )
            return TokenResult(TokenStatus.VALID, access_token=record.access_token)

        if not record.refresh_token:
            logger.warning("Whoop token expired and no refresh token for user %s", user_id)
            return TokenResult(TokenStatus.REAUTH_REQUIRED, message=RECONNECT_MESSAGE)

        return await self._refresh(user_id, record)

    async def _refresh(self, user_id: UUID, record: TokenRecord) -> TokenResult:
        logger.info("Refreshing Whoop token for user %s", user_id)
        try:
            tokens = await self._client.refresh_token(record.refresh_token)
        except Exception as exc:
            kind = classify_refresh_error(exc)
            if kind is ErrorKind.PERMANENT:
                logger.warning(
                    "Whoop refresh rejected for user %s (%s); deactivating connection",
                    user_id, exc,
                )
                await self._revoke(user_id)
                return TokenResult(TokenStatus.REAUTH_REQUIRED, message=RECONNECT_MESSAGE)
            if kind is ErrorKind.TRANSIENT:
                logger.warning(
                    "Transient Whoop refresh failure for user %s: %s; keeping tokens",
                    user_id, exc,
                )
            else:
                logger.exception(
                    "Unclassified Whoop refresh failure for user %s; keeping tokens",
                    user_id,
                )
            return TokenResult(TokenStatus.TRANSIENT, message=RETRY_MESSAGE)

        if not tokens.refresh_token:
            tokens.refresh_token = record.refresh_token
        await self._store.save(user_id, tokens)
        return TokenResult(TokenStatus.VALID, access_token=tokens.access_token, refreshed=True)

    async def _revoke(self, user_id: UUID) -> None:
        await self._repo.revoke_credentials(user_id)
