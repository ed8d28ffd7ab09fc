"""Per-user Whoop sync orchestration.

One run walks these stages::

    START → DETERMINE_WINDOW → FETCH → NORMALIZE → PERSIST
          → TRIGGER_DOWNSTREAM → UPDATE_CONNECTION → LOG_RESULT → END

Any stage can fall through to ERROR.  Every run, successful or not, writes
exactly one sync_logs row; a run cancelled from outside writes none.

Everything a run touches is carried by an explicit ``SyncContext`` so tests
can swap the repository, HTTP transport, clock and collaborators.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable
from uuid import UUID

import httpx

from src.config import Settings
from src.services.database import Database
from src.wearables.adapters.whoop import WhoopClient
from src.wearables.base import (
    RecordType,
    SyncLogEntry,
    SyncStatus,
    utc_now,
)
from src.wearables.collaborators import (
    DailyAggregator,
    DefaultSupervisorAssigner,
    LoggingAggregator,
    LoggingThresholdChecker,
    SupervisorAssigner,
    ThresholdChecker,
)
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.errors import WhoopAPIError
from src.wearables.normalizer import (
    MetricBatch,
    normalize_batch,
    normalize_body_measurement,
    normalize_profile,
)
from src.wearables.retry import is_retryable
from src.wearables.schemas import RawBodyMeasurement, RawProfile
from src.wearables.sync.repository import PostgresSyncRepository, SyncRepository
from src.wearables.tokens import (
    RECONNECT_MESSAGE,
    RETRY_MESSAGE,
    TokenCipher,
    TokenLifecycleManager,
    TokenStatus,
    TokenStore,
)
from src.wearables.validator import ValidationResult, validate_records

logger = logging.getLogger("prime.wearables.sync.orchestrator")

FAILED_MESSAGE = "Unexpected error while syncing Whoop data. Our team has been notified."

# Data endpoints answering these mean the access token itself was rejected
_REJECTED_TOKEN_STATUS_CODES: frozenset[int] = frozenset({401, 403})


class SyncStage(str, Enum):
    START = "start"
    DETERMINE_WINDOW = "determine_window"
    FETCH = "fetch"
    NORMALIZE = "normalize"
    PERSIST = "persist"
    TRIGGER_DOWNSTREAM = "trigger_downstream"
    UPDATE_CONNECTION = "update_connection"
    LOG_RESULT = "log_result"
    END = "end"
    ERROR = "error"


class SyncOutcome(str, Enum):
    """How a run ended.

    SUCCESS            data persisted, connection updated
    RECONNECT_REQUIRED credentials permanently invalid, connection deactivated
    RETRY_LATER        transient failure, connection left active
    FAILED             unexpected failure, state untouched
    """

    SUCCESS = "success"
    RECONNECT_REQUIRED = "reconnect_required"
    RETRY_LATER = "retry_later"
    FAILED = "failed"


@dataclass
class SyncContext:
    """Dependencies for one sync invocation.

    Attributes:
        repository:  Persistence.
        client:      Whoop API client.
        tokens:      Token lifecycle manager sharing the same repository.
        config:      Engine tuning from sync_config.yaml.
        aggregator:  Daily summary job.
        thresholds:  Alert threshold evaluation.
        assigner:    Default-supervisor assignment; None disables it.
        now:         Clock.
    """

    repository: SyncRepository
    client: WhoopClient
    tokens: TokenLifecycleManager
    config: SyncConfig = field(default_factory=get_sync_config)
    aggregator: DailyAggregator = field(default_factory=LoggingAggregator)
    thresholds: ThresholdChecker = field(default_factory=LoggingThresholdChecker)
    assigner: SupervisorAssigner | None = None
    now: Callable[[], datetime] = utc_now


@dataclass
class UserSyncResult:
    """Result of syncing one user, returned to callers and the batch runner."""

    user_id: UUID
    outcome: SyncOutcome = SyncOutcome.FAILED
    message: str = ""
    stage: SyncStage = SyncStage.START
    window_days: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    validation_errors: dict[str, int] = field(default_factory=dict)
    profile_saved: bool = False
    body_measurements_saved: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.outcome is SyncOutcome.SUCCESS

    @property
    def records_synced(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "success": self.success,
            "outcome": self.outcome.value,
            "message": self.message,
            "records_synced": self.records_synced,
            "counts": self.counts,
            "validation_errors": self.validation_errors,
            "profile_saved": self.profile_saved,
            "body_measurements_saved": self.body_measurements_saved,
        }


class SyncOrchestrator:
    """Run the full sync pipeline for one user.

    Usage::

        orchestrator = SyncOrchestrator(ctx)
        result = await orchestrator.sync_user(user_id)
    """

    def __init__(self, ctx: SyncContext) -> None:
        self._ctx = ctx

    async def sync_user(self, user_id: UUID) -> UserSyncResult:
        ctx = self._ctx
        result = UserSyncResult(user_id=user_id, started_at=ctx.now())
        logger.info("Whoop sync starting for user %s", user_id)

        try:
            outcome, message = await self._run(user_id, result)
        except Exception as exc:
            outcome, message = self._classify_failure(exc)
            if outcome is SyncOutcome.FAILED:
                logger.exception(
                    "Whoop sync for user %s failed at stage %s", user_id, result.stage.value
                )
            else:
                logger.warning(
                    "Whoop sync for user %s ended at %s: %s (%s)",
                    user_id, result.stage.value, outcome.value, exc,
                )
            # The vendor rejected the access token itself
            if outcome is SyncOutcome.RECONNECT_REQUIRED:
                await self._disconnect(user_id, revoke=True)
        else:
            match outcome:
                case SyncOutcome.RECONNECT_REQUIRED:
                    logger.warning(
                        "Whoop sync for user %s needs reconnect: %s", user_id, message
                    )
                    await self._disconnect(user_id, revoke=False)
                case SyncOutcome.RETRY_LATER:
                    logger.warning("Whoop sync for user %s deferred: %s", user_id, message)

        result.outcome = outcome
        result.message = message

        result.stage = SyncStage.LOG_RESULT
        result.completed_at = ctx.now()
        await self._write_log(result)
        result.stage = SyncStage.END if result.success else SyncStage.ERROR
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(self, user_id: UUID, result: UserSyncResult) -> tuple[SyncOutcome, str]:
        """Walk the stages, returning how the run ended.

        Token problems end the run early with an explicit outcome.  Only
        vendor and infrastructure failures surface as exceptions.
        """
        ctx = self._ctx

        # ── Window ──
        result.stage = SyncStage.DETERMINE_WINDOW
        connection = await ctx.repository.get_connection(user_id)
        first_sync = connection is None or not connection.initial_sync_completed
        result.window_days = ctx.config.window_days(initial_sync_completed=not first_sync)
        window_end = ctx.now()
        window_start = window_end - timedelta(days=result.window_days)
        logger.info(
            "User %s: %s sync over %d day(s)",
            user_id, "initial" if first_sync else "incremental", result.window_days,
        )

        # ── Fetch ──
        result.stage = SyncStage.FETCH
        token = await ctx.tokens.ensure_valid_token(user_id)
        match token.status:
            case TokenStatus.MISSING | TokenStatus.REAUTH_REQUIRED:
                return SyncOutcome.RECONNECT_REQUIRED, token.message or RECONNECT_MESSAGE
            case TokenStatus.TRANSIENT:
                return SyncOutcome.RETRY_LATER, token.message or RETRY_MESSAGE
        access_token = token.access_token

        raw = await self._fetch_windowed(access_token, window_start, window_end)
        profile_raw, body_raw = await self._fetch_optional(user_id, access_token)

        # ── Normalize ──
        result.stage = SyncStage.NORMALIZE
        validated: dict[RecordType, ValidationResult] = {}
        for record_type in RecordType:
            validated[record_type] = await validate_records(
                raw[record_type],
                record_type,
                user_id,
                on_invalid=ctx.repository.insert_validation_error,
            )
            result.validation_errors[record_type.value] = len(validated[record_type].invalid)

        batch = normalize_batch(
            user_id,
            cycles=validated[RecordType.CYCLE].valid,
            recovery=validated[RecordType.RECOVERY].valid,
            sleep=validated[RecordType.SLEEP].valid,
            workouts=validated[RecordType.WORKOUT].valid,
            config=ctx.config,
        )

        # ── Persist ──
        result.stage = SyncStage.PERSIST
        result.counts = await self._persist(batch)
        result.profile_saved = await self._save_profile(user_id, profile_raw)
        result.body_measurements_saved = await self._save_body(user_id, body_raw)

        # ── Downstream ──
        result.stage = SyncStage.TRIGGER_DOWNSTREAM
        for day in sorted(batch.touched_dates):
            report = await ctx.aggregator.generate_daily_summary(day)
            if report.errors:
                logger.warning("Daily summary for %s reported errors: %s", day, report.errors[:3])
        alerts = await ctx.thresholds.check_metrics_against_thresholds(user_id, ctx.now().date())
        if alerts:
            logger.info("User %s: %d threshold alert(s) raised", user_id, alerts)

        # ── Connection ──
        result.stage = SyncStage.UPDATE_CONNECTION
        await ctx.repository.mark_synced(user_id, ctx.now(), initial_sync_completed=True)
        if first_sync:
            await self._auto_assign(user_id)

        logger.info(
            "Whoop sync complete for user %s: %s (invalid=%s)",
            user_id, result.counts, result.validation_errors,
        )
        return SyncOutcome.SUCCESS, f"Synced {result.records_synced} Whoop record(s)."

    async def _fetch_windowed(
        self, access_token: str, start: datetime, end: datetime
    ) -> dict[RecordType, list[dict]]:
        """Fetch all four collections concurrently; all must finish."""
        client = self._ctx.client
        record_types = list(RecordType)
        responses = await asyncio.gather(
            *(client.fetch_records(rt, access_token, start, end) for rt in record_types),
            return_exceptions=True,
        )
        for response in responses:
            if isinstance(response, BaseException):
                raise response
        return dict(zip(record_types, responses))

    async def _fetch_optional(
        self, user_id: UUID, access_token: str
    ) -> tuple[dict | None, dict | None]:
        client = self._ctx.client
        profile = body = None
        try:
            profile = await client.fetch_profile(access_token)
        except (WhoopAPIError, httpx.HTTPError) as exc:
            logger.warning("User %s: Whoop profile unavailable: %s", user_id, exc)
        try:
            body = await client.fetch_body_measurements(access_token)
        except (WhoopAPIError, httpx.HTTPError) as exc:
            logger.warning("User %s: Whoop body measurements unavailable: %s", user_id, exc)
        return profile, body

    async def _persist(self, batch: MetricBatch) -> dict[str, int]:
        repo = self._ctx.repository
        return {
            RecordType.CYCLE.value: await repo.upsert_cycles(batch.cycles),
            RecordType.RECOVERY.value: await repo.upsert_recovery(batch.recovery),
            RecordType.SLEEP.value: await repo.upsert_sleep(batch.sleep),
            RecordType.WORKOUT.value: await repo.upsert_workouts(batch.workouts),
        }

    async def _save_profile(self, user_id: UUID, raw: dict | None) -> bool:
        if not raw:
            return False
        try:
            profile = normalize_profile(RawProfile.model_validate(raw), user_id)
            if profile.is_empty:
                logger.info("User %s: Whoop profile has no name or id", user_id)
                return False
            await self._ctx.repository.save_profile(profile)
        except Exception:
            logger.exception("User %s: failed to save Whoop profile", user_id)
            return False
        return True

    async def _save_body(self, user_id: UUID, raw: dict | None) -> bool:
        if not raw:
            return False
        try:
            measurement = normalize_body_measurement(
                RawBodyMeasurement.model_validate(raw), user_id, self._ctx.now().date()
            )
            if measurement.is_empty:
                logger.info("User %s: Whoop body measurements are empty", user_id)
                return False
            await self._ctx.repository.save_body_measurement(measurement)
        except Exception:
            logger.exception("User %s: failed to save body measurements", user_id)
            return False
        return True

    async def _auto_assign(self, user_id: UUID) -> None:
        assigner = self._ctx.assigner
        if assigner is None:
            return
        try:
            outcome = await assigner.auto_assign_to_default_supervisor(user_id)
        except Exception:
            logger.exception("User %s: default supervisor assignment failed", user_id)
            return
        if outcome.relationship_created:
            logger.info("User %s assigned to doctor %s", user_id, outcome.doctor_id)
        else:
            logger.info("User %s not auto-assigned: %s", user_id, outcome.message)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _disconnect(self, user_id: UUID, revoke: bool) -> None:
        """Deactivate the connection; with ``revoke`` also delete its tokens."""
        repo = self._ctx.repository
        try:
            if revoke:
                await repo.revoke_credentials(user_id)
            else:
                await repo.deactivate_connection(user_id)
        except Exception:
            logger.exception("Failed to deactivate Whoop connection for user %s", user_id)

    def _classify_failure(self, exc: Exception) -> tuple[SyncOutcome, str]:
        if isinstance(exc, WhoopAPIError) and exc.status_code in _REJECTED_TOKEN_STATUS_CODES:
            return SyncOutcome.RECONNECT_REQUIRED, RECONNECT_MESSAGE
        if is_retryable(exc, self._ctx.config.retry):
            return SyncOutcome.RETRY_LATER, "Whoop is temporarily unavailable. We will retry automatically."
        return SyncOutcome.FAILED, FAILED_MESSAGE

    async def _write_log(self, result: UserSyncResult) -> None:
        entry = SyncLogEntry(
            user_id=result.user_id,
            started_at=result.started_at,
            completed_at=result.completed_at,
            status=SyncStatus.COMPLETED if result.success else SyncStatus.FAILED,
            records_synced=result.records_synced if result.success else 0,
            error_message=None if result.success else result.message,
        )
        try:
            await self._ctx.repository.insert_sync_log(entry)
        except Exception:
            logger.exception("Failed to write sync log for user %s", result.user_id)


def build_sync_context(db: Database, http_client: httpx.AsyncClient, settings: Settings) -> SyncContext:
    """Wire the production dependencies for one invocation."""
    repository = PostgresSyncRepository(db)
    client = WhoopClient.from_settings(settings, http_client)
    store = TokenStore(repository, TokenCipher(settings.whoop_encryption_key))
    return SyncContext(
        repository=repository,
        client=client,
        tokens=TokenLifecycleManager(store, repository, client),
        assigner=DefaultSupervisorAssigner(repository, settings.default_doctor_id),
    )
