"""Canonical data models for the Prime wearable sync engine.

Vendor payloads are validated into the schemas in ``schemas.py`` and then
normalized into the metric records defined here.  These types are the single
source of truth consumed by deduplication, the repository, and the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

#: Platform slug stored in device_connections.platform and *_metrics.source_platform.
WHOOP = "whoop"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RecordType(str, Enum):
    """The four time-windowed Whoop collections."""

    CYCLE = "cycle"
    RECOVERY = "recovery"
    SLEEP = "sleep"
    WORKOUT = "workout"


class ActivityType(str, Enum):
    """Canonical workout activity types."""

    OTHER = "other"
    RUNNING = "running"
    CYCLING = "cycling"
    INDOOR_CYCLING = "indoor_cycling"
    MOUNTAIN_BIKING = "mountain_biking"
    WALKING = "walking"
    HIKING = "hiking"
    SWIMMING = "swimming"
    ROWING = "rowing"
    TRIATHLON = "triathlon"
    TRACK_AND_FIELD = "track_and_field"
    STRENGTH_TRAINING = "strength_training"
    FUNCTIONAL_FITNESS = "functional_fitness"
    HIIT = "hiit"
    ELLIPTICAL = "elliptical"
    STAIR_CLIMBING = "stair_climbing"
    YOGA = "yoga"
    PILATES = "pilates"
    STRETCHING = "stretching"
    MEDITATION = "meditation"
    DANCE = "dance"
    BOXING = "boxing"
    MARTIAL_ARTS = "martial_arts"
    ROCK_CLIMBING = "rock_climbing"
    SKIING = "skiing"
    SURFING = "surfing"
    SOCCER = "soccer"
    BASKETBALL = "basketball"
    FOOTBALL = "football"
    VOLLEYBALL = "volleyball"
    ICE_HOCKEY = "ice_hockey"
    TENNIS = "tennis"
    PADEL = "padel"
    PICKLEBALL = "pickleball"
    GOLF = "golf"


class SyncStatus(str, Enum):
    """Values of sync_logs.status."""

    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# OAuth / connection state
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned by either grant.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
        scope:         Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: list[str] = field(default_factory=list)

    @classmethod
    def from_grant_response(cls, data: dict, now: datetime) -> "OAuthTokens":
        """Build tokens from a token-endpoint JSON body.

        ``expires_in`` defaults to one hour when the provider omits it.
        """
        expires_in = int(data.get("expires_in") or 3600)
        scope = data.get("scope") or ""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_at=now + timedelta(seconds=expires_in),
            token_type=data.get("token_type", "Bearer"),
            scope=scope.split() if isinstance(scope, str) else list(scope),
        )


@dataclass
class TokenRecord:
    """Decrypted contents of one whoop_tokens row.

    Only ever held for the duration of a single sync or request.
    """

    user_id: UUID
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None


@dataclass
class Connection:
    """One row of device_connections."""

    user_id: UUID
    platform: str = WHOOP
    is_active: bool = True
    initial_sync_completed: bool = False
    last_sync_at: datetime | None = None


# ---------------------------------------------------------------------------
# Canonical metric records
# ---------------------------------------------------------------------------


@dataclass
class CycleMetric:
    """Daily physiological cycle (strain).  Natural key: (user_id, date)."""

    user_id: UUID
    date: date
    strain: float
    kilojoule: float
    average_heart_rate: int
    max_heart_rate: int
    start_time: datetime
    end_time: datetime | None = None
    timezone_offset: str | None = None
    score_state: str = "SCORED"
    raw_payload: dict = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.user_id, self.date)


@dataclass
class RecoveryMetric:
    """Morning recovery.  Natural key: (user_id, source_platform, metric_date)."""

    user_id: UUID
    metric_date: date
    recovery_score: float
    hrv_rmssd_milli: float
    resting_heart_rate: int
    source_platform: str = WHOOP
    spo2_percentage: float | None = None
    skin_temp_celsius: float | None = None
    user_calibrating: bool = False
    raw_payload: dict = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.user_id, self.source_platform, self.metric_date)


@dataclass
class SleepMetric:
    """Main sleep of a day (naps excluded).

    Natural key: (user_id, source_platform, metric_date).  All durations are
    whole minutes.
    """

    user_id: UUID
    metric_date: date
    sleep_duration_minutes: int
    source_platform: str = WHOOP
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    sleep_stage_light_minutes: int = 0
    sleep_stage_deep_minutes: int = 0
    sleep_stage_rem_minutes: int = 0
    sleep_stage_awake_minutes: int = 0
    sleep_efficiency_percentage: float | None = None
    sleep_quality_score: int | None = None
    respiratory_rate: float | None = None
    disturbances_count: int = 0
    sleep_onset_latency_minutes: int = 0
    raw_payload: dict = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.user_id, self.source_platform, self.metric_date)


@dataclass
class WorkoutMetric:
    """One discrete workout.  Natural key: the vendor workout_id."""

    user_id: UUID
    workout_id: str
    metric_date: date
    source_platform: str = WHOOP
    activity_type: ActivityType = ActivityType.OTHER
    activity_duration_minutes: int = 0
    strain_score: float = 0.0
    avg_heart_rate: int = 0
    max_heart_rate: int = 0
    calories_burned: int = 0
    distance_meters: float = 0.0
    raw_payload: dict = field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.workout_id,)


@dataclass
class BodyMeasurement:
    """Body measurement snapshot.  Natural key: (user_id, measured_at)."""

    user_id: UUID
    measured_at: date
    height_cm: int | None = None
    weight_kg: float | None = None
    max_heart_rate: int | None = None
    source: str = WHOOP

    @property
    def is_empty(self) -> bool:
        return self.height_cm is None and self.weight_kg is None and self.max_heart_rate is None


@dataclass
class WhoopProfile:
    """The subset of the Whoop basic profile copied onto profiles."""

    user_id: UUID
    full_name: str | None = None
    whoop_user_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.full_name and not self.whoop_user_id


# ---------------------------------------------------------------------------
# Append-only log entries
# ---------------------------------------------------------------------------


@dataclass
class SyncLogEntry:
    """One row of sync_logs.  Written exactly once per orchestration run."""

    user_id: UUID
    started_at: datetime
    completed_at: datetime
    status: SyncStatus
    records_synced: int = 0
    error_message: str | None = None
    platform: str = WHOOP


@dataclass
class ValidationErrorEntry:
    """One row of data_validation_errors — a payload that failed its schema."""

    user_id: UUID
    data_type: RecordType
    error_message: str
    raw_data: Any
    platform: str = WHOOP


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def ms_to_minutes(ms: int | float | None) -> int:
    """Convert milliseconds to whole minutes, rounding half up; None → 0."""
    if not ms:
        return 0
    return int(ms / 60000 + 0.5)
