"""Pydantic schemas for raw Whoop API records.

Each record type is a tagged union of the schema versions Whoop has shipped:

    v1 — integer ids for sleeps and workouts, integer ``sleep_id`` on recovery
    v2 — UUID string ids for sleeps and workouts, UUID ``sleep_id`` on recovery

Cycles kept the same shape across versions, so they have a single schema.

Unknown fields are allowed and kept on the model (``model_extra``) so they end
up in the canonical record's ``raw_payload``.  Normalization never reads them.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
)

from src.wearables.base import RecordType

ScoreState = Literal["SCORED", "PENDING_SCORE", "UNSCORABLE"]


class WhoopModel(BaseModel):
    """Base for every vendor schema; unknown fields are kept, not rejected."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


def _version_by_id_type(field_name: str):
    """Build a discriminator that picks v1 for integer ids, v2 for string ids."""

    def _discriminate(value: Any) -> str | None:
        if isinstance(value, BaseModel):
            value = value.model_dump()
        if not isinstance(value, dict):
            return None
        ident = value.get(field_name)
        if isinstance(ident, bool):
            return None
        if isinstance(ident, int):
            return "v1"
        if isinstance(ident, str):
            return "v2"
        return None

    return _discriminate


# ---------------------------------------------------------------------------
# Cycle (daily strain)
# ---------------------------------------------------------------------------


class CycleScore(WhoopModel):
    strain: float = Field(ge=0, le=21)
    kilojoule: float = Field(ge=0)
    average_heart_rate: int = Field(ge=30, le=220)
    max_heart_rate: int = Field(ge=30, le=220)


class RawCycle(WhoopModel):
    id: int | str
    user_id: int
    created_at: AwareDatetime
    updated_at: AwareDatetime
    start: AwareDatetime
    end: AwareDatetime | None = None
    timezone_offset: str
    score_state: ScoreState
    score: CycleScore


# ---------------------------------------------------------------------------
# Recovery (recovery score, HRV, RHR)
# ---------------------------------------------------------------------------


class RecoveryScore(WhoopModel):
    user_calibrating: bool
    recovery_score: float = Field(ge=0, le=100)
    resting_heart_rate: int = Field(ge=30, le=200)
    hrv_rmssd_milli: float = Field(ge=0)
    spo2_percentage: float | None = Field(default=None, ge=0, le=100)
    skin_temp_celsius: float | None = Field(default=None, ge=-10, le=50)


class _RecoveryBase(WhoopModel):
    cycle_id: int = Field(gt=0)
    user_id: int = Field(gt=0)
    created_at: AwareDatetime
    updated_at: AwareDatetime
    score_state: ScoreState
    score: RecoveryScore


class RawRecoveryV1(_RecoveryBase):
    sleep_id: int = Field(gt=0)


class RawRecoveryV2(_RecoveryBase):
    sleep_id: UUID


RawRecovery = Annotated[
    Union[
        Annotated[RawRecoveryV1, Tag("v1")],
        Annotated[RawRecoveryV2, Tag("v2")],
    ],
    Discriminator(_version_by_id_type("sleep_id")),
]


# ---------------------------------------------------------------------------
# Sleep
# ---------------------------------------------------------------------------


class SleepStageSummary(WhoopModel):
    total_in_bed_time_milli: int = Field(ge=0)
    total_awake_time_milli: int = Field(ge=0)
    total_no_data_time_milli: int = Field(ge=0)
    total_light_sleep_time_milli: int = Field(ge=0)
    total_slow_wave_sleep_time_milli: int = Field(ge=0)
    total_rem_sleep_time_milli: int = Field(ge=0)
    sleep_cycle_count: int = Field(ge=0)
    disturbance_count: int = Field(ge=0)


class SleepNeeded(WhoopModel):
    baseline_milli: int = Field(ge=0)
    need_from_sleep_debt_milli: int
    need_from_recent_strain_milli: int
    need_from_recent_nap_milli: int


class SleepScore(WhoopModel):
    stage_summary: SleepStageSummary
    sleep_needed: SleepNeeded
    respiratory_rate: float | None = Field(default=None, ge=5, le=40)
    sleep_performance_percentage: float | None = Field(default=None, ge=0, le=200)
    sleep_consistency_percentage: float | None = Field(default=None, ge=0, le=100)
    sleep_efficiency_percentage: float | None = Field(default=None, ge=0, le=100)


class _SleepBase(WhoopModel):
    user_id: int
    created_at: AwareDatetime
    updated_at: AwareDatetime
    start: AwareDatetime
    end: AwareDatetime
    timezone_offset: str
    nap: bool
    score_state: ScoreState
    score: SleepScore


class RawSleepV1(_SleepBase):
    id: int


class RawSleepV2(_SleepBase):
    id: UUID
    cycle_id: int | None = None


RawSleep = Annotated[
    Union[
        Annotated[RawSleepV1, Tag("v1")],
        Annotated[RawSleepV2, Tag("v2")],
    ],
    Discriminator(_version_by_id_type("id")),
]


# ---------------------------------------------------------------------------
# Workout
# ---------------------------------------------------------------------------


class ZoneDurations(WhoopModel):
    zone_zero_milli: int | None = Field(default=None, ge=0)
    zone_one_milli: int | None = Field(default=None, ge=0)
    zone_two_milli: int | None = Field(default=None, ge=0)
    zone_three_milli: int | None = Field(default=None, ge=0)
    zone_four_milli: int | None = Field(default=None, ge=0)
    zone_five_milli: int | None = Field(default=None, ge=0)


class WorkoutScore(WhoopModel):
    strain: float | None = Field(default=None, ge=0, le=21)
    average_heart_rate: int | None = Field(default=None, ge=30, le=220)
    max_heart_rate: int | None = Field(default=None, ge=30, le=220)
    kilojoule: float | None = Field(default=None, ge=0)
    percent_recorded: float | None = Field(default=None, ge=0, le=100)
    distance_meter: float | None = Field(default=None, ge=0)
    altitude_gain_meter: float | None = None
    altitude_change_meter: float | None = None
    zone_durations: ZoneDurations | None = None


class _WorkoutBase(WhoopModel):
    user_id: int | str
    created_at: AwareDatetime | None = None
    updated_at: AwareDatetime | None = None
    start: AwareDatetime
    end: AwareDatetime
    timezone_offset: str | None = None
    sport_id: int | None = None
    score_state: ScoreState | None = None
    score: WorkoutScore


class RawWorkoutV1(_WorkoutBase):
    id: int


class RawWorkoutV2(_WorkoutBase):
    id: UUID
    sport_name: str | None = None


RawWorkout = Annotated[
    Union[
        Annotated[RawWorkoutV1, Tag("v1")],
        Annotated[RawWorkoutV2, Tag("v2")],
    ],
    Discriminator(_version_by_id_type("id")),
]


# ---------------------------------------------------------------------------
# Non-windowed endpoints
# ---------------------------------------------------------------------------


class RawProfile(WhoopModel):
    user_id: int | str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class RawBodyMeasurement(WhoopModel):
    height_meter: float | None = Field(default=None, gt=0, le=3)
    weight_kilogram: float | None = Field(default=None, gt=0, le=500)
    max_heart_rate: int | None = Field(default=None, ge=30, le=250)


# ---------------------------------------------------------------------------
# Adapters keyed by record type
# ---------------------------------------------------------------------------

SCHEMA_ADAPTERS: dict[RecordType, TypeAdapter] = {
    RecordType.CYCLE: TypeAdapter(RawCycle),
    RecordType.RECOVERY: TypeAdapter(RawRecovery),
    RecordType.SLEEP: TypeAdapter(RawSleep),
    RecordType.WORKOUT: TypeAdapter(RawWorkout),
}

#: Union tags that pydantic prefixes onto error locations.
SCHEMA_VERSION_TAGS: frozenset[str] = frozenset({"v1", "v2"})
