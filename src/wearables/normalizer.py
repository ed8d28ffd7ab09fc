"""Normalize validated Whoop records into canonical metric records.

Every function here is pure — no I/O, no side effects.  Unit conversions:

    milliseconds → whole minutes (rounded)
    kilojoules   → kcal (``units.kcal_per_kilojoule`` in sync_config.yaml)
    sport_id     → ActivityType (``sports`` in sync_config.yaml)

The natural-key date of each record is the UTC calendar date of its
``start`` (``created_at`` for recoveries, which have no start).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from uuid import UUID

from src.wearables.base import (
    WHOOP,
    BodyMeasurement,
    CycleMetric,
    RecoveryMetric,
    SleepMetric,
    WhoopProfile,
    WorkoutMetric,
    ms_to_minutes,
)
from src.wearables.config_loader import SyncConfig, get_sync_config
from src.wearables.schemas import (
    RawBodyMeasurement,
    RawCycle,
    RawProfile,
    RawRecoveryV1,
    RawRecoveryV2,
    RawSleepV1,
    RawSleepV2,
    RawWorkoutV1,
    RawWorkoutV2,
)
from src.wearables.sync import dedup

logger = logging.getLogger("prime.wearables.normalizer")


def _utc_date(dt: datetime) -> date:
    if dt.tzinfo is None:
        return dt.date()
    return dt.astimezone(timezone.utc).date()


def _raw(model) -> dict:
    """Dump a validated model including unknown extra fields."""
    return model.model_dump(mode="json")


def normalize_cycle(raw: RawCycle, user_id: UUID) -> CycleMetric:
    return CycleMetric(
        user_id=user_id,
        date=_utc_date(raw.start),
        strain=raw.score.strain,
        kilojoule=raw.score.kilojoule,
        average_heart_rate=raw.score.average_heart_rate,
        max_heart_rate=raw.score.max_heart_rate,
        start_time=raw.start,
        end_time=raw.end,
        timezone_offset=raw.timezone_offset,
        score_state=raw.score_state,
        raw_payload=_raw(raw),
    )


def normalize_recovery(raw: RawRecoveryV1 | RawRecoveryV2, user_id: UUID) -> RecoveryMetric:
    score = raw.score
    return RecoveryMetric(
        user_id=user_id,
        source_platform=WHOOP,
        metric_date=_utc_date(raw.created_at),
        recovery_score=score.recovery_score,
        hrv_rmssd_milli=score.hrv_rmssd_milli,
        resting_heart_rate=score.resting_heart_rate,
        spo2_percentage=score.spo2_percentage,
        skin_temp_celsius=score.skin_temp_celsius,
        user_calibrating=score.user_calibrating,
        raw_payload=_raw(raw),
    )


def normalize_sleep(raw: RawSleepV1 | RawSleepV2, user_id: UUID) -> SleepMetric:
    """Convert one Whoop sleep to a SleepMetric.

    Total sleep is light + slow-wave + REM; awake time and no-data time are
    excluded.
    """
    stages = raw.score.stage_summary
    asleep_ms = (
        stages.total_light_sleep_time_milli
        + stages.total_slow_wave_sleep_time_milli
        + stages.total_rem_sleep_time_milli
    )
    performance = raw.score.sleep_performance_percentage
    return SleepMetric(
        user_id=user_id,
        source_platform=WHOOP,
        metric_date=_utc_date(raw.start),
        sleep_start=raw.start,
        sleep_end=raw.end,
        sleep_duration_minutes=ms_to_minutes(asleep_ms),
        sleep_stage_light_minutes=ms_to_minutes(stages.total_light_sleep_time_milli),
        sleep_stage_deep_minutes=ms_to_minutes(stages.total_slow_wave_sleep_time_milli),
        sleep_stage_rem_minutes=ms_to_minutes(stages.total_rem_sleep_time_milli),
        sleep_stage_awake_minutes=ms_to_minutes(stages.total_awake_time_milli),
        sleep_efficiency_percentage=raw.score.sleep_efficiency_percentage,
        sleep_quality_score=round(performance) if performance is not None else 0,
        respiratory_rate=raw.score.respiratory_rate,
        disturbances_count=stages.disturbance_count,
        sleep_onset_latency_minutes=0,  # Whoop does not report latency
        raw_payload=_raw(raw),
    )


def normalize_workout(
    raw: RawWorkoutV1 | RawWorkoutV2,
    user_id: UUID,
    config: SyncConfig | None = None,
) -> WorkoutMetric:
    cfg = config or get_sync_config()
    score = raw.score
    duration_s = (raw.end - raw.start).total_seconds()
    calories = round(score.kilojoule * cfg.kcal_per_kilojoule) if score.kilojoule else 0
    return WorkoutMetric(
        user_id=user_id,
        workout_id=str(raw.id),
        source_platform=WHOOP,
        metric_date=_utc_date(raw.start),
        activity_type=cfg.activity_type(raw.sport_id),
        activity_duration_minutes=max(0, round(duration_s / 60)),
        strain_score=score.strain or 0.0,
        avg_heart_rate=score.average_heart_rate or 0,
        max_heart_rate=score.max_heart_rate or 0,
        calories_burned=calories,
        distance_meters=score.distance_meter or 0.0,
        raw_payload=_raw(raw),
    )


def normalize_profile(raw: RawProfile, user_id: UUID) -> WhoopProfile:
    full_name = f"{raw.first_name or ''} {raw.last_name or ''}".strip()
    return WhoopProfile(
        user_id=user_id,
        full_name=full_name or None,
        whoop_user_id=str(raw.user_id) if raw.user_id is not None else None,
    )


def normalize_body_measurement(
    raw: RawBodyMeasurement, user_id: UUID, measured_at: date
) -> BodyMeasurement:
    return BodyMeasurement(
        user_id=user_id,
        measured_at=measured_at,
        height_cm=round(raw.height_meter * 100) if raw.height_meter else None,
        weight_kg=raw.weight_kilogram or None,
        max_heart_rate=raw.max_heart_rate or None,
    )


# ---------------------------------------------------------------------------
# Batch normalization
# ---------------------------------------------------------------------------


@dataclass
class MetricBatch:
    """Deduplicated canonical records ready for persistence.

    Attributes:
        cycles / recovery / sleep / workouts: Records keyed by natural key.
        touched_dates: Every calendar date any valid record fell on, naps and
                       dedup losers included, for downstream aggregation.
    """

    cycles: list[CycleMetric] = field(default_factory=list)
    recovery: list[RecoveryMetric] = field(default_factory=list)
    sleep: list[SleepMetric] = field(default_factory=list)
    workouts: list[WorkoutMetric] = field(default_factory=list)
    touched_dates: set[date] = field(default_factory=set)

    @property
    def total(self) -> int:
        return len(self.cycles) + len(self.recovery) + len(self.sleep) + len(self.workouts)


def normalize_batch(
    user_id: UUID,
    cycles: list[RawCycle],
    recovery: list[RawRecoveryV1 | RawRecoveryV2],
    sleep: list[RawSleepV1 | RawSleepV2],
    workouts: list[RawWorkoutV1 | RawWorkoutV2],
    config: SyncConfig | None = None,
) -> MetricBatch:
    """Normalize all validated records for one user and apply same-day dedup.

    Naps are dropped from sleep metrics; only the main sleep of a day counts.
    """
    cfg = config or get_sync_config()

    cycle_metrics = [normalize_cycle(c, user_id) for c in cycles]
    recovery_metrics = [normalize_recovery(r, user_id) for r in recovery]
    all_sleep = [(s.nap, normalize_sleep(s, user_id)) for s in sleep]
    sleep_metrics = [m for nap, m in all_sleep if not nap]
    workout_metrics = [normalize_workout(w, user_id, cfg) for w in workouts]

    touched: set[date] = set()
    touched.update(m.date for m in cycle_metrics)
    touched.update(m.metric_date for m in recovery_metrics)
    touched.update(m.metric_date for _, m in all_sleep)
    touched.update(m.metric_date for m in workout_metrics)

    naps = len(all_sleep) - len(sleep_metrics)
    if naps:
        logger.debug("Excluded %d nap(s) from sleep metrics for user %s", naps, user_id)

    return MetricBatch(
        cycles=dedup.dedupe_cycles(cycle_metrics),
        recovery=dedup.dedupe_recovery(recovery_metrics),
        sleep=dedup.dedupe_sleep(sleep_metrics),
        workouts=workout_metrics,
        touched_dates=touched,
    )
