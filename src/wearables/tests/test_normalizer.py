"""Tests for normalization of validated Whoop records into canonical metrics."""

from __future__ import annotations

from datetime import date, datetime, timezone

from src.wearables.base import WHOOP, ActivityType, RecordType, ms_to_minutes
from src.wearables.config_loader import SyncConfig
from src.wearables.normalizer import (
    normalize_batch,
    normalize_body_measurement,
    normalize_cycle,
    normalize_profile,
    normalize_recovery,
    normalize_sleep,
    normalize_workout,
)
from src.wearables.schemas import (
    SCHEMA_ADAPTERS,
    RawBodyMeasurement,
    RawProfile,
)
from src.wearables.tests.conftest import (
    TEST_DATE,
    TEST_USER_ID,
    make_cycle,
    make_recovery,
    make_sleep,
    make_workout,
)


def _parse(record_type: RecordType, raw: dict):
    return SCHEMA_ADAPTERS[record_type].validate_python(raw)


class TestUnitConversions:
    def test_ms_to_minutes_rounds(self) -> None:
        assert ms_to_minutes(90_000) == 2  # 1.5 min rounds up
        assert ms_to_minutes(89_999) == 1
        assert ms_to_minutes(None) == 0
        assert ms_to_minutes(0) == 0


class TestCycleAndRecovery:
    def test_cycle_fields(self) -> None:
        raw = _parse(RecordType.CYCLE, make_cycle(strain=14.2))
        metric = normalize_cycle(raw, TEST_USER_ID)
        assert metric.user_id == TEST_USER_ID
        assert metric.date == date(2026, 2, 22)
        assert metric.strain == 14.2
        assert metric.kilojoule == 8288.3
        assert metric.average_heart_rate == 68
        assert metric.raw_payload["id"] == 93845

    def test_cycle_date_is_utc(self) -> None:
        """A cycle starting 23:30 at -05:00 belongs to the next UTC day."""
        raw = make_cycle()
        raw["start"] = "2026-02-21T23:30:00-05:00"
        metric = normalize_cycle(_parse(RecordType.CYCLE, raw), TEST_USER_ID)
        assert metric.date == date(2026, 2, 22)

    def test_recovery_uses_created_at_date(self) -> None:
        raw = _parse(
            RecordType.RECOVERY,
            make_recovery(created_at=datetime(2026, 2, 20, 8, 15, tzinfo=timezone.utc)),
        )
        metric = normalize_recovery(raw, TEST_USER_ID)
        assert metric.metric_date == date(2026, 2, 20)
        assert metric.source_platform == WHOOP
        assert metric.recovery_score == 65.0
        assert metric.hrv_rmssd_milli == 61.4
        assert metric.resting_heart_rate == 52


class TestSleep:
    def test_total_excludes_awake_time(self) -> None:
        """Light 240 + deep 90 + REM 90 minutes = 420; awake time ignored."""
        raw = _parse(RecordType.SLEEP, make_sleep())
        metric = normalize_sleep(raw, TEST_USER_ID)
        assert metric.sleep_duration_minutes == 420
        assert metric.sleep_stage_light_minutes == 240
        assert metric.sleep_stage_deep_minutes == 90
        assert metric.sleep_stage_rem_minutes == 90
        assert metric.sleep_stage_awake_minutes == 30
        assert metric.metric_date == date(2026, 2, 22)

    def test_quality_score_is_rounded_performance(self) -> None:
        metric = normalize_sleep(_parse(RecordType.SLEEP, make_sleep()), TEST_USER_ID)
        assert metric.sleep_quality_score == 92  # 91.6
        assert metric.disturbances_count == 7
        assert metric.sleep_onset_latency_minutes == 0

    def test_missing_performance_gives_zero_quality(self) -> None:
        raw = make_sleep()
        raw["score"]["sleep_performance_percentage"] = None
        metric = normalize_sleep(_parse(RecordType.SLEEP, raw), TEST_USER_ID)
        assert metric.sleep_quality_score == 0


class TestWorkout:
    def test_calories_duration_and_activity(self, sync_config: SyncConfig) -> None:
        raw = _parse(
            RecordType.WORKOUT, make_workout(minutes=45, sport_id=1, kilojoule=1000.0)
        )
        metric = normalize_workout(raw, TEST_USER_ID, sync_config)
        assert metric.calories_burned == 239
        assert metric.activity_duration_minutes == 45
        assert metric.activity_type is ActivityType.CYCLING
        assert metric.workout_id == "1043"

    def test_unknown_sport_and_missing_energy(self, sync_config: SyncConfig) -> None:
        raw = _parse(
            RecordType.WORKOUT, make_workout(sport_id=4242, kilojoule=None)
        )
        metric = normalize_workout(raw, TEST_USER_ID, sync_config)
        assert metric.activity_type is ActivityType.OTHER
        assert metric.calories_burned == 0

    def test_v2_workout_id_is_uuid_string(self, sync_config: SyncConfig) -> None:
        workout_id = "7bfc6a15-5521-612f-b9a4-e274dd7afae8"
        raw = _parse(RecordType.WORKOUT, make_workout(workout_id=workout_id))
        metric = normalize_workout(raw, TEST_USER_ID, sync_config)
        assert metric.workout_id == workout_id


class TestProfileAndBody:
    def test_profile_full_name(self) -> None:
        profile = normalize_profile(
            RawProfile.model_validate({"user_id": 10129, "first_name": "Ana", "last_name": "Silva"}),
            TEST_USER_ID,
        )
        assert profile.full_name == "Ana Silva"
        assert profile.whoop_user_id == "10129"

    def test_empty_profile(self) -> None:
        profile = normalize_profile(RawProfile.model_validate({}), TEST_USER_ID)
        assert profile.is_empty

    def test_body_measurement_units(self) -> None:
        body = normalize_body_measurement(
            RawBodyMeasurement.model_validate(
                {"height_meter": 1.725, "weight_kilogram": 64.5, "max_heart_rate": 192}
            ),
            TEST_USER_ID,
            TEST_DATE,
        )
        assert body.height_cm == 172
        assert body.weight_kg == 64.5
        assert body.max_heart_rate == 192
        assert body.measured_at == TEST_DATE


class TestBatch:
    def test_naps_excluded_but_dates_touched(self, sync_config: SyncConfig) -> None:
        nap = make_sleep(
            sleep_id=2, start=datetime(2026, 2, 21, 14, 0, tzinfo=timezone.utc), nap=True
        )
        batch = normalize_batch(
            TEST_USER_ID,
            cycles=[],
            recovery=[],
            sleep=[_parse(RecordType.SLEEP, make_sleep(sleep_id=1)), _parse(RecordType.SLEEP, nap)],
            workouts=[],
            config=sync_config,
        )
        assert len(batch.sleep) == 1
        assert batch.touched_dates == {date(2026, 2, 21), date(2026, 2, 22)}

    def test_same_day_duplicates_collapse(self, sync_config: SyncConfig) -> None:
        batch = normalize_batch(
            TEST_USER_ID,
            cycles=[
                _parse(RecordType.CYCLE, make_cycle(cycle_id=1, strain=9.0)),
                _parse(RecordType.CYCLE, make_cycle(cycle_id=2, strain=15.0)),
            ],
            recovery=[
                _parse(RecordType.RECOVERY, make_recovery(cycle_id=1, recovery_score=40)),
                _parse(RecordType.RECOVERY, make_recovery(cycle_id=2, recovery_score=65)),
            ],
            sleep=[],
            workouts=[
                _parse(RecordType.WORKOUT, make_workout(workout_id=1)),
                _parse(RecordType.WORKOUT, make_workout(workout_id=2)),
            ],
            config=sync_config,
        )
        assert [c.strain for c in batch.cycles] == [15.0]
        assert [r.recovery_score for r in batch.recovery] == [65.0]
        assert len(batch.workouts) == 2
        assert batch.total == 4
