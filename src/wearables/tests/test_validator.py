"""Tests for raw Whoop record schema validation."""

from __future__ import annotations

from uuid import UUID

import pytest

from src.wearables.base import RecordType, ValidationErrorEntry
from src.wearables.schemas import RawRecoveryV1, RawRecoveryV2, RawSleepV1, RawSleepV2
from src.wearables.tests.conftest import (
    TEST_USER_ID,
    make_cycle,
    make_recovery,
    make_sleep,
    make_workout,
)
from src.wearables.validator import validate_records

V2_SLEEP_ID = "ecfc6a15-4661-442f-a9a4-f160dd7afae8"


class TestSchemaVersions:
    """v1 payloads carry integer ids, v2 payloads carry UUID strings."""

    @pytest.mark.asyncio
    async def test_v1_and_v2_sleep_both_accepted(self) -> None:
        result = await validate_records(
            [make_sleep(sleep_id=10235), make_sleep(sleep_id=V2_SLEEP_ID)],
            RecordType.SLEEP,
            TEST_USER_ID,
        )
        assert result.stats.valid_count == 2
        assert isinstance(result.valid[0], RawSleepV1)
        assert isinstance(result.valid[1], RawSleepV2)
        assert result.valid[1].id == UUID(V2_SLEEP_ID)

    @pytest.mark.asyncio
    async def test_recovery_version_follows_sleep_id(self) -> None:
        result = await validate_records(
            [make_recovery(sleep_id=10235), make_recovery(sleep_id=V2_SLEEP_ID)],
            RecordType.RECOVERY,
            TEST_USER_ID,
        )
        assert isinstance(result.valid[0], RawRecoveryV1)
        assert isinstance(result.valid[1], RawRecoveryV2)

    @pytest.mark.asyncio
    async def test_unknown_fields_are_kept(self) -> None:
        raw = make_cycle(brand_new_field={"a": 1})
        result = await validate_records([raw], RecordType.CYCLE, TEST_USER_ID)
        assert result.valid[0].model_extra == {"brand_new_field": {"a": 1}}


class TestPartialFailure:
    """Invalid items are rejected one by one; the rest of the batch survives."""

    @pytest.mark.asyncio
    async def test_two_invalid_of_ten(self) -> None:
        """Ten raw cycles with two bad ones yield eight valid and two error rows."""
        raw = [make_cycle(cycle_id=i) for i in range(1, 11)]
        raw[3]["score"]["strain"] = 35.0  # above the 0..21 range
        del raw[7]["start"]

        logged: list[ValidationErrorEntry] = []

        async def sink(entry: ValidationErrorEntry) -> None:
            logged.append(entry)

        result = await validate_records(raw, RecordType.CYCLE, TEST_USER_ID, on_invalid=sink)

        assert result.stats.total == 10
        assert result.stats.valid_count == 8
        assert result.stats.invalid_count == 2
        assert len(logged) == 2
        assert all(e.user_id == TEST_USER_ID for e in logged)
        assert all(e.data_type is RecordType.CYCLE for e in logged)
        assert "score.strain" in logged[0].error_message
        assert "start" in logged[1].error_message
        assert logged[0].raw_data is raw[3]

    @pytest.mark.asyncio
    async def test_error_message_drops_version_tag(self) -> None:
        raw = make_sleep(sleep_id=V2_SLEEP_ID)
        raw["score"]["respiratory_rate"] = 90.0
        result = await validate_records([raw], RecordType.SLEEP, TEST_USER_ID)
        assert result.invalid[0].error.startswith("score.respiratory_rate:")

    @pytest.mark.asyncio
    async def test_boolean_id_is_rejected(self) -> None:
        result = await validate_records(
            [make_workout(workout_id=True)], RecordType.WORKOUT, TEST_USER_ID
        )
        assert result.stats.invalid_count == 1

    @pytest.mark.asyncio
    async def test_timestamp_without_offset_is_rejected(self) -> None:
        """A naive timestamp is an invalid record, not a crash downstream."""
        logged: list[ValidationErrorEntry] = []

        async def sink(entry: ValidationErrorEntry) -> None:
            logged.append(entry)

        raw = [make_workout(workout_id=1), make_workout(workout_id=2, end="2026-02-22T17:45:00")]
        result = await validate_records(raw, RecordType.WORKOUT, TEST_USER_ID, on_invalid=sink)

        assert result.stats.valid_count == 1
        assert result.stats.invalid_count == 1
        assert result.invalid[0].error.startswith("end:")
        assert logged[0].raw_data is raw[1]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_validation(self) -> None:
        async def broken_sink(entry: ValidationErrorEntry) -> None:
            raise RuntimeError("database down")

        raw = [make_workout(workout_id=1), {"id": 2}, make_workout(workout_id=3)]
        result = await validate_records(
            raw, RecordType.WORKOUT, TEST_USER_ID, on_invalid=broken_sink
        )
        assert result.stats.valid_count == 2
        assert result.stats.invalid_count == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self) -> None:
        result = await validate_records([], RecordType.RECOVERY, TEST_USER_ID)
        assert result.stats.total == 0
