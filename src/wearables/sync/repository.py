"""Persistence for the Whoop sync engine.

``SyncRepository`` is the protocol the engine depends on.  ``PostgresSyncRepository``
implements it over ``Database`` with parameterized SQL; metric writes are
keyed upserts built by ``build_upsert_query`` so a rerun over the same
window converges to the same rows.

Token columns hold ciphertext only.  Encryption happens in ``TokenStore``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from src.services.database import Database
from src.wearables.base import (
    WHOOP,
    BodyMeasurement,
    Connection,
    CycleMetric,
    RecoveryMetric,
    SleepMetric,
    SyncLogEntry,
    ValidationErrorEntry,
    WhoopProfile,
    WorkoutMetric,
)
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("prime.wearables.sync.repository")


@dataclass
class EncryptedTokenRow:
    """Raw whoop_tokens row; token fields are Fernet ciphertext."""

    user_id: UUID
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None


@dataclass
class SyncStats:
    """Aggregate view of sync_logs over a trailing period."""

    period_days: int
    total_syncs: int = 0
    successful: int = 0
    failed: int = 0
    records_synced: int = 0
    last_sync_at: datetime | None = None
    recent_errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total_syncs:
            return 0.0
        return round(self.successful / self.total_syncs * 100, 1)


class SyncRepository(Protocol):
    # ── Connections ──
    async def list_active_connections(self) -> list[Connection]: ...
    async def get_connection(self, user_id: UUID) -> Connection | None: ...
    async def activate_connection(self, user_id: UUID) -> None: ...
    async def deactivate_connection(self, user_id: UUID) -> None: ...
    async def mark_synced(
        self, user_id: UUID, synced_at: datetime, initial_sync_completed: bool
    ) -> None: ...

    # ── Tokens ──
    async def load_token_row(self, user_id: UUID) -> EncryptedTokenRow | None: ...
    async def save_token_row(self, row: EncryptedTokenRow) -> None: ...
    async def delete_token_row(self, user_id: UUID) -> None: ...
    async def revoke_credentials(self, user_id: UUID) -> None: ...

    # ── Metrics ──
    async def upsert_cycles(self, records: list[CycleMetric]) -> int: ...
    async def upsert_recovery(self, records: list[RecoveryMetric]) -> int: ...
    async def upsert_sleep(self, records: list[SleepMetric]) -> int: ...
    async def upsert_workouts(self, records: list[WorkoutMetric]) -> int: ...

    # ── Append-only logs ──
    async def insert_sync_log(self, entry: SyncLogEntry) -> None: ...
    async def insert_validation_error(self, entry: ValidationErrorEntry) -> None: ...

    # ── Profile ──
    async def save_profile(self, profile: WhoopProfile) -> None: ...
    async def save_body_measurement(self, measurement: BodyMeasurement) -> None: ...
    async def get_profile_role(self, user_id: UUID) -> str | None: ...

    # ── Supervision ──
    async def find_oldest_doctor(self) -> UUID | None: ...
    async def relationship_exists(self, doctor_id: UUID, patient_id: UUID) -> bool: ...
    async def create_relationship(self, doctor_id: UUID, patient_id: UUID) -> None: ...
    async def doctor_supervises(self, doctor_id: UUID, patient_id: UUID) -> bool: ...

    # ── Monitoring ──
    async def sync_stats(self, since: datetime, period_days: int) -> SyncStats: ...


# ---------------------------------------------------------------------------
# Upsert statements
# ---------------------------------------------------------------------------

_CYCLE_COLUMNS = [
    "user_id", "date", "strain", "kilojoule", "average_heart_rate",
    "max_heart_rate", "start_time", "end_time", "timezone_offset",
    "score_state", "raw_data",
]
_RECOVERY_COLUMNS = [
    "user_id", "source_platform", "metric_date", "recovery_score",
    "hrv_rmssd_milli", "resting_heart_rate", "spo2_percentage",
    "skin_temp_celsius", "user_calibrating", "raw_data",
]
_SLEEP_COLUMNS = [
    "user_id", "source_platform", "metric_date", "sleep_start", "sleep_end",
    "sleep_duration_minutes", "sleep_stage_light_minutes",
    "sleep_stage_deep_minutes", "sleep_stage_rem_minutes",
    "sleep_stage_awake_minutes", "sleep_efficiency_percentage",
    "sleep_quality_score", "respiratory_rate", "disturbances_count",
    "sleep_onset_latency_minutes", "raw_data",
]
_WORKOUT_COLUMNS = [
    "workout_id", "user_id", "source_platform", "metric_date",
    "activity_type", "activity_duration_minutes", "strain_score",
    "avg_heart_rate", "max_heart_rate", "calories_burned", "distance_meters",
    "raw_data",
]
_BODY_COLUMNS = [
    "user_id", "measured_at", "height_cm", "weight_kg", "max_heart_rate", "source",
]

UPSERT_CYCLE = build_upsert_query("cycle_metrics", _CYCLE_COLUMNS, ["user_id", "date"])
UPSERT_RECOVERY = build_upsert_query(
    "recovery_metrics", _RECOVERY_COLUMNS, ["user_id", "source_platform", "metric_date"]
)
UPSERT_SLEEP = build_upsert_query(
    "sleep_metrics", _SLEEP_COLUMNS, ["user_id", "source_platform", "metric_date"]
)
UPSERT_WORKOUT = build_upsert_query("workout_metrics", _WORKOUT_COLUMNS, ["workout_id"])
UPSERT_BODY = build_upsert_query(
    "body_measurements_history", _BODY_COLUMNS, ["user_id", "measured_at"]
)
UPSERT_TOKENS = build_upsert_query(
    "whoop_tokens",
    ["user_id", "access_token", "refresh_token", "expires_at"],
    ["user_id"],
    touch_column="updated_at",
)


def _jsonb(payload: Any) -> str:
    return json.dumps(payload, default=str)


def _connection_from_row(row) -> Connection:
    return Connection(
        user_id=row["user_id"],
        platform=row["platform"],
        is_active=row["is_active"],
        initial_sync_completed=row["initial_sync_completed"],
        last_sync_at=row["last_sync_at"],
    )


class PostgresSyncRepository:
    """``SyncRepository`` backed by the shared asyncpg pool."""

    def __init__(self, db: Database, platform: str = WHOOP) -> None:
        self._db = db
        self._platform = platform

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def list_active_connections(self) -> list[Connection]:
        rows = await self._db.fetch(
            """
            SELECT user_id, platform, is_active, initial_sync_completed, last_sync_at
            FROM device_connections
            WHERE platform = $1 AND is_active = true
            ORDER BY last_sync_at NULLS FIRST
            """,
            self._platform,
        )
        return [_connection_from_row(r) for r in rows]

    async def get_connection(self, user_id: UUID) -> Connection | None:
        row = await self._db.fetchrow(
            """
            SELECT user_id, platform, is_active, initial_sync_completed, last_sync_at
            FROM device_connections
            WHERE user_id = $1 AND platform = $2
            """,
            user_id,
            self._platform,
        )
        return _connection_from_row(row) if row else None

    async def activate_connection(self, user_id: UUID) -> None:
        """Create the connection, or reactivate it after a re-authorization."""
        await self._db.execute(
            """
            INSERT INTO device_connections (user_id, platform, is_active, initial_sync_completed)
            VALUES ($1, $2, true, false)
            ON CONFLICT (user_id, platform)
            DO UPDATE SET is_active = true, updated_at = NOW()
            """,
            user_id,
            self._platform,
        )

    async def deactivate_connection(self, user_id: UUID) -> None:
        await self._db.execute(
            """
            UPDATE device_connections SET is_active = false, updated_at = NOW()
            WHERE user_id = $1 AND platform = $2
            """,
            user_id,
            self._platform,
        )

    async def mark_synced(
        self, user_id: UUID, synced_at: datetime, initial_sync_completed: bool
    ) -> None:
        await self._db.execute(
            """
            UPDATE device_connections
            SET last_sync_at = $3,
                initial_sync_completed = initial_sync_completed OR $4,
                updated_at = NOW()
            WHERE user_id = $1 AND platform = $2
            """,
            user_id,
            self._platform,
            synced_at,
            initial_sync_completed,
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def load_token_row(self, user_id: UUID) -> EncryptedTokenRow | None:
        row = await self._db.fetchrow(
            "SELECT user_id, access_token, refresh_token, expires_at FROM whoop_tokens WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return None
        return EncryptedTokenRow(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
        )

    async def save_token_row(self, row: EncryptedTokenRow) -> None:
        await self._db.execute(
            UPSERT_TOKENS, row.user_id, row.access_token, row.refresh_token, row.expires_at
        )

    async def delete_token_row(self, user_id: UUID) -> None:
        await self._db.execute("DELETE FROM whoop_tokens WHERE user_id = $1", user_id)

    async def revoke_credentials(self, user_id: UUID) -> None:
        """Deactivate the connection and delete its tokens atomically."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                UPDATE device_connections SET is_active = false, updated_at = NOW()
                WHERE user_id = $1 AND platform = $2
                """,
                user_id,
                self._platform,
            )
            await conn.execute("DELETE FROM whoop_tokens WHERE user_id = $1", user_id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def upsert_cycles(self, records: list[CycleMetric]) -> int:
        await self._db.executemany(
            UPSERT_CYCLE,
            [
                (
                    r.user_id, r.date, r.strain, r.kilojoule, r.average_heart_rate,
                    r.max_heart_rate, r.start_time, r.end_time, r.timezone_offset,
                    r.score_state, _jsonb(r.raw_payload),
                )
                for r in records
            ],
        )
        return len(records)

    async def upsert_recovery(self, records: list[RecoveryMetric]) -> int:
        await self._db.executemany(
            UPSERT_RECOVERY,
            [
                (
                    r.user_id, r.source_platform, r.metric_date, r.recovery_score,
                    r.hrv_rmssd_milli, r.resting_heart_rate, r.spo2_percentage,
                    r.skin_temp_celsius, r.user_calibrating, _jsonb(r.raw_payload),
                )
                for r in records
            ],
        )
        return len(records)

    async def upsert_sleep(self, records: list[SleepMetric]) -> int:
        await self._db.executemany(
            UPSERT_SLEEP,
            [
                (
                    r.user_id, r.source_platform, r.metric_date, r.sleep_start,
                    r.sleep_end, r.sleep_duration_minutes,
                    r.sleep_stage_light_minutes, r.sleep_stage_deep_minutes,
                    r.sleep_stage_rem_minutes, r.sleep_stage_awake_minutes,
                    r.sleep_efficiency_percentage, r.sleep_quality_score,
                    r.respiratory_rate, r.disturbances_count,
                    r.sleep_onset_latency_minutes, _jsonb(r.raw_payload),
                )
                for r in records
            ],
        )
        return len(records)

    async def upsert_workouts(self, records: list[WorkoutMetric]) -> int:
        await self._db.executemany(
            UPSERT_WORKOUT,
            [
                (
                    r.workout_id, r.user_id, r.source_platform, r.metric_date,
                    r.activity_type.value, r.activity_duration_minutes,
                    r.strain_score, r.avg_heart_rate, r.max_heart_rate,
                    r.calories_burned, r.distance_meters, _jsonb(r.raw_payload),
                )
                for r in records
            ],
        )
        return len(records)

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    async def insert_sync_log(self, entry: SyncLogEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO sync_logs (
                user_id, platform, sync_started_at, sync_completed_at,
                status, records_synced, error_message
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            entry.user_id,
            entry.platform,
            entry.started_at,
            entry.completed_at,
            entry.status.value,
            entry.records_synced,
            entry.error_message,
        )

    async def insert_validation_error(self, entry: ValidationErrorEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO data_validation_errors (user_id, platform, data_type, error_message, raw_data)
            VALUES ($1, $2, $3, $4, $5)
            """,
            entry.user_id,
            entry.platform,
            entry.data_type.value,
            entry.error_message,
            _jsonb(entry.raw_data),
        )

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def save_profile(self, profile: WhoopProfile) -> None:
        await self._db.execute(
            """
            UPDATE profiles SET full_name = $2, whoop_user_id = $3, updated_at = NOW()
            WHERE id = $1
            """,
            profile.user_id,
            profile.full_name,
            profile.whoop_user_id,
        )

    async def save_body_measurement(self, measurement: BodyMeasurement) -> None:
        """Upsert today's history row and copy non-null values onto the profile."""
        async with self._db.transaction() as conn:
            await conn.execute(
                UPSERT_BODY,
                measurement.user_id,
                measurement.measured_at,
                measurement.height_cm,
                measurement.weight_kg,
                measurement.max_heart_rate,
                measurement.source,
            )
            await conn.execute(
                """
                UPDATE profiles SET
                    height_cm = COALESCE($2, height_cm),
                    weight_kg = COALESCE($3, weight_kg),
                    max_heart_rate = COALESCE($4, max_heart_rate),
                    updated_at = NOW()
                WHERE id = $1
                """,
                measurement.user_id,
                measurement.height_cm,
                measurement.weight_kg,
                measurement.max_heart_rate,
            )

    async def get_profile_role(self, user_id: UUID) -> str | None:
        return await self._db.fetchval("SELECT role FROM profiles WHERE id = $1", user_id)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def find_oldest_doctor(self) -> UUID | None:
        return await self._db.fetchval(
            "SELECT id FROM profiles WHERE role = 'doctor' ORDER BY created_at ASC LIMIT 1"
        )

    async def relationship_exists(self, doctor_id: UUID, patient_id: UUID) -> bool:
        found = await self._db.fetchval(
            """
            SELECT 1 FROM doctor_patient_relationships
            WHERE doctor_id = $1 AND patient_id = $2
            """,
            doctor_id,
            patient_id,
        )
        return found is not None

    async def create_relationship(self, doctor_id: UUID, patient_id: UUID) -> None:
        await self._db.execute(
            """
            INSERT INTO doctor_patient_relationships (doctor_id, patient_id, status)
            VALUES ($1, $2, 'active')
            ON CONFLICT (doctor_id, patient_id) DO NOTHING
            """,
            doctor_id,
            patient_id,
        )

    async def doctor_supervises(self, doctor_id: UUID, patient_id: UUID) -> bool:
        found = await self._db.fetchval(
            """
            SELECT 1 FROM doctor_patient_relationships
            WHERE doctor_id = $1 AND patient_id = $2 AND status = 'active'
            """,
            doctor_id,
            patient_id,
        )
        return found is not None

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def sync_stats(self, since: datetime, period_days: int) -> SyncStats:
        row = await self._db.fetchrow(
            """
            SELECT
                COUNT(*)                                          AS total,
                COUNT(*) FILTER (WHERE status = 'completed')      AS successful,
                COUNT(*) FILTER (WHERE status = 'failed')         AS failed,
                COALESCE(SUM(records_synced), 0)                  AS records,
                MAX(sync_completed_at)                            AS last_sync_at
            FROM sync_logs
            WHERE platform = $1 AND sync_started_at >= $2
            """,
            self._platform,
            since,
        )
        errors = await self._db.fetch(
            """
            SELECT user_id, sync_started_at, error_message
            FROM sync_logs
            WHERE platform = $1 AND sync_started_at >= $2 AND status = 'failed'
            ORDER BY sync_started_at DESC
            LIMIT 10
            """,
            self._platform,
            since,
        )
        return SyncStats(
            period_days=period_days,
            total_syncs=row["total"],
            successful=row["successful"],
            failed=row["failed"],
            records_synced=int(row["records"]),
            last_sync_at=row["last_sync_at"],
            recent_errors=[dict(r) for r in errors],
        )
