"""Shared fixtures, fakes and Whoop payload builders for sync engine tests."""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

import httpx
import pytest

from src.wearables.adapters.whoop import WhoopClient
from src.wearables.base import (
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
from src.wearables.config_loader import SyncConfig, load_sync_config
from src.wearables.sync.repository import EncryptedTokenRow, SyncStats
from src.wearables.tokens import TokenCipher, TokenLifecycleManager, TokenStore

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DOCTOR_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2026, 2, 23)
FIXED_NOW = datetime(2026, 2, 23, 12, 0, 0, tzinfo=timezone.utc)

TEST_ENCRYPTION_KEY = "test-encryption-key"
API_BASE = "https://api.test/developer/v2"
OAUTH_BASE = "https://api.test/oauth/oauth2"


# ---------------------------------------------------------------------------
# Clock / sleep
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory ``SyncRepository`` with upsert-by-natural-key semantics."""

    def __init__(self) -> None:
        self.connections: dict[UUID, Connection] = {}
        self.tokens: dict[UUID, EncryptedTokenRow] = {}
        self.cycles: dict[tuple, CycleMetric] = {}
        self.recovery: dict[tuple, RecoveryMetric] = {}
        self.sleep: dict[tuple, SleepMetric] = {}
        self.workouts: dict[tuple, WorkoutMetric] = {}
        self.sync_logs: list[SyncLogEntry] = []
        self.validation_errors: list[ValidationErrorEntry] = []
        self.profiles: dict[UUID, dict[str, Any]] = defaultdict(dict)
        self.body_history: dict[tuple, BodyMeasurement] = {}
        self.relationships: dict[tuple[UUID, UUID], str] = {}
        self.doctors: list[UUID] = []
        self.calls: list[str] = []

    # ── Connections ──
    async def list_active_connections(self) -> list[Connection]:
        return [c for c in self.connections.values() if c.is_active]

    async def get_connection(self, user_id: UUID) -> Connection | None:
        return self.connections.get(user_id)

    async def activate_connection(self, user_id: UUID) -> None:
        conn = self.connections.setdefault(user_id, Connection(user_id=user_id))
        conn.is_active = True

    async def deactivate_connection(self, user_id: UUID) -> None:
        self.calls.append("deactivate_connection")
        if user_id in self.connections:
            self.connections[user_id].is_active = False

    async def mark_synced(
        self, user_id: UUID, synced_at: datetime, initial_sync_completed: bool
    ) -> None:
        conn = self.connections.setdefault(user_id, Connection(user_id=user_id))
        conn.last_sync_at = synced_at
        conn.initial_sync_completed = conn.initial_sync_completed or initial_sync_completed

    # ── Tokens ──
    async def load_token_row(self, user_id: UUID) -> EncryptedTokenRow | None:
        return self.tokens.get(user_id)

    async def save_token_row(self, row: EncryptedTokenRow) -> None:
        self.calls.append("save_token_row")
        self.tokens[row.user_id] = row

    async def delete_token_row(self, user_id: UUID) -> None:
        self.tokens.pop(user_id, None)

    async def revoke_credentials(self, user_id: UUID) -> None:
        self.calls.append("revoke_credentials")
        await self.deactivate_connection(user_id)
        await self.delete_token_row(user_id)

    # ── Metrics ──
    async def upsert_cycles(self, records: list[CycleMetric]) -> int:
        for r in records:
            self.cycles[r.natural_key] = r
        return len(records)

    async def upsert_recovery(self, records: list[RecoveryMetric]) -> int:
        for r in records:
            self.recovery[r.natural_key] = r
        return len(records)

    async def upsert_sleep(self, records: list[SleepMetric]) -> int:
        for r in records:
            self.sleep[r.natural_key] = r
        return len(records)

    async def upsert_workouts(self, records: list[WorkoutMetric]) -> int:
        for r in records:
            self.workouts[r.natural_key] = r
        return len(records)

    # ── Logs ──
    async def insert_sync_log(self, entry: SyncLogEntry) -> None:
        self.sync_logs.append(entry)

    async def insert_validation_error(self, entry: ValidationErrorEntry) -> None:
        self.validation_errors.append(entry)

    # ── Profile ──
    async def save_profile(self, profile: WhoopProfile) -> None:
        self.profiles[profile.user_id].update(
            full_name=profile.full_name, whoop_user_id=profile.whoop_user_id
        )

    async def save_body_measurement(self, measurement: BodyMeasurement) -> None:
        self.body_history[(measurement.user_id, measurement.measured_at)] = measurement
        for key in ("height_cm", "weight_kg", "max_heart_rate"):
            value = getattr(measurement, key)
            if value is not None:
                self.profiles[measurement.user_id][key] = value

    async def get_profile_role(self, user_id: UUID) -> str | None:
        return self.profiles.get(user_id, {}).get("role")

    # ── Supervision ──
    async def find_oldest_doctor(self) -> UUID | None:
        return self.doctors[0] if self.doctors else None

    async def relationship_exists(self, doctor_id: UUID, patient_id: UUID) -> bool:
        return (doctor_id, patient_id) in self.relationships

    async def create_relationship(self, doctor_id: UUID, patient_id: UUID) -> None:
        self.relationships[(doctor_id, patient_id)] = "active"

    async def doctor_supervises(self, doctor_id: UUID, patient_id: UUID) -> bool:
        return self.relationships.get((doctor_id, patient_id)) == "active"

    # ── Monitoring ──
    async def sync_stats(self, since: datetime, period_days: int) -> SyncStats:
        logs = [e for e in self.sync_logs if e.started_at >= since]
        return SyncStats(
            period_days=period_days,
            total_syncs=len(logs),
            successful=sum(1 for e in logs if e.status.value == "completed"),
            failed=sum(1 for e in logs if e.status.value == "failed"),
            records_synced=sum(e.records_synced for e in logs),
        )


# ---------------------------------------------------------------------------
# Whoop payload builders
# ---------------------------------------------------------------------------


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def make_cycle(
    cycle_id: int = 93845,
    start: datetime = datetime(2026, 2, 22, 6, 0, tzinfo=timezone.utc),
    strain: float = 12.5,
    **overrides: Any,
) -> dict:
    payload = {
        "id": cycle_id,
        "user_id": 10129,
        "created_at": iso(start + timedelta(hours=1)),
        "updated_at": iso(start + timedelta(hours=2)),
        "start": iso(start),
        "end": iso(start + timedelta(hours=24)),
        "timezone_offset": "+00:00",
        "score_state": "SCORED",
        "score": {
            "strain": strain,
            "kilojoule": 8288.3,
            "average_heart_rate": 68,
            "max_heart_rate": 141,
        },
    }
    payload.update(overrides)
    return payload


def make_recovery(
    cycle_id: int = 93845,
    sleep_id: int | str = 10235,
    created_at: datetime = datetime(2026, 2, 22, 7, 0, tzinfo=timezone.utc),
    recovery_score: float = 65.0,
    **overrides: Any,
) -> dict:
    payload = {
        "cycle_id": cycle_id,
        "sleep_id": sleep_id,
        "user_id": 10129,
        "created_at": iso(created_at),
        "updated_at": iso(created_at + timedelta(minutes=5)),
        "score_state": "SCORED",
        "score": {
            "user_calibrating": False,
            "recovery_score": recovery_score,
            "resting_heart_rate": 52,
            "hrv_rmssd_milli": 61.4,
            "spo2_percentage": 96.5,
            "skin_temp_celsius": 33.7,
        },
    }
    payload.update(overrides)
    return payload


def make_sleep(
    sleep_id: int | str = 10235,
    start: datetime = datetime(2026, 2, 22, 0, 30, tzinfo=timezone.utc),
    light_ms: int = 14_400_000,
    slow_wave_ms: int = 5_400_000,
    rem_ms: int = 5_400_000,
    nap: bool = False,
    **overrides: Any,
) -> dict:
    awake_ms = 1_800_000
    total = light_ms + slow_wave_ms + rem_ms + awake_ms
    payload = {
        "id": sleep_id,
        "user_id": 10129,
        "created_at": iso(start + timedelta(milliseconds=total)),
        "updated_at": iso(start + timedelta(milliseconds=total, minutes=5)),
        "start": iso(start),
        "end": iso(start + timedelta(milliseconds=total)),
        "timezone_offset": "+00:00",
        "nap": nap,
        "score_state": "SCORED",
        "score": {
            "stage_summary": {
                "total_in_bed_time_milli": total,
                "total_awake_time_milli": awake_ms,
                "total_no_data_time_milli": 0,
                "total_light_sleep_time_milli": light_ms,
                "total_slow_wave_sleep_time_milli": slow_wave_ms,
                "total_rem_sleep_time_milli": rem_ms,
                "sleep_cycle_count": 4,
                "disturbance_count": 7,
            },
            "sleep_needed": {
                "baseline_milli": 27_000_000,
                "need_from_sleep_debt_milli": 1_200_000,
                "need_from_recent_strain_milli": 600_000,
                "need_from_recent_nap_milli": 0,
            },
            "respiratory_rate": 15.2,
            "sleep_performance_percentage": 91.6,
            "sleep_consistency_percentage": 84.0,
            "sleep_efficiency_percentage": 93.1,
        },
    }
    payload.update(overrides)
    return payload


def make_workout(
    workout_id: int | str = 1043,
    start: datetime = datetime(2026, 2, 22, 17, 0, tzinfo=timezone.utc),
    minutes: int = 45,
    sport_id: int | None = 0,
    kilojoule: float | None = 1569.3,
    **overrides: Any,
) -> dict:
    payload = {
        "id": workout_id,
        "user_id": 10129,
        "created_at": iso(start),
        "updated_at": iso(start + timedelta(minutes=minutes)),
        "start": iso(start),
        "end": iso(start + timedelta(minutes=minutes)),
        "timezone_offset": "+00:00",
        "sport_id": sport_id,
        "score_state": "SCORED",
        "score": {
            "strain": 8.2,
            "average_heart_rate": 123,
            "max_heart_rate": 165,
            "kilojoule": kilojoule,
            "percent_recorded": 100,
            "distance_meter": 6120.5,
        },
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Mock Whoop API
# ---------------------------------------------------------------------------


class FakeWhoopAPI:
    """httpx.MockTransport handler serving canned Whoop responses.

    ``collections`` maps an endpoint path (``/cycle``) to its full record list;
    it is paged by the request's ``limit`` and ``nextToken``.  ``failures``
    maps a path to a list of status codes returned before the real response.
    """

    def __init__(self) -> None:
        self.collections: dict[str, list[dict]] = {
            "/cycle": [],
            "/recovery": [],
            "/activity/sleep": [],
            "/activity/workout": [],
        }
        self.profile: dict | None = {"user_id": 10129, "first_name": "Ana", "last_name": "Silva"}
        self.body: dict | None = {"height_meter": 1.72, "weight_kilogram": 64.5, "max_heart_rate": 192}
        self.failures: dict[str, list[int]] = defaultdict(list)
        self.token_responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    def path_of(self, request: httpx.Request) -> str:
        path = request.url.path
        for prefix in ("/developer/v2", "/oauth/oauth2"):
            if path.startswith(prefix):
                return path[len(prefix):]
        return path

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = self.path_of(request)

        if self.failures[path]:
            return httpx.Response(self.failures[path].pop(0), json={"error": "boom"})

        if path == "/token":
            if self.token_responses:
                return self.token_responses.pop(0)
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600},
            )
        if path == "/user/profile/basic":
            return httpx.Response(200, json=self.profile) if self.profile else httpx.Response(404)
        if path == "/user/measurement/body":
            return httpx.Response(200, json=self.body) if self.body else httpx.Response(404)
        if path in self.collections:
            return self._page(request, self.collections[path])
        return httpx.Response(404, json={"error": "not_found"})

    @staticmethod
    def _page(request: httpx.Request, records: list[dict]) -> httpx.Response:
        limit = int(request.url.params.get("limit", 25))
        offset = int(request.url.params.get("nextToken", 0))
        page = records[offset:offset + limit]
        body: dict[str, Any] = {"records": page}
        if offset + limit < len(records):
            body["next_token"] = str(offset + limit)
        return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})

    def data_requests(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if self.path_of(r) == path]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def whoop_api() -> FakeWhoopAPI:
    return FakeWhoopAPI()


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def http_client(whoop_api: FakeWhoopAPI) -> httpx.AsyncClient:
    """AsyncClient answering from ``whoop_api``; MockTransport holds no sockets."""
    return httpx.AsyncClient(transport=httpx.MockTransport(whoop_api))


@pytest.fixture
def make_whoop_client(
    http_client: httpx.AsyncClient,
    sync_config: SyncConfig,
    recording_sleep: RecordingSleep,
    clock: FakeClock,
) -> Callable[..., WhoopClient]:
    def _make(**kwargs: Any) -> WhoopClient:
        params: dict[str, Any] = dict(
            http_client=http_client,
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="https://app.test/api/v1/auth/whoop/callback",
            api_base=API_BASE,
            oauth_base=OAUTH_BASE,
            config=sync_config,
            sleep=recording_sleep,
            now=clock,
        )
        params.update(kwargs)
        return WhoopClient(**params)

    return _make


@pytest.fixture
def whoop_client(make_whoop_client) -> WhoopClient:
    return make_whoop_client()


@pytest.fixture
def token_store(repository: FakeRepository, cipher: TokenCipher) -> TokenStore:
    return TokenStore(repository, cipher)


@pytest.fixture
def token_manager(
    token_store: TokenStore,
    repository: FakeRepository,
    whoop_client: WhoopClient,
    clock: FakeClock,
) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        token_store, repository, whoop_client, now=clock, refresh_buffer_seconds=60
    )


async def store_tokens(
    repository: FakeRepository,
    cipher: TokenCipher,
    user_id: UUID = TEST_USER_ID,
    access_token: str | None = "stored-access",
    refresh_token: str | None = "stored-refresh",
    expires_at: datetime | None = FIXED_NOW + timedelta(hours=1),
) -> None:
    """Seed an encrypted whoop_tokens row."""
    await repository.save_token_row(
        EncryptedTokenRow(
            user_id=user_id,
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token),
            expires_at=expires_at,
        )
    )
    repository.calls.clear()
