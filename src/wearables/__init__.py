"""Prime Whoop Sync Engine.

This package pulls Whoop data into Postgres: OAuth token lifecycle,
paginated fetches with retry, schema validation, normalization into
canonical metric records, same-day deduplication and idempotent upserts.

Subpackages:
    adapters/ — Whoop API client (OAuth2 grants, paginated fetches)
    sync/     — Per-user orchestrator, batch runner, repository, deduplication

Core modules:
    base          — Canonical data models
    schemas       — Versioned pydantic schemas for raw Whoop payloads
    validator     — Partial-failure-tolerant schema validation
    normalizer    — Raw → canonical conversion
    tokens        — Token encryption, storage and refresh lifecycle
    retry         — Exponential backoff
    errors        — Error taxonomy and classification
    collaborators — Downstream aggregation / alert / supervisor protocols
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from src.wearables.base import (
    ActivityType,
    CycleMetric,
    OAuthTokens,
    RecordType,
    RecoveryMetric,
    SleepMetric,
    WorkoutMetric,
)
from src.wearables.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ActivityType",
    "CycleMetric",
    "OAuthTokens",
    "RecordType",
    "RecoveryMetric",
    "SleepMetric",
    "WorkoutMetric",
    "SyncConfig",
    "get_sync_config",
]
