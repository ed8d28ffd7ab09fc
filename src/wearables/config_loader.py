"""Load, validate, and hot-reload the Whoop sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update — no restart required.

Usage::

    from src.wearables.config_loader import get_sync_config

    config = get_sync_config()
    config.window_days(initial_sync_completed=False)   # 15
    config.retry.max_attempts                          # 3
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from src.wearables.base import ActivityType

logger = logging.getLogger("prime.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class RetryConfig:
    """Exponential backoff settings for every Whoop HTTP call."""

    max_attempts: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 8.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:                 Config schema version string.
        initial_sync_days:       Window used until the first sync completes.
        incremental_sync_days:   Window used for every later sync.
        refresh_buffer_seconds:  Refresh tokens expiring within this many seconds.
        retry:                   Backoff policy.
        page_size:               ``limit`` sent on paginated endpoints.
        max_concurrent:          Simultaneous per-user syncs in a batch run.
        kcal_per_kilojoule:      Energy conversion factor.
        sports:                  Whoop sport_id → ActivityType.
    """

    version: str = "1.0"
    initial_sync_days: int = 15
    incremental_sync_days: int = 7
    refresh_buffer_seconds: int = 60
    retry: RetryConfig = field(default_factory=RetryConfig)
    page_size: int = 25
    max_concurrent: int = 5
    kcal_per_kilojoule: float = 0.239
    sports: dict[int, ActivityType] = field(default_factory=dict)

    def window_days(self, initial_sync_completed: bool) -> int:
        """Return how many days back a sync should reach."""
        if initial_sync_completed:
            return self.incremental_sync_days
        return self.initial_sync_days

    def activity_type(self, sport_id: int | None) -> ActivityType:
        """Map a Whoop sport_id to a canonical activity type.

        Unknown or missing ids map to ``ActivityType.OTHER``.
        """
        if sport_id is None:
            return ActivityType.OTHER
        return self.sports.get(sport_id, ActivityType.OTHER)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml  # pyyaml

    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _positive_int(raw: dict, key: str, section: str, default: int, errors: list[str]) -> int:
    value = raw.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors.append(f"{section}.{key} must be an integer, got {value!r}")
        return default
    if number <= 0:
        errors.append(f"{section}.{key} must be positive, got {number}")
    return number


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    All problems are collected before raising so one run reports everything.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Windows ──
    win_raw = raw.get("windows", {}) or {}
    initial_days = _positive_int(win_raw, "initial_sync_days", "windows", 15, errors)
    incremental_days = _positive_int(win_raw, "incremental_sync_days", "windows", 7, errors)
    if initial_days < incremental_days:
        errors.append(
            f"windows.initial_sync_days ({initial_days}) must be >= "
            f"windows.incremental_sync_days ({incremental_days})"
        )

    # ── Tokens ──
    tok_raw = raw.get("tokens", {}) or {}
    refresh_buffer = _positive_int(tok_raw, "refresh_buffer_seconds", "tokens", 60, errors)

    # ── Retry ──
    rt_raw = raw.get("retry", {}) or {}
    max_attempts = _positive_int(rt_raw, "max_attempts", "retry", 3, errors)
    initial_ms = _positive_int(rt_raw, "initial_delay_ms", "retry", 1000, errors)
    max_ms = _positive_int(rt_raw, "max_delay_ms", "retry", 8000, errors)
    if max_ms < initial_ms:
        errors.append("retry.max_delay_ms must be >= retry.initial_delay_ms")
    try:
        multiplier = float(rt_raw.get("backoff_multiplier", 2))
    except (TypeError, ValueError):
        errors.append("retry.backoff_multiplier must be a number")
        multiplier = 2.0
    if multiplier < 1.0:
        errors.append(f"retry.backoff_multiplier must be >= 1, got {multiplier}")
    codes_raw = rt_raw.get("retryable_status_codes", [429, 500, 502, 503, 504])
    codes: set[int] = set()
    for code in codes_raw or []:
        try:
            codes.add(int(code))
        except (TypeError, ValueError):
            errors.append(f"retry.retryable_status_codes has non-integer {code!r}")
    retry = RetryConfig(
        max_attempts=max_attempts,
        initial_delay_s=initial_ms / 1000.0,
        max_delay_s=max_ms / 1000.0,
        backoff_multiplier=multiplier,
        retryable_status_codes=frozenset(codes),
    )

    # ── Pagination / batch ──
    page_size = _positive_int(raw.get("pagination", {}) or {}, "page_size", "pagination", 25, errors)
    max_concurrent = _positive_int(raw.get("batch", {}) or {}, "max_concurrent", "batch", 5, errors)

    # ── Units ──
    units_raw = raw.get("units", {}) or {}
    try:
        kcal_per_kj = float(units_raw.get("kcal_per_kilojoule", 0.239))
    except (TypeError, ValueError):
        errors.append("units.kcal_per_kilojoule must be a number")
        kcal_per_kj = 0.239

    # ── Sports ──
    sports: dict[int, ActivityType] = {}
    for sport_id, name in (raw.get("sports", {}) or {}).items():
        try:
            sports[int(sport_id)] = ActivityType(name)
        except (TypeError, ValueError):
            errors.append(f"sports.{sport_id} = {name!r} is not a known activity type")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        initial_sync_days=initial_days,
        incremental_sync_days=incremental_days,
        refresh_buffer_seconds=refresh_buffer,
        retry=retry,
        page_size=page_size,
        max_concurrent=max_concurrent,
        kcal_per_kilojoule=kcal_per_kj,
        sports=sports,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
