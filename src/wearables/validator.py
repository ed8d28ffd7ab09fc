"""Schema validation for raw Whoop records.

Validation is partial-failure tolerant: every item is checked on its own,
valid ones move on to normalization, and each rejected one is written to
data_validation_errors with its field-level reasons.  Nothing is silently
dropped and one bad record never fails the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar
from uuid import UUID

from pydantic import ValidationError

from src.wearables.base import RecordType, ValidationErrorEntry
from src.wearables.schemas import SCHEMA_ADAPTERS, SCHEMA_VERSION_TAGS

logger = logging.getLogger("prime.wearables.validator")

T = TypeVar("T")

#: Async sink that persists a ValidationErrorEntry.
ValidationErrorSink = Callable[[ValidationErrorEntry], Awaitable[None]]


@dataclass
class InvalidRecord:
    """A raw item that failed its schema, with the reasons why."""

    data: Any
    error: str


@dataclass
class ValidationStats:
    total: int = 0
    valid_count: int = 0
    invalid_count: int = 0


@dataclass
class ValidationResult(Generic[T]):
    """Outcome of validating one batch of raw records."""

    record_type: RecordType
    valid: list[T] = field(default_factory=list)
    invalid: list[InvalidRecord] = field(default_factory=list)

    @property
    def stats(self) -> ValidationStats:
        return ValidationStats(
            total=len(self.valid) + len(self.invalid),
            valid_count=len(self.valid),
            invalid_count=len(self.invalid),
        )


def format_validation_error(exc: ValidationError) -> str:
    """Render a pydantic error as ``"score.strain: <msg>; start: <msg>"``.

    The schema-version tag pydantic prepends for tagged unions is dropped so
    reasons read the same for v1 and v2 payloads.
    """
    parts: list[str] = []
    for err in exc.errors():
        loc = list(err.get("loc", ()))
        if loc and loc[0] in SCHEMA_VERSION_TAGS:
            loc = loc[1:]
        path = ".".join(str(p) for p in loc) or "<root>"
        parts.append(f"{path}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


async def validate_records(
    raw_items: list[Any],
    record_type: RecordType,
    user_id: UUID,
    on_invalid: ValidationErrorSink | None = None,
) -> ValidationResult:
    """Validate a batch of raw records against the schema for ``record_type``.

    Args:
        raw_items:   Items from the ``records`` array of a Whoop endpoint.
        record_type: Which collection the items came from.
        user_id:     Internal user UUID, recorded on each error entry.
        on_invalid:  Async sink for ValidationErrorEntry rows.  A failing sink
                     is logged and does not stop validation.

    Returns:
        ValidationResult with parsed models in ``valid`` and the rest in ``invalid``.
    """
    adapter = SCHEMA_ADAPTERS[record_type]
    result: ValidationResult = ValidationResult(record_type=record_type)

    for item in raw_items:
        try:
            result.valid.append(adapter.validate_python(item))
        except ValidationError as exc:
            reason = format_validation_error(exc)
            result.invalid.append(InvalidRecord(data=item, error=reason))
            if on_invalid is not None:
                entry = ValidationErrorEntry(
                    user_id=user_id,
                    data_type=record_type,
                    error_message=reason,
                    raw_data=item,
                )
                try:
                    await on_invalid(entry)
                except Exception:
                    logger.exception(
                        "Failed to log validation error for user %s (%s)",
                        user_id, record_type.value,
                    )

    if result.invalid:
        logger.warning(
            "%d invalid %s record(s) rejected for user %s: %s",
            len(result.invalid),
            record_type.value,
            user_id,
            [i.error for i in result.invalid][:5],
        )
    logger.debug(
        "Validated %d %s record(s) for user %s (%d valid)",
        len(raw_items), record_type.value, user_id, len(result.valid),
    )
    return result
