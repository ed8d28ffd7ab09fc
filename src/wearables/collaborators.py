"""Downstream collaborators triggered after a successful sync.

The engine only knows these as protocols.  Daily aggregation and alert
thresholds belong to other jobs, so the defaults here only log.  Assigning
a newly connected athlete to the default supervising doctor is implemented
against the sync repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol
from uuid import UUID

from src.wearables.sync.repository import SyncRepository

logger = logging.getLogger("prime.wearables.collaborators")


@dataclass
class DailySummaryReport:
    processed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class AssignmentResult:
    """Outcome of a default-supervisor assignment.

    Attributes:
        success:              False when the assignment could not be evaluated.
        relationship_created: A new doctor_patient_relationships row was written.
        doctor_id:            The doctor considered, if any.
        message:              Short reason for logs.
    """

    success: bool
    relationship_created: bool = False
    doctor_id: UUID | None = None
    message: str = ""


class DailyAggregator(Protocol):
    async def generate_daily_summary(self, day: date) -> DailySummaryReport: ...


class ThresholdChecker(Protocol):
    async def check_metrics_against_thresholds(self, user_id: UUID, day: date) -> int: ...


class SupervisorAssigner(Protocol):
    async def auto_assign_to_default_supervisor(self, user_id: UUID) -> AssignmentResult: ...


class LoggingAggregator:
    """No-op aggregator; records that a summary was requested."""

    async def generate_daily_summary(self, day: date) -> DailySummaryReport:
        logger.debug("Daily summary requested for %s (no aggregator configured)", day)
        return DailySummaryReport()


class LoggingThresholdChecker:
    """No-op threshold checker; never raises alerts."""

    async def check_metrics_against_thresholds(self, user_id: UUID, day: date) -> int:
        logger.debug(
            "Threshold check requested for user %s on %s (no checker configured)", user_id, day
        )
        return 0


class DefaultSupervisorAssigner:
    """Attach a freshly connected athlete to the default supervising doctor.

    The doctor is ``default_doctor_id`` when that is a valid UUID, otherwise
    the oldest profile with role ``doctor``.  Existing relationships are left
    alone.
    """

    def __init__(self, repository: SyncRepository, default_doctor_id: str | None = None) -> None:
        self._repo = repository
        self._default_doctor_id = default_doctor_id

    def _configured_doctor(self) -> UUID | None:
        if not self._default_doctor_id:
            return None
        try:
            return UUID(self._default_doctor_id)
        except ValueError:
            logger.warning("default_doctor_id %r is not a UUID; ignoring", self._default_doctor_id)
            return None

    async def auto_assign_to_default_supervisor(self, user_id: UUID) -> AssignmentResult:
        role = await self._repo.get_profile_role(user_id)
        if role != "athlete":
            return AssignmentResult(success=False, message=f"user role is {role!r}, not athlete")

        doctor_id = self._configured_doctor() or await self._repo.find_oldest_doctor()
        if doctor_id is None:
            return AssignmentResult(success=False, message="no doctor available")

        if await self._repo.relationship_exists(doctor_id, user_id):
            return AssignmentResult(
                success=True, doctor_id=doctor_id, message="relationship already exists"
            )

        await self._repo.create_relationship(doctor_id, user_id)
        logger.info("Assigned athlete %s to doctor %s", user_id, doctor_id)
        return AssignmentResult(
            success=True,
            relationship_created=True,
            doctor_id=doctor_id,
            message="relationship created",
        )
