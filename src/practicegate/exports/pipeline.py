"""Compliance export job pipeline.

Accepts, authorizes and records export requests, then hands them to an
out-of-band worker. Every state change after creation is a conditional
UPDATE keyed on the expected current state, so a job is claimed by at
most one worker and terminal jobs never move again.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from practicegate.billing.models import SubscriptionStatus
from practicegate.billing.store import SubscriptionStore
from practicegate.billing.tier_catalog import Capability
from practicegate.core.exceptions import (
    ConflictError,
    CrossUserAccessError,
    ExportLimitExceededError,
    ExportNotFoundError,
    ExportUnavailableError,
    InvalidInputError,
    MissingRequiredFieldError,
    QuotaExceededError,
    UnauthorizedError,
)
from practicegate.core.locks import KeyedLock, LocalKeyedLock
from practicegate.core.logging import LoggerMixin
from practicegate.core.metrics import track_export_event
from practicegate.exports.authorization import ExportAuthorizer, OwnerOrElevatedAuthorizer
from practicegate.exports.models import ExportFormat, ExportJob, ExportStatus, ExportType
from practicegate.models.base import utcnow

REASON_SUBSCRIPTION_INVALID = "subscription_invalid"

ExportDispatcher = Callable[[ExportJob], None]
CapabilityCheck = Callable[[UUID, Capability], Any]


def _parse_enum(enum_cls: type, value: Any, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise InvalidInputError(
            f"Unknown {field.replace('_', ' ')}: {value}",
            field=field,
            value=value,
            allowed=[member.value for member in enum_cls],
        ) from e


class ExportPipeline(LoggerMixin):
    """Export job lifecycle: request, list, claim, complete, fail."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        authorizer: ExportAuthorizer | None = None,
        store: SubscriptionStore | None = None,
        locks: KeyedLock | None = None,
        dispatcher: ExportDispatcher | None = None,
        capability_check: CapabilityCheck | None = None,
        required_capability: Capability | None = None,
        daily_limit: int = 10,
        retention_days: int = 7,
        max_list_limit: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the pipeline.

        Args:
            db: Database session
            authorizer: Grants cross-user export scope
            store: Subscription store used to detect invalidated subscriptions
            locks: Serializes requests per user for the daily limit
            dispatcher: Called with each newly committed job to enqueue work
            capability_check: Async ``(user_id, capability) -> bool``
            required_capability: Capability needed to export; None makes
                exports tier-independent
            daily_limit: Requests allowed per user per UTC day
            retention_days: Download window of completed artifacts
            max_list_limit: Upper bound for listing
            clock: Source of the current time
        """
        self.db = db
        self.authorizer = authorizer or OwnerOrElevatedAuthorizer()
        self.store = store or SubscriptionStore(db)
        self.locks = locks or LocalKeyedLock()
        self.dispatcher = dispatcher
        self.capability_check = capability_check
        self.required_capability = required_capability
        self.daily_limit = daily_limit
        self.retention_days = retention_days
        self.max_list_limit = max_list_limit
        self.clock = clock

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_export(
        self,
        user_id: UUID,
        export_type: ExportType | str,
        format: ExportFormat | str,
        filters: dict[str, Any] | None = None,
        custom_fields: list[str] | None = None,
        subject_user_id: UUID | None = None,
    ) -> ExportJob:
        """Validate, authorize and queue an export.

        The job is committed before it is dispatched, so a returned job is
        durable. A store failure is raised, never swallowed.

        Raises:
            InvalidInputError: Unknown type or format, or missing custom fields.
            UnauthorizedError: Cross-user scope without elevation.
            QuotaExceededError: Capability missing or daily limit reached.
            ExportUnavailableError: The job store could not be written.
        """
        export_type = _parse_enum(ExportType, export_type, "export_type")
        export_format = _parse_enum(ExportFormat, format, "format")
        if export_type == ExportType.CUSTOM and not custom_fields:
            raise MissingRequiredFieldError(
                "Custom exports require custom_fields",
                field="custom_fields",
            )

        subject_user_id = subject_user_id or user_id
        if subject_user_id != user_id and not await self.authorizer.can_export(
            user_id, subject_user_id
        ):
            self.logger.warning(
                "export_cross_user_denied",
                user_id=str(user_id),
                subject_user_id=str(subject_user_id),
            )
            raise CrossUserAccessError(
                details={"subject_user_id": str(subject_user_id)},
            )

        if self.required_capability is not None and self.capability_check is not None:
            if not await self.capability_check(user_id, self.required_capability):
                raise QuotaExceededError(
                    "Your plan does not include data exports",
                    action_kind="export",
                    reason="capability_required",
                )

        try:
            async with self.locks.hold(f"export:{user_id}"):
                requested_today = await self._count_requested_today(user_id)
                if requested_today >= self.daily_limit:
                    self.logger.info(
                        "export_daily_limit_reached",
                        user_id=str(user_id),
                        limit=self.daily_limit,
                    )
                    raise ExportLimitExceededError(
                        action_kind="export",
                        used=requested_today,
                        quota=self.daily_limit,
                        reason="daily_limit",
                    )

                job = ExportJob(
                    user_id=user_id,
                    subject_user_id=subject_user_id,
                    export_type=export_type,
                    format=export_format,
                    filters=filters or {},
                    custom_fields=custom_fields,
                    status=ExportStatus.QUEUED,
                    requested_at=self.clock(),
                    download_count=0,
                )
                self.db.add(job)
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.logger.error(
                "export_store_unavailable",
                user_id=str(user_id),
                export_type=export_type.value,
                error=str(e),
            )
            raise ExportUnavailableError(details={"export_type": export_type.value}) from e

        self.logger.info(
            "export_requested",
            export_id=str(job.id),
            user_id=str(user_id),
            subject_user_id=str(subject_user_id),
            export_type=export_type.value,
            format=export_format.value,
        )
        track_export_event("requested")
        self._dispatch(job)
        return job

    def _dispatch(self, job: ExportJob) -> None:
        if self.dispatcher is None:
            return
        try:
            self.dispatcher(job)
        except Exception as e:
            # The job is committed as queued; the redispatch sweep retries it
            self.logger.error(
                "export_dispatch_failed",
                export_id=str(job.id),
                error=str(e),
            )

    async def _count_requested_today(self, user_id: UUID) -> int:
        now = self.clock().astimezone(UTC)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        result = await self.db.execute(
            select(func.count(ExportJob.id)).where(
                ExportJob.user_id == user_id,
                ExportJob.requested_at >= day_start,
            ),
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_exports(self, user_id: UUID, limit: int = 50) -> list[ExportJob]:
        """Jobs requested by ``user_id``, newest first."""
        if not 1 <= limit <= self.max_list_limit:
            raise InvalidInputError(
                f"limit must be between 1 and {self.max_list_limit}",
                field="limit",
                value=limit,
            )
        result = await self.db.execute(
            select(ExportJob)
            .where(ExportJob.user_id == user_id)
            .order_by(ExportJob.requested_at.desc(), ExportJob.created_at.desc())
            .limit(limit),
        )
        return list(result.scalars().all())

    async def get_export(self, user_id: UUID, job_id: UUID) -> ExportJob:
        """A single job, visible only to its requester."""
        job = await self._load(job_id)
        if job.user_id != user_id:
            self.logger.warning(
                "export_access_denied",
                export_id=str(job_id),
                user_id=str(user_id),
            )
            raise UnauthorizedError("You do not have access to this export")
        return job

    async def get_export_summary(self, user_id: UUID) -> dict[str, Any]:
        """Aggregate counts of a user's exports."""
        result = await self.db.execute(
            select(
                ExportJob.status,
                ExportJob.format,
                ExportJob.export_type,
                func.count(ExportJob.id),
                func.coalesce(func.sum(ExportJob.download_count), 0),
                func.coalesce(func.sum(ExportJob.result_size), 0),
            )
            .where(ExportJob.user_id == user_id)
            .group_by(ExportJob.status, ExportJob.format, ExportJob.export_type),
        )

        by_status = {status.value: 0 for status in ExportStatus}
        by_format: dict[str, int] = {}
        by_type: dict[str, int] = {}
        total = downloads = total_size = 0
        for status, export_format, export_type, count, download_sum, size_sum in result.all():
            total += count
            downloads += download_sum
            total_size += size_sum
            by_status[status.value] += count
            by_format[export_format.value] = by_format.get(export_format.value, 0) + count
            by_type[export_type.value] = by_type.get(export_type.value, 0) + count

        completed = by_status[ExportStatus.COMPLETED.value]
        return {
            "total_exports": total,
            "by_status": by_status,
            "by_format": by_format,
            "by_type": by_type,
            "total_downloads": downloads,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "average_size": total_size // completed if completed else 0,
        }

    async def pending_jobs(self, older_than: timedelta, limit: int = 100) -> list[ExportJob]:
        """Queued jobs requested more than ``older_than`` ago."""
        cutoff = self.clock() - older_than
        result = await self.db.execute(
            select(ExportJob)
            .where(
                ExportJob.status == ExportStatus.QUEUED,
                ExportJob.requested_at <= cutoff,
            )
            .order_by(ExportJob.requested_at)
            .limit(limit),
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    async def claim(self, job_id: UUID, worker_id: str) -> ExportJob:
        """Move a queued job to processing for ``worker_id``.

        Raises:
            ExportNotFoundError: If the job does not exist.
            ConflictError: If the job is not queued.
        """
        now = self.clock()
        await self._transition(
            job_id,
            (ExportJob.status == ExportStatus.QUEUED,),
            status=ExportStatus.PROCESSING,
            started_at=now,
            claimed_by=worker_id,
            updated_at=now,
        )
        track_export_event("claimed")
        self.logger.info("export_claimed", export_id=str(job_id), worker_id=worker_id)
        return await self._load(job_id)

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        result_location: str,
        result_size: int | None = None,
    ) -> ExportJob:
        """Mark a job claimed by ``worker_id`` as completed."""
        now = self.clock()
        await self._transition(
            job_id,
            (
                ExportJob.status == ExportStatus.PROCESSING,
                ExportJob.claimed_by == worker_id,
            ),
            status=ExportStatus.COMPLETED,
            completed_at=now,
            expires_at=now + timedelta(days=self.retention_days),
            result_location=result_location,
            result_size=result_size,
            updated_at=now,
        )
        track_export_event("completed")
        self.logger.info(
            "export_completed",
            export_id=str(job_id),
            worker_id=worker_id,
            result_size=result_size,
        )
        return await self._load(job_id)

    async def fail(
        self,
        job_id: UUID,
        reason: str,
        worker_id: str | None = None,
    ) -> ExportJob:
        """Mark a queued or processing job as failed.

        With ``worker_id`` only a job claimed by that worker can be failed.
        """
        conditions: tuple[Any, ...]
        if worker_id is None:
            conditions = (
                ExportJob.status.in_([ExportStatus.QUEUED, ExportStatus.PROCESSING]),
            )
        else:
            conditions = (
                ExportJob.status == ExportStatus.PROCESSING,
                ExportJob.claimed_by == worker_id,
            )
        now = self.clock()
        await self._transition(
            job_id,
            conditions,
            status=ExportStatus.FAILED,
            completed_at=now,
            error_reason=reason,
            updated_at=now,
        )
        track_export_event("failed")
        self.logger.warning(
            "export_failed",
            export_id=str(job_id),
            worker_id=worker_id,
            reason=reason,
        )
        return await self._load(job_id)

    async def cancel_if_subscription_invalid(self, job_id: UUID) -> bool:
        """Fail an in-flight job whose requester's subscription was canceled.

        Returns:
            True if the job was failed by this call.
        """
        job = await self._load(job_id)
        if job.status.is_terminal:
            return False

        live = await self.store.get(job.user_id)
        if live.is_persisted:
            return False
        history = await self.store.history(job.user_id)
        latest = history[0] if history else None
        if (
            latest is None
            or latest.status != SubscriptionStatus.CANCELED
            or latest.canceled_at is None
            or latest.canceled_at < job.requested_at
        ):
            return False

        try:
            await self.fail(job_id, REASON_SUBSCRIPTION_INVALID)
        except ConflictError:
            return False
        return True

    async def record_download(self, user_id: UUID, job_id: UUID) -> ExportJob:
        """Count a download of a completed, unexpired artifact."""
        job = await self.get_export(user_id, job_id)
        if job.status != ExportStatus.COMPLETED:
            raise ConflictError(
                "Export not ready for download",
                current_state=job.status.value,
            )
        if job.is_expired(self.clock()):
            raise ConflictError("Export has expired", current_state="expired")

        await self.db.execute(
            update(ExportJob)
            .where(ExportJob.id == job_id, ExportJob.status == ExportStatus.COMPLETED)
            .values(download_count=ExportJob.download_count + 1),
        )
        await self.db.commit()
        job = await self._load(job_id)
        self.logger.info(
            "export_downloaded",
            export_id=str(job_id),
            user_id=str(user_id),
            download_count=job.download_count,
        )
        return job

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        job_id: UUID,
        conditions: tuple[Any, ...],
        **values: Any,
    ) -> None:
        result = await self.db.execute(
            update(ExportJob)
            .where(ExportJob.id == job_id, *conditions)
            .values(**values),
        )
        await self.db.commit()
        if result.rowcount == 1:
            return

        job = await self._load(job_id)
        self.logger.info(
            "export_transition_rejected",
            export_id=str(job_id),
            current_status=job.status.value,
            target_status=values["status"].value,
        )
        raise ConflictError(
            f"Export is {job.status.value}",
            current_state=job.status.value,
        )

    async def _load(self, job_id: UUID) -> ExportJob:
        result = await self.db.execute(
            select(ExportJob)
            .where(ExportJob.id == job_id)
            .execution_options(populate_existing=True),
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise ExportNotFoundError(resource_type="Export", resource_id=str(job_id))
        return job
