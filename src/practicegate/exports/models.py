"""Export job model."""

import enum
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from practicegate.models.base import Base, TimestampMixin, UTCDateTime, utcnow

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class ExportType(str, enum.Enum):
    """What data an export contains."""

    CLIENT_DATA = "client_data"
    SESSION_DATA = "session_data"
    BILLING_DATA = "billing_data"
    FULL_EXPORT = "full_export"
    AUDIT_LOGS = "audit_logs"
    CUSTOM = "custom"


class ExportFormat(str, enum.Enum):
    """Artifact format."""

    JSON = "json"
    CSV = "csv"
    XML = "xml"
    PDF = "pdf"
    ENCRYPTED_ZIP = "encrypted_zip"


class ExportStatus(str, enum.Enum):
    """Export job lifecycle: queued -> processing -> completed | failed."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED)


class ExportJob(Base, TimestampMixin):
    """A regulated-data export request.

    Rows are never deleted; completed and failed jobs are terminal.
    """

    __tablename__ = "export_jobs"
    __table_args__ = (
        Index("ix_export_jobs_user_requested", "user_id", "requested_at"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid(),
        nullable=False,
    )
    subject_user_id: Mapped[UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )
    export_type: Mapped[ExportType] = mapped_column(
        Enum(ExportType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    format: Mapped[ExportFormat] = mapped_column(
        Enum(ExportFormat, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    filters: Mapped[dict[str, Any]] = mapped_column(
        JSONVariant,
        default=dict,
        nullable=False,
    )
    custom_fields: Mapped[list[str] | None] = mapped_column(
        JSONVariant,
        nullable=True,
    )
    status: Mapped[ExportStatus] = mapped_column(
        Enum(ExportStatus, values_callable=lambda x: [e.value for e in x]),
        default=ExportStatus.QUEUED,
        nullable=False,
        index=True,
    )
    requested_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    claimed_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    result_location: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    result_size: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )
    error_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    download_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    def is_expired(self, now: datetime) -> bool:
        """Whether the artifact's download window has closed."""
        return self.expires_at is not None and now >= self.expires_at
