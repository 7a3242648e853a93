"""
SQLAlchemy models for batches and calls.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calldispatch.calls.enums import BatchStatus, CallStatus
from calldispatch.shared.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class Batch(Base):
    """A group of calls submitted and tracked together."""

    __tablename__ = "batches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    total_calls: Mapped[int] = mapped_column(Integer, nullable=False)
    successful_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(
            BatchStatus,
            name="batch_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BatchStatus.CREATED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    calls: Mapped[list["Call"]] = relationship(
        "Call",
        back_populates="batch",
        order_by="Call.position",
    )

    def to_dict(self) -> dict[str, Any]:
        """Row snapshot used by the change feed."""
        return {
            "id": str(self.id),
            "name": self.name,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "status": self.status.value,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "stopped_at": self.stopped_at,
        }


class Call(Base):
    """One outbound call attempt."""

    __tablename__ = "calls"
    __table_args__ = (
        Index("ix_calls_batch_status", "batch_id", "status"),
        Index("ix_calls_reg_no_status", "reg_no", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    batch_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_call_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    status: Mapped[CallStatus] = mapped_column(
        SQLEnum(
            CallStatus,
            name="call_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CallStatus.QUEUED,
    )

    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    driver_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    reg_no: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    live_transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[Batch] = relationship("Batch", back_populates="calls")

    def to_dict(self) -> dict[str, Any]:
        """Row snapshot used by the change feed."""
        return {
            "id": str(self.id),
            "batch_id": str(self.batch_id),
            "position": self.position,
            "external_call_id": self.external_call_id,
            "status": self.status.value,
            "phone_number": self.phone_number,
            "driver_name": self.driver_name,
            "reg_no": self.reg_no,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "live_transcript": self.live_transcript,
            "final_transcript": self.final_transcript,
            "summary": self.summary,
            "recording_url": self.recording_url,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
        }
