"""
Pydantic schemas for the batch and call API.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calldispatch.calls.enums import BatchStatus, CallStatus


class CallCreate(BaseModel):
    """One call row of a new batch."""

    phone_number: str = Field(..., min_length=5, max_length=32, description="E.164 phone number")
    driver_name: str | None = Field(None, max_length=200)
    reg_no: str | None = Field(None, max_length=64, description="Vehicle registration number")
    message: str | None = Field(None, max_length=5000, description="Text handed to the voice agent")

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        """Strip formatting and require digits with an optional leading +."""
        cleaned = "".join(ch for ch in v.strip() if ch not in " -()")
        digits = cleaned[1:] if cleaned.startswith("+") else cleaned
        if not digits.isdigit():
            raise ValueError("phone_number must contain only digits and an optional leading +")
        return cleaned


class BatchCreate(BaseModel):
    """Schema for creating a batch with its calls."""

    name: str = Field(default="", max_length=200, description="Batch display name")
    calls: list[CallCreate] = Field(..., min_length=1, max_length=5000)


class CallResponse(BaseModel):
    """Schema for a call row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    batch_id: UUID
    position: int
    external_call_id: str | None
    status: CallStatus
    phone_number: str
    driver_name: str | None
    reg_no: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    live_transcript: str | None
    final_transcript: str | None
    summary: str | None
    recording_url: str | None
    duration_seconds: int | None
    error_message: str | None


class BatchResponse(BaseModel):
    """Schema for a batch with its calls."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: BatchStatus
    total_calls: int
    successful_calls: int
    failed_calls: int
    created_at: datetime
    completed_at: datetime | None
    stopped_at: datetime | None
    calls: list[CallResponse] = Field(default_factory=list)


class DispatchAccepted(BaseModel):
    """Response for an accepted dispatch request."""

    batch_id: UUID
    status: str = "dispatching"


class StopResponse(BaseModel):
    batch_id: UUID
    canceled_calls: int
    provider_cancels: int
    batch_completed: bool


class CancelCallResponse(BaseModel):
    call_id: UUID
    status: CallStatus
    skipped: bool
    reason: str | None = None


class TranscriptResponse(BaseModel):
    """Schema for a manual transcript fetch."""

    call_id: UUID
    available: bool
    status: CallStatus
    transcript: str | None = None
    recording_url: str | None = None
    duration_seconds: int | None = None
    summary: str | None = None
    source: str | None = None
    message: str | None = None
