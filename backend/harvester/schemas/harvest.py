"""Harvest run request/response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HarvestRunCreate(BaseModel):
    """Create a run over an ordered category list."""

    name: str = Field(min_length=1, max_length=255)
    categories: list[str] | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class QueryAttemptRead(BaseModel):
    """Serialized query attempt."""

    model_config = ConfigDict(from_attributes=True)

    query: str
    attempted_at: datetime
    messages_found: int
    messages_read: int
    records_found: int
    message_ids: list[str]


class CategoryProgressRead(BaseModel):
    """Progress of one category."""

    category: str
    status: str
    attempts_used: int
    latest_attempt: QueryAttemptRead | None = None


class RecordRead(BaseModel):
    """Serialized extracted record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    category: str
    natural_value: str
    fields: dict[str, Any]
    source_message_id: str
    source_date: str
    source_subject: str
    confidence: int
    extracted_at: datetime


class RecordGroupRead(BaseModel):
    """Records for one category."""

    category: str
    records: list[RecordRead]


class HarvestRunProgressRead(BaseModel):
    """Caller-facing progress snapshot."""

    run_id: int
    name: str
    status: str
    done: bool
    total_records: int
    messages_read: int
    steps_completed: int
    last_step_at: datetime | None = None
    categories: list[CategoryProgressRead]


class HarvestStepRead(BaseModel):
    """Outcome of one advance call."""

    category: str | None = None
    reason: str | None = None
    attempt: QueryAttemptRead | None = None
    new_records: list[RecordRead] = Field(default_factory=list)
    exhausted_categories: list[str] = Field(default_factory=list)
    progress: HarvestRunProgressRead
