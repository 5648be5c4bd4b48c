"""Persisted run-state document schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from harvester.harvesting.types import CategoryStatus

RUN_STATE_VERSION = 1


class MessagePreviewDocument(BaseModel):
    id: str
    subject: str = ""
    sender: str = ""
    date: str = ""


class MessageContentDocument(MessagePreviewDocument):
    body: str = ""


class RecordDocument(BaseModel):
    id: str
    category: str
    natural_value: str
    fields: dict[str, Any] = Field(default_factory=dict)
    source_message_id: str
    source_date: str = ""
    source_subject: str = ""
    confidence: int = 0
    extracted_at: datetime


class QueryAttemptDocument(BaseModel):
    query: str
    attempted_at: datetime
    messages_found: int
    messages_read: int
    records_found: int
    message_ids: list[str] = Field(default_factory=list)


class CategoryHistoryDocument(BaseModel):
    category: str
    attempts: list[QueryAttemptDocument] = Field(default_factory=list)
    status: CategoryStatus = CategoryStatus.SEARCHING


class CacheEntryDocument(BaseModel):
    message_id: str
    content: MessageContentDocument
    cached_at: datetime


class SearchRecordDocument(BaseModel):
    query: str
    timestamp: datetime
    previews: list[MessagePreviewDocument] = Field(default_factory=list)


class CacheDocument(BaseModel):
    """Cache entries are stored as a list to keep FIFO order explicit."""

    entries: list[CacheEntryDocument] = Field(default_factory=list)
    search_history: list[SearchRecordDocument] = Field(default_factory=list)


class HarvestStateDocument(BaseModel):
    """Whole run state as stored in ``harvest_runs.state_json``."""

    version: int = RUN_STATE_VERSION
    categories: list[str]
    records: list[RecordDocument] = Field(default_factory=list)
    histories: list[CategoryHistoryDocument] = Field(default_factory=list)
    cache: CacheDocument = Field(default_factory=CacheDocument)
    read_message_ids: list[str] = Field(default_factory=list)
    steps_completed: int = 0
    last_step_at: datetime | None = None

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: int) -> int:
        if value != RUN_STATE_VERSION:
            raise ValueError(f"Unsupported run state version {value}; expected {RUN_STATE_VERSION}")
        return value
