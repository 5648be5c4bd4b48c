"""Conversion between in-memory harvest state and its JSON document."""

from __future__ import annotations

from typing import Any

from harvester.harvesting.types import (
    CacheEntry,
    CacheState,
    CategoryHistory,
    HarvestState,
    MessageContent,
    MessagePreview,
    QueryAttempt,
    Record,
    SearchRecord,
)
from harvester.schemas.run_state import (
    CacheDocument,
    CacheEntryDocument,
    CategoryHistoryDocument,
    HarvestStateDocument,
    MessageContentDocument,
    MessagePreviewDocument,
    QueryAttemptDocument,
    RecordDocument,
    SearchRecordDocument,
)


def dump_state(state: HarvestState, *, include_cache: bool = True) -> dict[str, Any]:
    """Serialize ``state`` to a JSON-compatible dict."""

    document = HarvestStateDocument(
        categories=list(state.categories),
        records=[_record_document(record) for record in state.records],
        histories=[
            CategoryHistoryDocument(
                category=history.category,
                status=history.status,
                attempts=[
                    QueryAttemptDocument(
                        query=attempt.query,
                        attempted_at=attempt.attempted_at,
                        messages_found=attempt.messages_found,
                        messages_read=attempt.messages_read,
                        records_found=attempt.records_found,
                        message_ids=list(attempt.message_ids),
                    )
                    for attempt in history.attempts
                ],
            )
            for history in state.histories.values()
        ],
        cache=_cache_document(state.cache) if include_cache else CacheDocument(),
        read_message_ids=list(state.read_message_ids),
        steps_completed=state.steps_completed,
        last_step_at=state.last_step_at,
    )
    return document.model_dump(mode="json")


def load_state(payload: dict[str, Any]) -> HarvestState:
    """Rebuild state from a stored document.

    A missing cache section loads empty. Documents written under another
    ``version`` fail validation.
    """

    document = HarvestStateDocument.model_validate(payload)
    return HarvestState(
        categories=list(document.categories),
        records=[
            Record(
                id=item.id,
                category=item.category,
                natural_value=item.natural_value,
                fields=dict(item.fields),
                source_message_id=item.source_message_id,
                source_date=item.source_date,
                source_subject=item.source_subject,
                confidence=item.confidence,
                extracted_at=item.extracted_at,
            )
            for item in document.records
        ],
        histories={
            item.category: CategoryHistory(
                category=item.category,
                status=item.status,
                attempts=[
                    QueryAttempt(
                        query=attempt.query,
                        attempted_at=attempt.attempted_at,
                        messages_found=attempt.messages_found,
                        messages_read=attempt.messages_read,
                        records_found=attempt.records_found,
                        message_ids=tuple(attempt.message_ids),
                    )
                    for attempt in item.attempts
                ],
            )
            for item in document.histories
        },
        cache=CacheState(
            entries={
                entry.message_id: CacheEntry(
                    message_id=entry.message_id,
                    content=MessageContent(**entry.content.model_dump()),
                    cached_at=entry.cached_at,
                )
                for entry in document.cache.entries
            },
            search_history=[
                SearchRecord(
                    query=item.query,
                    timestamp=item.timestamp,
                    previews=tuple(MessagePreview(**preview.model_dump()) for preview in item.previews),
                )
                for item in document.cache.search_history
            ],
        ),
        read_message_ids=list(document.read_message_ids),
        steps_completed=document.steps_completed,
        last_step_at=document.last_step_at,
    )


def _record_document(record: Record) -> RecordDocument:
    return RecordDocument(
        id=record.id,
        category=record.category,
        natural_value=record.natural_value,
        fields=dict(record.fields),
        source_message_id=record.source_message_id,
        source_date=record.source_date,
        source_subject=record.source_subject,
        confidence=record.confidence,
        extracted_at=record.extracted_at,
    )


def _cache_document(cache: CacheState) -> CacheDocument:
    return CacheDocument(
        entries=[
            CacheEntryDocument(
                message_id=entry.message_id,
                content=MessageContentDocument(
                    id=entry.content.id,
                    subject=entry.content.subject,
                    sender=entry.content.sender,
                    date=entry.content.date,
                    body=entry.content.body,
                ),
                cached_at=entry.cached_at,
            )
            for entry in cache.entries.values()
        ],
        search_history=[
            SearchRecordDocument(
                query=item.query,
                timestamp=item.timestamp,
                previews=[
                    MessagePreviewDocument(id=p.id, subject=p.subject, sender=p.sender, date=p.date)
                    for p in item.previews
                ],
            )
            for item in cache.search_history
        ],
    )
