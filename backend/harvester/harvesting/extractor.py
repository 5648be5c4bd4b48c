"""LLM-backed record extractor with natural-key dedup."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from harvester.harvesting.errors import ExtractionUnavailable, LLMClientError
from harvester.harvesting.llm_client import RecordExtractionClient
from harvester.harvesting.types import (
    MessageContent,
    Record,
    make_record_id,
    natural_key,
    normalize_category,
    normalize_natural_value,
)

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 12000


class _RawRecord(BaseModel):
    category: str
    program_name: str | None = None
    identifier: str
    tier: str | None = None
    source_message_id: str
    confidence: float = 50.0


class _RawExtractionPayload(BaseModel):
    records: list[_RawRecord] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordExtractor:
    """Turns fetched messages into new records for one category.

    Model output is never trusted: every candidate is re-checked against the
    known natural keys and against earlier candidates in the same response, and
    a failed or malformed response yields no records instead of an error.
    """

    def __init__(
        self,
        client: RecordExtractionClient,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._clock = clock
        self.last_raw_output: dict[str, Any] | None = None
        self.last_error: str | None = None

    def extract(
        self,
        messages: list[MessageContent],
        category: str,
        known_keys: Iterable[tuple[str, str]] = (),
    ) -> list[Record]:
        """Return candidate records for ``category`` whose natural keys are not yet known."""

        self.last_raw_output = None
        self.last_error = None
        serialized = [self._serialize_message(message) for message in messages if message.body.strip()]
        if not serialized:
            return []

        known = set(known_keys)
        category_key = normalize_category(category)
        known_values = sorted(value for key_category, value in known if key_category == category_key)
        try:
            validated = self._request(serialized, category=category, known_values=known_values)
        except ExtractionUnavailable as exc:
            self.last_error = str(exc)
            logger.warning("harvest.extraction_unavailable category=%s messages=%d error=%s", category, len(messages), exc)
            return []

        messages_by_id = {message.id: message for message in messages}
        extracted_at = self._clock()
        records: list[Record] = []
        for candidate in validated.records:
            record = self._build_record(candidate, category, messages_by_id, extracted_at)
            if record is None:
                continue
            if record.key in known:
                logger.debug("harvest.duplicate_candidate_dropped category=%s record_id=%s", category, record.id)
                continue
            known.add(record.key)
            records.append(record)
        return records

    def _request(
        self,
        serialized: list[dict[str, Any]],
        *,
        category: str,
        known_values: list[str],
    ) -> _RawExtractionPayload:
        try:
            raw_payload = self._client.extract_records(serialized, category=category, known_values=known_values)
        except LLMClientError as exc:
            raise ExtractionUnavailable(str(exc)) from exc
        self.last_raw_output = raw_payload if isinstance(raw_payload, dict) else {}
        try:
            return _RawExtractionPayload.model_validate(raw_payload)
        except ValidationError as exc:
            raise ExtractionUnavailable(f"Extraction payload failed validation: {exc}") from exc

    @classmethod
    def _build_record(
        cls,
        candidate: _RawRecord,
        category: str,
        messages_by_id: dict[str, MessageContent],
        extracted_at: datetime,
    ) -> Record | None:
        if normalize_category(candidate.category) != normalize_category(category):
            logger.debug("harvest.off_category_candidate expected=%s got=%s", category, candidate.category)
            return None
        identifier = cls._clean_text(candidate.identifier)
        if not normalize_natural_value(identifier):
            return None
        source = messages_by_id.get(candidate.source_message_id.strip())
        if source is None:
            return None

        fields: dict[str, Any] = {"identifier": identifier}
        program_name = cls._clean_text(candidate.program_name)
        if program_name:
            fields["program_name"] = program_name
        tier = cls._clean_text(candidate.tier)
        if tier:
            fields["tier"] = tier

        _, value_key = natural_key(category, identifier)
        return Record(
            id=make_record_id(category, value_key),
            category=category,
            natural_value=value_key,
            fields=fields,
            source_message_id=source.id,
            source_date=source.date,
            source_subject=source.subject,
            confidence=cls._clamp_confidence(candidate.confidence),
            extracted_at=extracted_at,
        )

    @staticmethod
    def _serialize_message(message: MessageContent) -> dict[str, Any]:
        return {
            "id": message.id,
            "subject": message.subject,
            "from": message.sender,
            "date": message.date,
            "content": message.body[:MAX_BODY_CHARS],
        }

    @staticmethod
    def _clean_text(value: str | None) -> str:
        if not value:
            return ""
        return re.sub(r"\s+", " ", value).strip(" \t\r\n.,:;\"'")

    @staticmethod
    def _clamp_confidence(value: float) -> int:
        try:
            return max(0, min(100, round(float(value))))
        except (TypeError, ValueError, OverflowError):
            return 0
