"""Typed harvesting state independent of persistence."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from harvester.config import Settings

_KEY_NOISE_RE = re.compile(r"[\s\-_.]+")


class CategoryStatus(str, Enum):
    """Lifecycle of a category within one run. Unsearched categories have no history."""

    SEARCHING = "searching"
    FOUND = "found"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self is not CategoryStatus.SEARCHING


@dataclass(frozen=True, slots=True)
class MessagePreview:
    """Search hit without body content."""

    id: str
    subject: str = ""
    sender: str = ""
    date: str = ""


@dataclass(frozen=True, slots=True)
class MessageContent:
    """Fully fetched message."""

    id: str
    subject: str = ""
    sender: str = ""
    date: str = ""
    body: str = ""


def normalize_natural_value(value: str) -> str:
    """Canonical form of an identifying value, e.g. ``"1234 5678-9"`` -> ``"123456789"``."""

    return _KEY_NOISE_RE.sub("", value or "").upper()


def normalize_category(value: str) -> str:
    return " ".join((value or "").split()).casefold()


def natural_key(category: str, natural_value: str) -> tuple[str, str]:
    """Dedup key for a record: (category, identifying value), both normalized."""

    return normalize_category(category), normalize_natural_value(natural_value)


def make_record_id(category: str, natural_value: str) -> str:
    """Stable record id derived only from the natural key."""

    category_key, value_key = natural_key(category, natural_value)
    digest = hashlib.sha256(f"{category_key}\x1f{value_key}".encode("utf-8")).hexdigest()
    return f"rec_{digest[:24]}"


@dataclass(frozen=True, slots=True)
class Record:
    """One extracted structured fact."""

    id: str
    category: str
    natural_value: str
    fields: dict[str, Any]
    source_message_id: str
    source_date: str
    source_subject: str
    confidence: int
    extracted_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return natural_key(self.category, self.natural_value)


@dataclass(frozen=True, slots=True)
class QueryAttempt:
    """One search performed for one category."""

    query: str
    attempted_at: datetime
    messages_found: int
    messages_read: int
    records_found: int
    message_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class CategoryHistory:
    """Per-category search log and status."""

    category: str
    attempts: list[QueryAttempt] = field(default_factory=list)
    status: CategoryStatus = CategoryStatus.SEARCHING

    @property
    def latest_attempt(self) -> QueryAttempt | None:
        return self.attempts[-1] if self.attempts else None


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One cached message body."""

    message_id: str
    content: MessageContent
    cached_at: datetime


@dataclass(frozen=True, slots=True)
class SearchRecord:
    """One remembered store search."""

    query: str
    timestamp: datetime
    previews: tuple[MessagePreview, ...] = ()

    @property
    def message_ids(self) -> tuple[str, ...]:
        return tuple(preview.id for preview in self.previews)


@dataclass(slots=True)
class CacheState:
    """Persisted portion of the search cache. ``entries`` keeps insertion order."""

    entries: dict[str, CacheEntry] = field(default_factory=dict)
    search_history: list[SearchRecord] = field(default_factory=list)


@dataclass(slots=True)
class HarvestState:
    """Complete run state handed to and returned from ``Orchestrator.run_step``."""

    categories: list[str]
    records: list[Record] = field(default_factory=list)
    histories: dict[str, CategoryHistory] = field(default_factory=dict)
    cache: CacheState = field(default_factory=CacheState)
    read_message_ids: list[str] = field(default_factory=list)
    steps_completed: int = 0
    last_step_at: datetime | None = None

    def status_of(self, category: str) -> CategoryStatus | None:
        history = self.histories.get(category)
        return history.status if history is not None else None

    @property
    def total_attempts(self) -> int:
        return sum(len(history.attempts) for history in self.histories.values())


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Explicit limits for one orchestrator instance."""

    max_attempts_per_category: int = 5
    cache_capacity: int = 200
    fetch_batch_size: int = 5
    search_history_limit: int = 50
    search_freshness_seconds: float | None = None
    max_total_attempts: int | None = None

    def __post_init__(self) -> None:
        for name in ("max_attempts_per_category", "cache_capacity", "fetch_batch_size", "search_history_limit"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.max_total_attempts is not None and self.max_total_attempts < 1:
            raise ValueError("max_total_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorConfig:
        return cls(
            max_attempts_per_category=settings.max_attempts_per_category,
            cache_capacity=settings.cache_capacity,
            fetch_batch_size=settings.fetch_batch_size,
            search_history_limit=settings.search_history_limit,
            search_freshness_seconds=settings.search_freshness_seconds,
            max_total_attempts=settings.max_total_attempts,
        )

    def attempt_budget(self, category_count: int) -> int:
        if self.max_total_attempts is not None:
            return self.max_total_attempts
        return max(category_count, 1) * self.max_attempts_per_category


@dataclass(slots=True)
class StepResult:
    """Outcome of one ``run_step`` call."""

    state: HarvestState
    done: bool
    category: str | None = None
    attempt: QueryAttempt | None = None
    new_records: list[Record] = field(default_factory=list)
    exhausted_categories: list[str] = field(default_factory=list)
    reason: str | None = None
