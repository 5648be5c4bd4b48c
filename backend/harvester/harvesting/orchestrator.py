"""Step-wise search/extract loop over a list of categories."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from time import perf_counter

from harvester.harvesting.errors import RepeatedQueryDetected, StoreFetchError, StoreSearchError
from harvester.harvesting.extractor import RecordExtractor
from harvester.harvesting.history import ensure_history, is_pending, mark_exhausted, record_attempt
from harvester.harvesting.planner import PlanDone, QueryPlanner
from harvester.harvesting.search_cache import SearchCache
from harvester.harvesting.store_interface import MessageStore
from harvester.harvesting.types import (
    CategoryHistory,
    HarvestState,
    MessageContent,
    MessagePreview,
    OrchestratorConfig,
    QueryAttempt,
    Record,
    StepResult,
    normalize_category,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
RELEVANCE_KEYWORDS = frozenset(
    {
        "member",
        "membership",
        "account",
        "number",
        "loyalty",
        "rewards",
        "points",
        "status",
        "tier",
        "welcome",
        "statement",
        "elite",
        "enrollment",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_state(categories: list[str]) -> HarvestState:
    """Fresh run state for ``categories`` in priority order, case-insensitive duplicates removed."""

    ordered: list[str] = []
    seen: set[str] = set()
    for category in categories:
        cleaned = " ".join(category.split())
        key = normalize_category(cleaned)
        if cleaned and key not in seen:
            seen.add(key)
            ordered.append(cleaned)
    if not ordered:
        raise ValueError("At least one category is required")
    return HarvestState(categories=ordered)


def relevance_score(preview: MessagePreview, category: str) -> int:
    """Keyword relevance of a preview for a category, from subject and sender only."""

    subject_tokens = set(_TOKEN_RE.findall(preview.subject.lower()))
    sender_tokens = set(_TOKEN_RE.findall(preview.sender.lower()))
    category_tokens = set(_TOKEN_RE.findall(category.lower()))
    score = 2 * len(subject_tokens & RELEVANCE_KEYWORDS)
    score += len((subject_tokens | sender_tokens) & category_tokens)
    return score


class Orchestrator:
    """Drives one category attempt per ``run_step`` call.

    ``run_step`` never mutates the state it is given: it works on a deep copy
    and returns it, so a caller that persists the result atomically can retry a
    crashed step without double-appending history or records. Store auth
    failures propagate and leave the caller's state untouched.
    """

    def __init__(
        self,
        store: MessageStore,
        planner: QueryPlanner,
        extractor: RecordExtractor,
        config: OrchestratorConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._planner = planner
        self._extractor = extractor
        self.config = config or OrchestratorConfig()
        if planner.max_attempts != self.config.max_attempts_per_category:
            raise ValueError(
                f"planner max_attempts={planner.max_attempts} does not match "
                f"max_attempts_per_category={self.config.max_attempts_per_category}"
            )
        self._clock = clock

    def run_step(self, state: HarvestState) -> StepResult:
        total_started = perf_counter()
        working = copy.deepcopy(state)
        cache = SearchCache(
            self._store,
            working.cache,
            capacity=self.config.cache_capacity,
            search_history_limit=self.config.search_history_limit,
            freshness_seconds=self.config.search_freshness_seconds,
            clock=self._clock,
        )
        exhausted: list[str] = []

        while True:
            if self._budget_spent(working):
                for category in working.categories:
                    if is_pending(working, category):
                        self._exhaust(working, category, "attempt_budget")
                        exhausted.append(category)
                return self._finish(working, exhausted, reason="attempt_budget_exhausted")
            category = self._next_category(working)
            if category is None:
                return self._finish(working, exhausted, reason="all_categories_terminal")

            history = working.histories.get(category)
            plan = self._planner.plan(category, history)
            if isinstance(plan, PlanDone):
                self._exhaust(working, category, plan.reason)
                exhausted.append(category)
                continue

            started = perf_counter()
            try:
                previews = cache.search(plan.query)
                search_failed = False
            except StoreSearchError as exc:
                logger.warning("harvest.search_failed category=%s query=%r error=%s", category, plan.query, exc)
                previews = []
                search_failed = True
            search_ms = (perf_counter() - started) * 1000.0

            message_ids = _unique_ids(previews)
            try:
                self._check_result_repetition(history, message_ids)
            except RepeatedQueryDetected as exc:
                logger.warning("harvest.repeated_result_set category=%s query=%r error=%s", category, plan.query, exc)
                self._exhaust(working, category, "repeated_result_set")
                exhausted.append(category)
                continue

            started = perf_counter()
            selected = self.select_previews(previews, category, set(working.read_message_ids))
            contents = self._fetch_all(cache, selected, category)
            fetch_ms = (perf_counter() - started) * 1000.0

            started = perf_counter()
            candidates = self._extractor.extract(contents, category, self._known_keys(working)) if contents else []
            extract_ms = (perf_counter() - started) * 1000.0

            new_records = self.merge(working.records, candidates)
            now = self._clock()
            attempt = QueryAttempt(
                query=plan.query,
                attempted_at=now,
                messages_found=len(message_ids),
                messages_read=len(contents),
                records_found=len(new_records),
                message_ids=tuple(message_ids),
            )
            working.records = working.records + new_records
            for content in contents:
                if content.id not in working.read_message_ids:
                    working.read_message_ids.append(content.id)
            status = record_attempt(
                ensure_history(working, category),
                attempt,
                max_attempts=self.config.max_attempts_per_category,
            )
            working.steps_completed += 1
            working.last_step_at = now

            logger.info(
                (
                    "harvest.step_timing category=%s query=%r search_failed=%s messages_found=%d "
                    "messages_read=%d records_found=%d status=%s search_ms=%.2f fetch_ms=%.2f "
                    "extract_ms=%.2f total_ms=%.2f store_searches=%d store_fetches=%d"
                ),
                category,
                plan.query,
                search_failed,
                attempt.messages_found,
                attempt.messages_read,
                attempt.records_found,
                status.value,
                search_ms,
                fetch_ms,
                extract_ms,
                (perf_counter() - total_started) * 1000.0,
                cache.store_searches,
                cache.store_fetches,
            )
            return StepResult(
                state=working,
                done=self._next_category(working) is None or self._budget_spent(working),
                category=category,
                attempt=attempt,
                new_records=new_records,
                exhausted_categories=exhausted,
                reason=f"category_{status.value}",
            )

    def select_previews(
        self,
        previews: list[MessagePreview],
        category: str,
        already_read: set[str],
    ) -> list[MessagePreview]:
        """Pick at most ``fetch_batch_size`` unread previews, most relevant first."""

        seen: set[str] = set()
        unread: list[tuple[int, MessagePreview]] = []
        for position, preview in enumerate(previews):
            if preview.id in already_read or preview.id in seen:
                continue
            seen.add(preview.id)
            unread.append((position, preview))
        ranked = sorted(unread, key=lambda item: (-relevance_score(item[1], category), item[0]))
        return [preview for _, preview in ranked[: self.config.fetch_batch_size]]

    @staticmethod
    def merge(known: list[Record], candidates: list[Record]) -> list[Record]:
        """Return candidates whose natural key is new, keeping the first of any duplicates."""

        seen = {record.key for record in known}
        accepted: list[Record] = []
        for candidate in candidates:
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            accepted.append(candidate)
        return accepted

    def _budget_spent(self, state: HarvestState) -> bool:
        return state.total_attempts >= self.config.attempt_budget(len(state.categories))

    @staticmethod
    def _next_category(state: HarvestState) -> str | None:
        for category in state.categories:
            if is_pending(state, category):
                return category
        return None

    @staticmethod
    def _known_keys(state: HarvestState) -> set[tuple[str, str]]:
        return {record.key for record in state.records}

    @staticmethod
    def _check_result_repetition(history: CategoryHistory | None, message_ids: list[str]) -> None:
        if history is None or not message_ids:
            return
        current = set(message_ids)
        for index, attempt in enumerate(history.attempts, start=1):
            if set(attempt.message_ids) == current:
                raise RepeatedQueryDetected(f"result set matches attempt {index} ({len(current)} messages)")

    @staticmethod
    def _fetch_all(cache: SearchCache, selected: list[MessagePreview], category: str) -> list[MessageContent]:
        contents: list[MessageContent] = []
        for preview in selected:
            try:
                contents.append(cache.fetch(preview.id))
            except StoreFetchError as exc:
                logger.warning("harvest.fetch_failed category=%s message_id=%s error=%s", category, preview.id, exc)
        return contents

    def _exhaust(self, state: HarvestState, category: str, reason: str) -> None:
        history = ensure_history(state, category)
        mark_exhausted(history)
        logger.info(
            "harvest.category_exhausted category=%s reason=%s attempts=%d",
            category,
            reason,
            len(history.attempts),
        )

    def _finish(self, state: HarvestState, exhausted: list[str], *, reason: str) -> StepResult:
        if exhausted:
            state.steps_completed += 1
            state.last_step_at = self._clock()
        return StepResult(state=state, done=True, exhausted_categories=exhausted, reason=reason)


def _unique_ids(previews: list[MessagePreview]) -> list[str]:
    ids: list[str] = []
    for preview in previews:
        if preview.id not in ids:
            ids.append(preview.id)
    return ids
