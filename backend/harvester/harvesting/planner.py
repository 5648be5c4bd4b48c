"""Query planning policy for one category."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from harvester.harvesting.errors import LLMClientError, PlannerUnavailable, RepeatedQueryDetected
from harvester.harvesting.history import DEFAULT_MAX_ATTEMPTS
from harvester.harvesting.llm_client import QueryProposalClient
from harvester.harvesting.types import CategoryHistory, QueryAttempt

logger = logging.getLogger(__name__)

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")
_MULTISPACE_RE = re.compile(r"\s+")

# Appended in order when a query that returned messages produced no records.
NARROWING_FILTERS: tuple[str, ...] = (
    "subject:(membership OR member OR account)",
    'subject:(number OR "member number" OR "account number")',
    "subject:(welcome OR enrollment OR statement)",
    "subject:(status OR tier OR points OR rewards)",
)

Guidance = Literal["broad", "narrow", "refine"]


@dataclass(frozen=True, slots=True)
class PlannedQuery:
    query: str
    guidance: Guidance


@dataclass(frozen=True, slots=True)
class PlanDone:
    reason: str


PlanResult = PlannedQuery | PlanDone


class _RawQueryPlan(BaseModel):
    done: bool = False
    query: str | None = None


def normalize_query(query: str) -> str:
    return _MULTISPACE_RE.sub(" ", query).strip()


def _query_tokens(query: str) -> set[str]:
    return set(normalize_query(query).lower().split())


def is_strictly_narrower(candidate: str, previous: str) -> bool:
    """True when ``candidate`` keeps every term of ``previous`` and adds at least one."""

    candidate_tokens = _query_tokens(candidate)
    previous_tokens = _query_tokens(previous)
    return previous_tokens < candidate_tokens


def broad_query(category: str) -> str:
    """Sender-domain query for a category, e.g. ``Acme`` -> ``from:acme.com``."""

    slug = _NON_SLUG_RE.sub("", category.lower())
    return f"from:{slug}.com" if slug else normalize_query(category)


class QueryPlanner:
    """Proposes the next query for a category or decides it is done.

    Text generation is delegated to ``client`` when one is configured; the
    planner itself owns the attempt limit, the narrowing rule and the
    repetition check. Without a client it falls back to a deterministic
    domain-then-keyword ladder.
    """

    def __init__(
        self,
        client: QueryProposalClient | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._client = client
        self.max_attempts = max_attempts

    def plan(self, category: str, history: CategoryHistory | None) -> PlanResult:
        attempts = list(history.attempts) if history is not None else []
        if history is not None and history.status.is_terminal:
            return PlanDone(reason=f"category_{history.status.value}")
        if len(attempts) >= self.max_attempts:
            return PlanDone(reason="attempt_limit")

        guidance = self._guidance(attempts)
        try:
            query = self._propose(category, attempts, guidance)
        except PlannerUnavailable as exc:
            logger.warning("harvest.planner_unavailable category=%s error=%s", category, exc)
            return PlanDone(reason="planner_unavailable")
        if query is None:
            return PlanDone(reason="planner_done" if self._client is not None else "no_refinement_left")

        if guidance == "narrow" and not is_strictly_narrower(query, attempts[-1].query):
            narrowed = self._narrow(attempts)
            logger.info(
                "harvest.planner_forced_narrowing category=%s proposed=%r narrowed=%r",
                category,
                query,
                narrowed,
            )
            if narrowed is None:
                return PlanDone(reason="no_refinement_left")
            query = narrowed

        try:
            self._check_repetition(query, attempts)
        except RepeatedQueryDetected as exc:
            logger.warning("harvest.repeated_query category=%s error=%s", category, exc)
            return PlanDone(reason="repeated_query")
        return PlannedQuery(query=query, guidance=guidance)

    @staticmethod
    def _guidance(attempts: list[QueryAttempt]) -> Guidance:
        if not attempts:
            return "broad"
        latest = attempts[-1]
        if latest.messages_found > 0 and latest.records_found == 0:
            return "narrow"
        return "refine"

    def _propose(self, category: str, attempts: list[QueryAttempt], guidance: Guidance) -> str | None:
        if self._client is None:
            if guidance == "broad":
                return broad_query(category)
            if guidance == "narrow":
                return self._narrow(attempts)
            return None

        try:
            raw_payload = self._client.propose_query(self._summarize(category, attempts, guidance))
        except LLMClientError as exc:
            raise PlannerUnavailable(str(exc)) from exc
        try:
            proposal = _RawQueryPlan.model_validate(raw_payload)
        except ValidationError as exc:
            raise PlannerUnavailable(f"Query proposal failed validation: {exc}") from exc
        if proposal.done:
            return None
        query = normalize_query(proposal.query or "")
        if not query:
            raise PlannerUnavailable("Query proposal was empty")
        return query

    def _summarize(self, category: str, attempts: list[QueryAttempt], guidance: Guidance) -> dict[str, Any]:
        return {
            "category": category,
            "attempt_number": len(attempts) + 1,
            "max_attempts": self.max_attempts,
            "guidance": guidance,
            "suggested_broad_query": broad_query(category),
            "previous_attempts": [
                {
                    "query": attempt.query,
                    "messages_found": attempt.messages_found,
                    "messages_read": attempt.messages_read,
                    "records_found": attempt.records_found,
                }
                for attempt in attempts
            ],
        }

    @staticmethod
    def _narrow(attempts: list[QueryAttempt]) -> str | None:
        base = normalize_query(attempts[-1].query)
        tried = {normalize_query(attempt.query).lower() for attempt in attempts}
        for keyword_filter in NARROWING_FILTERS:
            if keyword_filter.lower() in base.lower():
                continue
            candidate = f"{base} {keyword_filter}"
            if candidate.lower() not in tried:
                return candidate
        return None

    @staticmethod
    def _check_repetition(query: str, attempts: list[QueryAttempt]) -> None:
        normalized = normalize_query(query).lower()
        for index, attempt in enumerate(attempts, start=1):
            if normalize_query(attempt.query).lower() == normalized:
                raise RepeatedQueryDetected(f"query {query!r} repeats attempt {index}")
