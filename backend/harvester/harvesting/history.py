"""Per-category search history state machine.

``searching`` is the only non-terminal status. A category moves to ``found`` as
soon as one attempt contributes a new record, even if more records might exist,
and to ``exhausted`` once the attempt limit is reached without any. Neither
terminal status ever reverts within a run.
"""

from __future__ import annotations

from harvester.harvesting.types import CategoryHistory, CategoryStatus, HarvestState, QueryAttempt

DEFAULT_MAX_ATTEMPTS = 5


class InvalidTransitionError(ValueError):
    """Raised when a terminal category would be moved again."""


def ensure_history(state: HarvestState, category: str) -> CategoryHistory:
    """Return the history for ``category``, creating it in ``searching`` on first use."""

    history = state.histories.get(category)
    if history is None:
        history = CategoryHistory(category=category)
        state.histories[category] = history
    return history


def next_status(history: CategoryHistory, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> CategoryStatus:
    """Status implied by the latest attempt."""

    if history.status.is_terminal:
        return history.status
    latest = history.latest_attempt
    if latest is not None and latest.records_found > 0:
        return CategoryStatus.FOUND
    if len(history.attempts) >= max_attempts:
        return CategoryStatus.EXHAUSTED
    return CategoryStatus.SEARCHING


def record_attempt(
    history: CategoryHistory,
    attempt: QueryAttempt,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> CategoryStatus:
    """Append ``attempt`` and apply the transition rule."""

    if history.status.is_terminal:
        raise InvalidTransitionError(
            f"Category {history.category!r} is {history.status.value}; no further attempts are accepted"
        )
    history.attempts.append(attempt)
    history.status = next_status(history, max_attempts)
    return history.status


def mark_exhausted(history: CategoryHistory) -> CategoryStatus:
    """Force a searching category to ``exhausted``. Terminal categories are left unchanged."""

    if history.status is CategoryStatus.SEARCHING:
        history.status = CategoryStatus.EXHAUSTED
    return history.status


def is_pending(state: HarvestState, category: str) -> bool:
    """True when ``category`` is unsearched or still searching."""

    status = state.status_of(category)
    return status is None or status is CategoryStatus.SEARCHING
