"""Harvest run lifecycle: create, advance one step, report progress."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from time import perf_counter

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from harvester.config import get_settings
from harvester.harvesting.errors import HarvestError, StaleRunStateError, StoreAuthError
from harvester.harvesting.extractor import RecordExtractor
from harvester.harvesting.gmail_store import GmailMessageStore
from harvester.harvesting.history import is_pending
from harvester.harvesting.llm_client import OpenAIChatCompletionsClient
from harvester.harvesting.orchestrator import Orchestrator, new_state
from harvester.harvesting.planner import QueryPlanner
from harvester.harvesting.types import HarvestState, OrchestratorConfig, StepResult
from harvester.models.harvest_run import HarvestRun
from harvester.schemas.harvest import (
    CategoryProgressRead,
    HarvestRunProgressRead,
    HarvestStepRead,
    QueryAttemptRead,
    RecordGroupRead,
    RecordRead,
)
from harvester.services.run_state import dump_state, load_state

logger = logging.getLogger(__name__)

RUN_STATUS_RUNNING = "running"
RUN_STATUS_DONE = "done"

OrchestratorFactory = Callable[[], Orchestrator]


class HarvestConfigurationError(HarvestError):
    """Raised when the default store or language model is not configured."""


class HarvestRunNotFoundError(HarvestError):
    """Raised when a run id does not exist."""


def get_default_orchestrator() -> Orchestrator:
    """Build an orchestrator over Gmail and OpenAI from settings."""

    settings = get_settings()
    if not settings.openai_api_key:
        raise HarvestConfigurationError(
            "OPENAI_API_KEY is not configured. Set it in backend/.env before running a harvest."
        )
    if not settings.gmail_access_token:
        raise HarvestConfigurationError(
            "GMAIL_ACCESS_TOKEN is not configured. Set it in backend/.env before running a harvest."
        )
    config = OrchestratorConfig.from_settings(settings)
    llm_client = OpenAIChatCompletionsClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.openai_timeout_seconds,
    )
    store = GmailMessageStore(
        access_token=settings.gmail_access_token,
        base_url=settings.gmail_base_url,
        search_limit=settings.gmail_search_limit,
        timeout_seconds=settings.gmail_timeout_seconds,
    )
    return Orchestrator(
        store,
        QueryPlanner(llm_client, max_attempts=config.max_attempts_per_category),
        RecordExtractor(llm_client),
        config,
    )


def create_run(db: Session, name: str, categories: list[str] | None = None) -> HarvestRun:
    """Persist a fresh run; categories default to the configured list."""

    cleaned_name = name.strip()
    if not cleaned_name:
        raise ValueError("Run name must not be blank")
    state = new_state(categories or list(get_settings().default_categories))
    run = HarvestRun(
        name=cleaned_name,
        status=RUN_STATUS_RUNNING,
        steps_completed=state.steps_completed,
        state_json=dump_state(state),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    logger.info("harvest.run_created run_id=%s categories=%s", run.id, ",".join(state.categories))
    return run


def get_run(db: Session, run_id: int) -> HarvestRun:
    run = db.scalar(select(HarvestRun).where(HarvestRun.id == run_id))
    if run is None:
        raise HarvestRunNotFoundError(f"Harvest run {run_id} does not exist")
    return run


def advance_run(
    db: Session,
    run_id: int,
    orchestrator: Orchestrator | None = None,
) -> tuple[HarvestRun, StepResult]:
    """Run exactly one step and persist the new state in a single conditional update."""

    total_started = perf_counter()
    run = get_run(db, run_id)
    previous_steps = run.steps_completed
    state = load_state(run.state_json)
    active_orchestrator = orchestrator or get_default_orchestrator()

    try:
        result = active_orchestrator.run_step(state)
    except StoreAuthError:
        logger.warning("harvest.run_blocked run_id=%s reason=store_auth", run_id)
        raise

    status = RUN_STATUS_DONE if result.done else RUN_STATUS_RUNNING
    if result.state.steps_completed == previous_steps and status == run.status:
        return run, result

    outcome = db.execute(
        update(HarvestRun)
        .where(HarvestRun.id == run_id, HarvestRun.steps_completed == previous_steps)
        .values(
            state_json=dump_state(result.state),
            steps_completed=result.state.steps_completed,
            status=status,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.rollback()
        raise StaleRunStateError(f"Harvest run {run_id} was advanced concurrently; reload and retry")
    db.commit()
    db.refresh(run)
    logger.info(
        "harvest.run_advanced run_id=%s steps_completed=%d category=%s reason=%s new_records=%d status=%s total_ms=%.2f",
        run_id,
        run.steps_completed,
        result.category,
        result.reason,
        len(result.new_records),
        run.status,
        (perf_counter() - total_started) * 1000.0,
    )
    return run, result


def build_progress(run: HarvestRun, state: HarvestState | None = None) -> HarvestRunProgressRead:
    """Progress snapshot: totals, per-category status and latest attempt."""

    state = state or load_state(run.state_json)
    categories: list[CategoryProgressRead] = []
    for category in state.categories:
        history = state.histories.get(category)
        latest = history.latest_attempt if history is not None else None
        categories.append(
            CategoryProgressRead(
                category=category,
                status=history.status.value if history is not None else "unsearched",
                attempts_used=len(history.attempts) if history is not None else 0,
                latest_attempt=QueryAttemptRead.model_validate(latest) if latest is not None else None,
            )
        )
    pending = any(is_pending(state, category) for category in state.categories)
    return HarvestRunProgressRead(
        run_id=run.id,
        name=run.name,
        status=run.status,
        done=run.status == RUN_STATUS_DONE or not pending,
        total_records=len(state.records),
        messages_read=len(state.read_message_ids),
        steps_completed=state.steps_completed,
        last_step_at=state.last_step_at,
        categories=categories,
    )


def build_step_read(run: HarvestRun, result: StepResult) -> HarvestStepRead:
    return HarvestStepRead(
        category=result.category,
        reason=result.reason,
        attempt=QueryAttemptRead.model_validate(result.attempt) if result.attempt is not None else None,
        new_records=[RecordRead.model_validate(record) for record in result.new_records],
        exhausted_categories=list(result.exhausted_categories),
        progress=build_progress(run, result.state),
    )


def group_records(state: HarvestState) -> list[RecordGroupRead]:
    """Records grouped by category name, each group in extraction order."""

    groups: dict[str, list[RecordRead]] = {}
    for record in state.records:
        groups.setdefault(record.category, []).append(RecordRead.model_validate(record))
    return [RecordGroupRead(category=category, records=groups[category]) for category in sorted(groups)]
