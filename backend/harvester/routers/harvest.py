"""Harvest run routes."""

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.orm import Session

from harvester.db.dependencies import get_db
from harvester.harvesting.errors import StaleRunStateError, StoreAuthError
from harvester.schemas.common import ApiResponse
from harvester.schemas.harvest import HarvestRunCreate, HarvestRunProgressRead, HarvestStepRead, RecordGroupRead
from harvester.services.harvest_runs import (
    HarvestConfigurationError,
    HarvestRunNotFoundError,
    OrchestratorFactory,
    advance_run,
    build_progress,
    build_step_read,
    create_run,
    get_default_orchestrator,
    get_run,
    group_records,
)
from harvester.services.run_state import load_state


router = APIRouter(prefix="/harvest-runs")


def get_orchestrator_factory() -> OrchestratorFactory:
    """Request dependency; the orchestrator is built only once the run is known to exist."""

    return get_default_orchestrator


@router.post("", response_model=ApiResponse[HarvestRunProgressRead], status_code=201)
def create_harvest_run(
    payload: HarvestRunCreate,
    db: Session = Depends(get_db),
) -> ApiResponse[HarvestRunProgressRead]:
    """Create a run over the given (or configured) categories."""

    try:
        run = create_run(db, payload.name, payload.categories)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ApiResponse(data=build_progress(run))


@router.get("/{run_id}", response_model=ApiResponse[HarvestRunProgressRead])
def get_harvest_run(
    run_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> ApiResponse[HarvestRunProgressRead]:
    """Return progress for a run."""

    try:
        run = get_run(db, run_id)
    except HarvestRunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(data=build_progress(run))


@router.post("/{run_id}/step", response_model=ApiResponse[HarvestStepRead])
def step_harvest_run(
    run_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> ApiResponse[HarvestStepRead]:
    """Advance a run by one search/extract step."""

    try:
        get_run(db, run_id)
        orchestrator = orchestrator_factory()
        run, result = advance_run(db, run_id, orchestrator)
    except HarvestRunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except HarvestConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except StoreAuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except StaleRunStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ApiResponse(data=build_step_read(run, result))


@router.get("/{run_id}/records", response_model=ApiResponse[list[RecordGroupRead]])
def get_harvest_records(
    run_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
) -> ApiResponse[list[RecordGroupRead]]:
    """Return records grouped by category."""

    try:
        run = get_run(db, run_id)
    except HarvestRunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ApiResponse(data=group_records(load_state(run.state_json)))
