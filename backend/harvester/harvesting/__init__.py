"""Search, fetch, extract and merge loop."""

from harvester.harvesting.errors import (
    ExtractionUnavailable,
    HarvestError,
    LLMClientError,
    PlannerUnavailable,
    RepeatedQueryDetected,
    StaleRunStateError,
    StoreAuthError,
    StoreError,
    StoreFetchError,
    StoreSearchError,
)
from harvester.harvesting.orchestrator import Orchestrator, new_state
from harvester.harvesting.types import CategoryStatus, HarvestState, OrchestratorConfig, StepResult

__all__ = [
    "CategoryStatus",
    "ExtractionUnavailable",
    "HarvestError",
    "HarvestState",
    "LLMClientError",
    "Orchestrator",
    "OrchestratorConfig",
    "PlannerUnavailable",
    "RepeatedQueryDetected",
    "StaleRunStateError",
    "StepResult",
    "StoreAuthError",
    "StoreError",
    "StoreFetchError",
    "StoreSearchError",
    "new_state",
]
