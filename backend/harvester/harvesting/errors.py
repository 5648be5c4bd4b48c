"""Error taxonomy for the harvesting loop."""


class HarvestError(RuntimeError):
    """Base class for harvesting failures."""


class StoreError(HarvestError):
    """Raised when the message store cannot serve a request."""


class StoreAuthError(StoreError):
    """Raised when the message store rejects credentials. Blocks the run until resolved externally."""


class StoreFetchError(StoreError):
    """Raised when one or more message bodies could not be fetched."""

    def __init__(self, message: str, message_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.message_ids = list(message_ids or [])


class StoreSearchError(StoreError):
    """Raised when a store search fails for reasons other than credentials."""


class LLMClientError(HarvestError):
    """Raised when the language model call fails or returns a non-JSON response."""


class PlannerUnavailable(HarvestError):
    """Raised when query planning could not produce a usable proposal."""


class ExtractionUnavailable(HarvestError):
    """Raised when record extraction could not produce a usable response."""


class RepeatedQueryDetected(HarvestError):
    """Raised when a proposed query repeats an earlier attempt for the same category."""


class StaleRunStateError(HarvestError):
    """Raised when a persisted run changed between load and save."""
