"""Message store interface for pluggable search backends."""

from typing import Protocol

from harvester.harvesting.types import MessageContent, MessagePreview


class MessageStore(Protocol):
    """Searchable message store.

    Implementations raise ``StoreAuthError`` for rejected credentials,
    ``StoreSearchError`` for failed searches and ``StoreFetchError`` when any
    requested id cannot be returned. ``fetch`` never returns a partial result.
    """

    def search(self, query: str) -> list[MessagePreview]:
        """Return a bounded list of previews matching ``query``."""

    def fetch(self, ids: list[str]) -> list[MessageContent]:
        """Return full content for every requested id."""
