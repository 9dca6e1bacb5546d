"""Result types and the protocol shared by embedding services."""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import numpy as np

from chunking.models import Chunk

STATUS_SUCCESS = 'success'
STATUS_ERROR = 'error'
STATUS_ACCEPTED = 'accepted'


@dataclass
class EmbedItemResult:
    """Embedding outcome for one chunk."""

    chunk_id: str
    vector: Optional[np.ndarray] = None
    status: str = STATUS_SUCCESS
    error: Optional[str] = None
    model_version: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS and self.vector is not None


@dataclass
class EmbedResponse:
    """Response to one embed request.

    An ``accepted`` response carries no results yet; they are fetched later
    with ``poll(request_id)``.
    """

    results: List[EmbedItemResult] = field(default_factory=list)
    status: str = STATUS_SUCCESS
    request_id: Optional[str] = None
    estimated_ms: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_ACCEPTED

    def by_chunk_id(self):
        return {result.chunk_id: result for result in self.results}


class EmbeddingService(Protocol):
    """Anything that turns chunks into vectors."""

    model_name: str

    async def embed(self, chunks: List[Chunk]) -> EmbedResponse:
        ...

    async def poll(self, request_id: str, chunk_ids: Optional[List[str]] = None) -> Optional[EmbedResponse]:
        """Return the finished response, or None while still processing."""
        ...

    async def embed_query(self, query: str) -> np.ndarray:
        ...

    async def close(self) -> None:
        ...
