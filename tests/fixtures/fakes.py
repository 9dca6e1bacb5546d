"""In-memory stand-ins for the embedding service and the vector store."""

import asyncio
import hashlib
from typing import Dict, List, Optional

import numpy as np

from chunking.models import Chunk
from embeddings.types import STATUS_ACCEPTED, STATUS_ERROR, EmbedItemResult, EmbedResponse
from storage.models import SearchHit, VectorDocument
from transport.errors import PermanentServiceError, ServiceUnavailableError

DIMENSION = 8


def fake_vector(text: str, dimension: int = DIMENSION) -> np.ndarray:
    digest = hashlib.sha256(text.encode('utf-8')).digest()
    vector = np.frombuffer(digest[:dimension * 4], dtype=np.uint8)[:dimension].astype('float32') + 1.0
    return vector / np.linalg.norm(vector)


class FakeEmbedder:
    """Embeds by hashing content.

    Behaviour knobs:
        item_errors: chunk id -> error strings returned for that chunk (see ``fail_chunk``)
        reject_marker: content substring that makes a whole request fail permanently
        request_errors: exceptions raised by successive ``embed`` calls
        async_polls: when set, requests are accepted and finish after this many polls
    """

    def __init__(self, dimension: int = DIMENSION):
        self.model_name = 'fake-embedder'
        self.dimension = dimension
        self.item_errors: Dict[str, List[str]] = {}
        self.persistent_errors = set()
        self.reject_marker: Optional[str] = None
        self.request_errors: List[Exception] = []
        self.async_polls: Optional[int] = None
        self.estimated_ms = 1000
        self.calls: List[List[str]] = []
        self.polls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = 0.0
        self.closed = False
        self._accepted: Dict[str, List[Chunk]] = {}
        self._poll_counts: Dict[str, int] = {}

    def fail_chunk(self, chunk_id: str, *errors: str, persistent: bool = False) -> None:
        """Return ``errors`` for the chunk on successive calls, then succeed.

        With ``persistent`` the last error is repeated forever.
        """
        self.item_errors[chunk_id] = list(errors)
        if persistent:
            self.persistent_errors.add(chunk_id)

    def _results(self, chunks: List[Chunk]) -> List[EmbedItemResult]:
        results = []
        for chunk in chunks:
            pending = self.item_errors.get(chunk.id)
            if pending:
                keep = chunk.id in self.persistent_errors and len(pending) == 1
                error = pending[0] if keep else pending.pop(0)
                results.append(EmbedItemResult(chunk_id=chunk.id, status=STATUS_ERROR, error=error))
            else:
                results.append(EmbedItemResult(chunk_id=chunk.id, vector=fake_vector(chunk.content, self.dimension),
                                               model_version=self.model_name))
        return results

    async def embed(self, chunks: List[Chunk], processing_mode: Optional[str] = None) -> EmbedResponse:
        self.calls.append([chunk.id for chunk in chunks])
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.request_errors:
                raise self.request_errors.pop(0)
            if self.reject_marker and any(self.reject_marker in chunk.content for chunk in chunks):
                raise PermanentServiceError("Invalid chunk content", 400)
            if self.async_polls is not None:
                request_id = f"req-{len(self.calls)}"
                self._accepted[request_id] = list(chunks)
                self._poll_counts[request_id] = 0
                return EmbedResponse(status=STATUS_ACCEPTED, request_id=request_id, estimated_ms=self.estimated_ms)
            return EmbedResponse(results=self._results(chunks))
        finally:
            self.in_flight -= 1

    async def poll(self, request_id: str, chunk_ids: Optional[List[str]] = None) -> Optional[EmbedResponse]:
        self.polls.append(request_id)
        self._poll_counts[request_id] += 1
        if self._poll_counts[request_id] < self.async_polls:
            return None
        return EmbedResponse(results=self._results(self._accepted[request_id]), request_id=request_id)

    async def embed_query(self, query: str) -> np.ndarray:
        return fake_vector(query, self.dimension)

    async def close(self) -> None:
        self.closed = True


class FakeBackend:
    """Vector store backend keeping collections in dictionaries."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, VectorDocument]] = {}
        self.available = True
        self.upsert_errors: List[Exception] = []
        self.upserts: List[List[str]] = []
        self.dropped: List[str] = []
        self.closed = False

    def _check(self) -> None:
        if not self.available:
            raise ServiceUnavailableError("Vector store unreachable", 503)

    async def ensure_collection(self, name: str, dimension: Optional[int] = None) -> None:
        self._check()
        self.collections.setdefault(name, {})

    async def upsert(self, name: str, documents: List[VectorDocument]) -> int:
        self._check()
        if self.upsert_errors:
            raise self.upsert_errors.pop(0)
        self.upserts.append([doc.id for doc in documents])
        collection = self.collections.setdefault(name, {})
        for doc in documents:
            collection[doc.id] = doc
        return len(documents)

    async def search(self, name: str, vector: np.ndarray, top_k: int) -> List[SearchHit]:
        self._check()
        scored = []
        for doc in self.collections.get(name, {}).values():
            score = float(np.dot(vector, doc.vector)) if doc.vector is not None else 0.0
            scored.append((score, doc))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            SearchHit(chunk_id=doc.id, score=score, file_path=doc.file_path, start_line=doc.start_line,
                      end_line=doc.end_line, content=doc.content)
            for score, doc in scored[:top_k]
        ]

    async def delete_by_files(self, name: str, file_paths: List[str]) -> int:
        self._check()
        collection = self.collections.get(name, {})
        doomed = [doc_id for doc_id, doc in collection.items() if doc.file_path in set(file_paths)]
        for doc_id in doomed:
            del collection[doc_id]
        return len(doomed)

    async def drop_collection(self, name: str) -> bool:
        self._check()
        self.dropped.append(name)
        return self.collections.pop(name, None) is not None

    async def close(self) -> None:
        self.closed = True

    def documents(self, name: str) -> Dict[str, VectorDocument]:
        return self.collections.get(name, {})
