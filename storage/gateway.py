"""Backend-independent storage interface with a buffered degraded mode."""

import logging
from typing import Dict, List, Optional, Protocol, Set

import numpy as np

from transport.errors import PermanentServiceError, ServiceUnavailableError, StorageInitializationError

from .buffer import TemporaryBuffer
from .models import SearchHit, UpsertOutcome, VectorDocument

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = (401, 403)
FLUSH_BATCH_SIZE = 100


class VectorStoreBackend(Protocol):
    """Capability interface shared by the remote and local stores."""

    async def ensure_collection(self, name: str, dimension: Optional[int] = None) -> None:
        ...

    async def upsert(self, name: str, documents: List[VectorDocument]) -> int:
        ...

    async def search(self, name: str, vector: np.ndarray, top_k: int) -> List[SearchHit]:
        ...

    async def delete_by_files(self, name: str, file_paths: List[str]) -> int:
        ...

    async def drop_collection(self, name: str) -> bool:
        ...

    async def close(self) -> None:
        ...


class StorageGateway:
    """Stable storage interface used by the delivery stage.

    The backend is chosen once at construction. When there is no backend, or
    the backend cannot be reached, writes are held per collection key in a
    ``TemporaryBuffer`` and searches fall back to substring matching over the
    buffered content. ``flush()`` drains the buffer once the backend answers.
    """

    def __init__(
        self,
        backend: Optional[VectorStoreBackend],
        buffer: Optional[TemporaryBuffer] = None,
        dimension: Optional[int] = None,
    ):
        self.backend = backend
        self.buffer = buffer or TemporaryBuffer()
        self.dimension = dimension
        self._degraded = backend is None
        self._ensured: Set[str] = set()
        self._pending_deletes: Dict[str, Set[str]] = {}
        self._pending_drops: Set[str] = set()

        if backend is None:
            logger.info("No vector store configured, writes will be held in temporary storage")

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _enter_degraded(self, reason: Exception) -> None:
        if not self._degraded:
            logger.warning(f"Vector store unreachable, switching to temporary storage: {reason}")
        self._degraded = True
        self._ensured.clear()

    async def ensure_collection(self, key: str) -> bool:
        """Make sure the collection exists.

        Returns:
            True if the backend is available, False when running degraded

        Raises:
            StorageInitializationError: If the backend rejects our credentials
        """
        if self.backend is None:
            return False
        if key in self._ensured:
            return True
        try:
            await self.backend.ensure_collection(key, self.dimension)
        except ServiceUnavailableError as e:
            self._enter_degraded(e)
            return False
        except PermanentServiceError as e:
            if e.status_code in AUTH_STATUS_CODES:
                raise StorageInitializationError(f"Vector store rejected the configuration: {e}") from e
            raise
        self._ensured.add(key)
        return True

    async def upsert(self, key: str, documents: List[VectorDocument]) -> UpsertOutcome:
        """Store documents, or buffer them while degraded.

        Transient and permanent backend errors propagate so that the caller can
        retry or fail the affected chunks.
        """
        if not documents:
            return UpsertOutcome()

        ids = [doc.id for doc in documents]
        if self._degraded or not await self.ensure_collection(key):
            self.buffer.add(key, documents)
            return UpsertOutcome(buffered=ids)

        try:
            await self.backend.upsert(key, documents)
        except ServiceUnavailableError as e:
            self._enter_degraded(e)
            self.buffer.add(key, documents)
            return UpsertOutcome(buffered=ids)
        return UpsertOutcome(stored=ids)

    async def search(
        self, query: str, top_k: int, key: str, vector: Optional[np.ndarray] = None
    ) -> List[SearchHit]:
        """Vector search in the backend, substring search over the buffer otherwise."""
        if top_k <= 0:
            raise ValueError("top_k must be a positive integer")

        if self._degraded or vector is None:
            hits = self.buffer.search(key, query, top_k)
            logger.info(f"Temporary storage search for '{query[:50]}' found {len(hits)} results")
            return hits

        try:
            return await self.backend.search(key, vector, top_k)
        except ServiceUnavailableError as e:
            self._enter_degraded(e)
            return self.buffer.search(key, query, top_k)

    async def delete(self, key: str) -> bool:
        """Drop a collection and anything buffered for it.

        A collection that does not exist counts as deleted. While the backend
        is unreachable the drop is queued and replayed by ``flush()``.

        Returns:
            True if the collection is gone, False if the drop is still queued
        """
        dropped_buffer = self.buffer.clear(key)
        self._pending_deletes.pop(key, None)
        self._ensured.discard(key)
        if dropped_buffer:
            logger.info(f"Discarded {dropped_buffer} buffered documents for {key}")

        if self.backend is None:
            return True
        if self._degraded:
            self._queue_drop(key)
            return False
        try:
            existed = await self.backend.drop_collection(key)
        except ServiceUnavailableError as e:
            self._enter_degraded(e)
            self._queue_drop(key)
            return False
        self._pending_drops.discard(key)
        if not existed:
            logger.debug(f"Collection {key} did not exist")
        return True

    async def reset(self, key: str) -> bool:
        """Destructive reset: drop if present, then recreate with the declared schema."""
        logger.info(f"Resetting collection {key}")
        await self.delete(key)
        return await self.ensure_collection(key)

    async def delete_files(self, key: str, file_paths: List[str]) -> int:
        """Remove the documents of the given files from backend and buffer.

        While degraded the deletion is remembered and replayed by ``flush()``.
        """
        if not file_paths:
            return 0

        removed = self.buffer.remove_files(key, file_paths)
        if self.backend is None:
            return removed
        if self._degraded:
            self._pending_deletes.setdefault(key, set()).update(file_paths)
            return removed

        try:
            if await self.ensure_collection(key):
                removed += await self.backend.delete_by_files(key, file_paths)
            else:
                self._pending_deletes.setdefault(key, set()).update(file_paths)
        except ServiceUnavailableError as e:
            self._enter_degraded(e)
            self._pending_deletes.setdefault(key, set()).update(file_paths)
        return removed

    async def flush(self) -> int:
        """Replay queued drops and file deletions, then upload the buffer.

        A queued drop runs first and the collection is recreated before the
        buffered documents of that key are uploaded.

        Returns:
            Number of documents uploaded. Documents that could not be uploaded
            stay buffered.
        """
        if self.backend is None:
            logger.debug("No vector store configured, nothing to flush")
            return 0

        self._degraded = False
        uploaded = 0
        keys = sorted(set(self.buffer.keys()) | set(self._pending_deletes) | self._pending_drops)
        for key in keys:
            try:
                if key in self._pending_drops:
                    await self.backend.drop_collection(key)
                    self._pending_drops.discard(key)
                    self._ensured.discard(key)
                    logger.info(f"Replayed queued drop of collection {key}")
            except ServiceUnavailableError as e:
                self._enter_degraded(e)
                break

            if not await self.ensure_collection(key):
                break
            pending = self._pending_deletes.get(key)
            try:
                if pending:
                    await self.backend.delete_by_files(key, sorted(pending))
                    del self._pending_deletes[key]

                documents = self.buffer.peek(key)
                for i in range(0, len(documents), FLUSH_BATCH_SIZE):
                    batch = documents[i:i + FLUSH_BATCH_SIZE]
                    await self.backend.upsert(key, batch)
                    self.buffer.discard(key, [doc.id for doc in batch])
                    uploaded += len(batch)
            except ServiceUnavailableError as e:
                self._enter_degraded(e)
                break

        remaining = self.buffer.count()
        if remaining or self._pending_drops:
            logger.warning(
                f"Flush uploaded {uploaded} documents, {remaining} still buffered, "
                f"{len(self._pending_drops)} drops still queued"
            )
        else:
            logger.info(f"Flush completed: uploaded {uploaded} documents")
        return uploaded

    @property
    def has_pending_writes(self) -> bool:
        """True while buffered documents, file deletions or drops await a flush."""
        return bool(self.buffer.count() or self._pending_deletes or self._pending_drops)

    def _queue_drop(self, key: str) -> None:
        logger.warning(f"Vector store unreachable, drop of {key} queued until the next flush")
        self._pending_drops.add(key)

    def buffered_count(self, key: Optional[str] = None) -> int:
        return self.buffer.count(key)

    async def close(self) -> None:
        if self.buffer.count():
            logger.warning(f"Closing storage with {self.buffer.count()} documents still buffered")
        if self.backend is not None:
            await self.backend.close()
