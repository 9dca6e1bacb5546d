"""Batched, bounded-concurrency delivery of chunks through embed and store."""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from chunking.models import Chunk
from embeddings.types import EmbeddingService, EmbedResponse
from merkle.snapshot import Status
from storage.gateway import StorageGateway
from storage.models import VectorDocument
from transport.errors import ErrorKind, TransientServiceError, classify_error, classify_message

from .locks import DedupLockRegistry
from .progress import ProgressTracker
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_CONCURRENT_BATCHES = 3
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLLS = 10
DEFAULT_ESTIMATED_MS = 30000
# First poll after this share of the estimated processing time
INITIAL_POLL_FRACTION = 0.8


class DeliveryState(str, Enum):
    """Per-chunk delivery state."""

    QUEUED = 'queued'
    EMBEDDING = 'embedding'
    EMBEDDED = 'embedded'
    STORING = 'storing'
    LOCKED_RETRY = 'locked_retry'
    STORED = 'stored'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.STORED, DeliveryState.FAILED)


def make_batch_id(chunk_ids: List[str]) -> str:
    """Deterministic id of a batch: hash of its sorted chunk ids."""
    return hashlib.sha256('|'.join(sorted(chunk_ids)).encode('utf-8')).hexdigest()[:16]


@dataclass
class DeliveryItem:
    """One chunk travelling through the pipeline."""

    chunk: Chunk
    state: DeliveryState = DeliveryState.QUEUED
    attempts: int = 0
    vector: Any = None
    vector_model: str = 'unknown'
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    buffered: bool = False

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    def fail(self, error: str, kind: Optional[ErrorKind] = None) -> None:
        self.state = DeliveryState.FAILED
        self.error = error
        self.error_kind = kind


@dataclass
class BatchJob:
    """Fixed-size group of chunks delivered together."""

    batch_id: str
    items: List[DeliveryItem]
    attempts: int = 0

    @classmethod
    def create(cls, chunks: List[Chunk]) -> 'BatchJob':
        return cls(batch_id=make_batch_id([c.id for c in chunks]), items=[DeliveryItem(chunk=c) for c in chunks])

    @property
    def succeeded(self) -> bool:
        return all(item.state is DeliveryState.STORED for item in self.items)


@dataclass
class PendingAsyncRequest:
    """An embed request the service accepted for background processing."""

    request_id: str
    batch_id: str
    chunk_ids: List[str]
    submitted_at: float
    estimated_completion: float


@dataclass
class ChunkOutcome:
    """Terminal result of delivering one chunk."""

    chunk_id: str
    file_path: str
    batch_id: str
    state: DeliveryState
    attempts: int
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    buffered: bool = False

    @property
    def ok(self) -> bool:
        return self.state is DeliveryState.STORED


@dataclass
class DeliveryReport:
    """Aggregate accounting of one ``deliver`` call."""

    batches_attempted: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    chunks_stored: int = 0
    chunks_buffered: int = 0
    chunks_failed: int = 0
    outcomes: List[ChunkOutcome] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def total_chunks(self) -> int:
        return len(self.outcomes)

    @property
    def success_rate(self) -> float:
        if not self.outcomes:
            return 100.0
        return self.chunks_stored / len(self.outcomes) * 100

    def failed_outcomes(self) -> List[ChunkOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batches_attempted': self.batches_attempted,
            'batches_succeeded': self.batches_succeeded,
            'batches_failed': self.batches_failed,
            'chunks_stored': self.chunks_stored,
            'chunks_buffered': self.chunks_buffered,
            'chunks_failed': self.chunks_failed,
            'success_rate': self.success_rate,
            'elapsed': self.elapsed,
            'failures': [
                {'chunk_id': o.chunk_id, 'file_path': o.file_path, 'error': o.error}
                for o in self.failed_outcomes()
            ],
        }


class DeliveryPipeline:
    """Delivers chunks to the embedding service and the storage gateway.

    Chunks are grouped into batches of ``batch_size``; at most
    ``max_concurrent_batches`` batches are in flight and the rest wait in
    submission order. Within a batch every chunk has its own outcome:
    transient failures are retried with backoff, permanent ones fail at once,
    and chunks the service reports as busy wait behind a dedup lock.
    """

    def __init__(
        self,
        embedder: EmbeddingService,
        gateway: StorageGateway,
        collection_key: str,
        owner: str,
        device: str,
        progress_tracker: Optional[ProgressTracker] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES,
        retry_policy: Optional[RetryPolicy] = None,
        lock_registry: Optional[DedupLockRegistry] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_polls: int = DEFAULT_MAX_POLLS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if batch_size < 1 or max_concurrent_batches < 1:
            raise ValueError("batch_size and max_concurrent_batches must be at least 1")

        self.embedder = embedder
        self.gateway = gateway
        self.collection_key = collection_key
        self.owner = owner
        self.device = device
        self.progress_tracker = progress_tracker
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.retry = RetryExecutor(retry_policy, sleep=sleep)
        self.locks = lock_registry or DedupLockRegistry(clock=clock)
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self._clock = clock

        self._closing = False
        self._active: Set[asyncio.Task] = set()
        self._pending_async: Dict[str, PendingAsyncRequest] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def make_batches(self, chunks: List[Chunk]) -> List[BatchJob]:
        """Split chunks into consecutive fixed-size batches, keeping order."""
        return [
            BatchJob.create(chunks[i:i + self.batch_size])
            for i in range(0, len(chunks), self.batch_size)
        ]

    async def deliver(self, chunks: List[Chunk]) -> DeliveryReport:
        """Deliver chunks and return the per-chunk accounting.

        Every chunk reaches a terminal state in the progress tracker.
        """
        start = time.time()
        jobs = self.make_batches(chunks)
        report = DeliveryReport()
        if not jobs:
            return report

        self.locks.start_sweeper()
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)
        logger.info(
            f"Delivering {len(chunks)} chunks in {len(jobs)} batches "
            f"(batch size {self.batch_size}, {self.max_concurrent_batches} concurrent)"
        )

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._run_batch(job, semaphore), name=f"batch-{job.batch_id}")
            self._active.add(task)
            task.add_done_callback(self._active.discard)
            tasks.append(task)
        await asyncio.gather(*tasks, return_exceptions=True)

        for job in jobs:
            report.batches_attempted += 1 if job.attempts else 0
            if job.succeeded:
                report.batches_succeeded += 1
            else:
                report.batches_failed += 1
            for item in job.items:
                if not item.state.is_terminal:
                    item.fail("Delivery did not finish")
                    self._track(item, Status.FAILED, {'error': item.error, 'batch_id': job.batch_id})
                report.outcomes.append(ChunkOutcome(
                    chunk_id=item.chunk_id,
                    file_path=item.chunk.file_path,
                    batch_id=job.batch_id,
                    state=item.state,
                    attempts=item.attempts,
                    error=item.error,
                    error_kind=item.error_kind,
                    buffered=item.buffered,
                ))
                if item.state is DeliveryState.STORED:
                    report.chunks_stored += 1
                    report.chunks_buffered += 1 if item.buffered else 0
                else:
                    report.chunks_failed += 1

        report.elapsed = time.time() - start
        log = logger.warning if report.chunks_failed else logger.info
        log(
            f"Delivery finished: {report.chunks_stored}/{report.total_chunks} chunks stored "
            f"({report.chunks_buffered} buffered), {report.batches_succeeded}/{len(jobs)} batches succeeded, "
            f"success rate {report.success_rate:.2f}%"
        )
        return report

    async def shutdown(self, grace_period: float = 30.0, close_clients: bool = True) -> None:
        """Stop admitting batches and wait up to ``grace_period`` for in-flight work."""
        self._closing = True
        active = [task for task in self._active if not task.done()]
        if active:
            logger.info(f"Waiting up to {grace_period:.0f}s for {len(active)} batches in flight")
            done, still_running = await asyncio.wait(active, timeout=grace_period)
            if still_running:
                logger.warning(
                    f"{len(still_running)} batches and {len(self._pending_async)} async requests "
                    f"unfinished after grace period, cancelling"
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        await self.locks.stop_sweeper()
        if close_clients:
            await self.embedder.close()
            await self.gateway.close()
        logger.info("Delivery pipeline shut down")

    def get_lock_status(self) -> Dict[str, Any]:
        status = self.locks.status()
        status['pending_async_requests'] = len(self._pending_async)
        return status

    def clear_lock(self, chunk_id: str) -> int:
        """Drop every lock held on a chunk; returns the number released."""
        released = self.locks.release_chunk(chunk_id)
        if released:
            logger.info(f"Manually cleared {released} locks for {chunk_id}")
        return released

    @property
    def pending_async_requests(self) -> List[PendingAsyncRequest]:
        return list(self._pending_async.values())

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def _run_batch(self, job: BatchJob, semaphore: asyncio.Semaphore) -> None:
        try:
            async with semaphore:
                if self._closing:
                    for item in job.items:
                        item.fail("Pipeline is shutting down")
                    return

                job.attempts += 1
                for item in job.items:
                    self._track(item, Status.PROCESSING)
                logger.debug(f"Batch {job.batch_id}: {len(job.items)} chunks")

                await self._embed_stage(job)
                await self._store_stage(job)
        except asyncio.CancelledError:
            for item in job.items:
                if not item.state.is_terminal:
                    item.fail("Cancelled during shutdown")
            raise
        finally:
            self._report_terminal(job)

    def _report_terminal(self, job: BatchJob) -> None:
        for item in job.items:
            if item.state is DeliveryState.STORED:
                self._track(item, Status.COMPLETED, {'buffered': item.buffered, 'batch_id': job.batch_id})
            elif item.state is DeliveryState.FAILED:
                self._track(item, Status.FAILED, {'error': item.error, 'batch_id': job.batch_id})

    def _track(self, item: DeliveryItem, status: Status, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.progress_tracker is None:
            return
        current = self.progress_tracker.get_chunk(item.chunk_id)
        if current is not None and current.status is status:
            return
        if current is not None and status.is_terminal and current.status is Status.PENDING:
            self.progress_tracker.update_chunk_status(item.chunk_id, Status.PROCESSING)
        self.progress_tracker.update_chunk_status(item.chunk_id, status, metadata)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _lock_remaining(self, item: DeliveryItem) -> float:
        return self.locks.remaining(item.chunk_id, self.owner, self.device)

    def _longest_lock(self, items: List[DeliveryItem]) -> float:
        return max((self._lock_remaining(item) for item in items), default=0.0)

    def _on_locked(self, item: DeliveryItem, error: str) -> None:
        self.locks.record(item.chunk_id, self.owner, self.device)
        item.error = error
        item.error_kind = ErrorKind.LOCKED

    def _on_settled(self, item: DeliveryItem) -> None:
        self.locks.release(item.chunk_id, self.owner, self.device)

    # ------------------------------------------------------------------
    # Embed stage
    # ------------------------------------------------------------------

    async def _embed_stage(self, job: BatchJob) -> None:
        items = [item for item in job.items if item.state is DeliveryState.QUEUED]
        for item in items:
            item.state = DeliveryState.EMBEDDING

        leftover = await self.retry.until_settled(self._embed_round, items, lock_wait=self._longest_lock)
        for item in leftover:
            item.fail(f"Embedding failed after {self.retry.policy.max_attempts} attempts: {item.error}",
                      item.error_kind)

    async def _embed_round(self, items: List[DeliveryItem]) -> List[DeliveryItem]:
        """One embed attempt; returns the items worth another attempt."""
        ready = [item for item in items if self._lock_remaining(item) <= 0]
        waiting = [item for item in items if item not in ready]
        if not ready:
            return waiting

        for item in ready:
            item.attempts += 1
        try:
            response = await self.embedder.embed([item.chunk for item in ready])
            if response.accepted:
                response = await self._await_async(response, ready)
        except Exception as e:
            return waiting + await self._handle_request_error(e, ready, self._embed_round)

        retry = []
        results = response.by_chunk_id()
        for item in ready:
            result = results.get(item.chunk_id)
            if result is not None and result.ok:
                item.vector = result.vector
                item.vector_model = result.model_version or self.embedder.model_name
                item.state = DeliveryState.EMBEDDED
                item.error = None
                self._on_settled(item)
                continue

            error = (result.error if result is not None else None) or 'No embedding returned'
            kind = classify_message(error)
            if kind is ErrorKind.PERMANENT:
                item.fail(f"Embedding rejected: {error}", kind)
                self._on_settled(item)
            elif kind is ErrorKind.LOCKED:
                self._on_locked(item, error)
                retry.append(item)
            else:
                item.error, item.error_kind = error, kind
                retry.append(item)
        return waiting + retry

    async def _await_async(self, response: EmbedResponse, items: List[DeliveryItem]) -> EmbedResponse:
        """Poll an accepted request until it finishes or the poll budget runs out.

        Raises:
            TransientServiceError: If the request does not finish in time
        """
        request_id = response.request_id
        estimated = (response.estimated_ms or DEFAULT_ESTIMATED_MS) / 1000.0
        now = self._clock()
        chunk_ids = [item.chunk_id for item in items]
        self._pending_async[request_id] = PendingAsyncRequest(
            request_id=request_id,
            batch_id=make_batch_id(chunk_ids),
            chunk_ids=chunk_ids,
            submitted_at=now,
            estimated_completion=now + estimated,
        )
        try:
            await self._sleep(estimated * INITIAL_POLL_FRACTION)
            for poll in range(1, self.max_polls + 1):
                try:
                    result = await self.embedder.poll(request_id, chunk_ids)
                except Exception as e:
                    if classify_error(e) is ErrorKind.PERMANENT:
                        raise
                    logger.warning(f"Polling {request_id} failed (poll {poll}/{self.max_polls}): {e}")
                else:
                    if result is not None:
                        logger.debug(f"Async request {request_id} finished after {poll} polls")
                        return result
                if poll < self.max_polls:
                    await self._sleep(self.poll_interval)
            raise TransientServiceError(f"Async request {request_id} timed out after {self.max_polls} polls")
        finally:
            self._pending_async.pop(request_id, None)

    # ------------------------------------------------------------------
    # Store stage
    # ------------------------------------------------------------------

    async def _store_stage(self, job: BatchJob) -> None:
        items = [item for item in job.items if item.state is DeliveryState.EMBEDDED]
        for item in items:
            item.state = DeliveryState.STORING

        leftover = await self.retry.until_settled(self._store_round, items, lock_wait=self._longest_lock)
        for item in leftover:
            item.fail(f"Storing failed after {self.retry.policy.max_attempts} attempts: {item.error}",
                      item.error_kind)

    async def _store_round(self, items: List[DeliveryItem]) -> List[DeliveryItem]:
        """One upsert attempt; returns the items worth another attempt."""
        ready = [item for item in items if self._lock_remaining(item) <= 0]
        waiting = [item for item in items if item not in ready]
        if not ready:
            return waiting

        for item in ready:
            item.attempts += 1
            item.state = DeliveryState.STORING
        documents = [VectorDocument.from_chunk(item.chunk, item.vector, item.vector_model) for item in ready]
        try:
            outcome = await self.gateway.upsert(self.collection_key, documents)
        except Exception as e:
            return waiting + await self._handle_request_error(e, ready, self._store_round)

        buffered = set(outcome.buffered)
        for item in ready:
            item.state = DeliveryState.STORED
            item.buffered = item.chunk_id in buffered
            item.error = None
            self._on_settled(item)
        return waiting

    # ------------------------------------------------------------------
    # Shared error handling
    # ------------------------------------------------------------------

    async def _handle_request_error(
        self,
        error: Exception,
        items: List[DeliveryItem],
        round_fn: Callable[[List[DeliveryItem]], Awaitable[List[DeliveryItem]]],
    ) -> List[DeliveryItem]:
        """Classify a failed request and decide each item's fate.

        A permanent rejection of a multi-chunk request is re-submitted chunk by
        chunk so that only the offending chunk fails.
        """
        kind = classify_error(error)
        message = f"{type(error).__name__}: {error}"

        if kind is ErrorKind.PERMANENT:
            if len(items) > 1:
                logger.info(f"Request for {len(items)} chunks rejected ({error}), isolating the bad chunk")
                for item in items:
                    item.attempts -= 1
                leftover = []
                for item in items:
                    leftover.extend(await round_fn([item]))
                return leftover
            for item in items:
                item.fail(message, kind)
                self._on_settled(item)
                logger.warning(f"Chunk {item.chunk_id} ({item.chunk.file_path}) failed permanently: {error}")
            return []

        if kind is ErrorKind.LOCKED:
            for item in items:
                self._on_locked(item, message)
                if item.state is DeliveryState.STORING:
                    item.state = DeliveryState.LOCKED_RETRY
            return list(items)

        for item in items:
            item.error, item.error_kind = message, kind
        return list(items)
