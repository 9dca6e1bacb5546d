"""Bounded-concurrency chunk production over a list of files."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from chunking.models import Chunk
from chunking.producer import ChunkProducer
from chunking.splitter import MAX_CHUNK_BYTES, split_oversized
from merkle.file_walker import FileWalker
from merkle.snapshot import FileRecord, Status

from .progress import ProgressTracker

logger = logging.getLogger(__name__)

MODE_PARALLEL = 'parallel'
MODE_SEQUENTIAL = 'sequential'
MODE_FALLBACK = 'fallback'


@dataclass
class DispatcherStats:
    """Aggregate counts of the last ``process_files`` call."""

    files_processed: int = 0
    files_failed: int = 0
    chunks_produced: int = 0
    mode: str = MODE_SEQUENTIAL
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'files_processed': self.files_processed,
            'files_failed': self.files_failed,
            'chunks_produced': self.chunks_produced,
            'mode': self.mode,
            'errors': dict(self.errors),
        }


class ConcurrentDispatcher:
    """Runs the chunk producer over files with at most ``max_workers`` in flight.

    Each file occupies one worker. A file whose read or production fails is
    marked failed and the others continue. Results come back in input order.
    """

    def __init__(
        self,
        root: str,
        max_workers: int = 4,
        progress_tracker: Optional[ProgressTracker] = None,
        file_walker: Optional[FileWalker] = None,
        max_chunk_bytes: int = MAX_CHUNK_BYTES,
    ):
        """Initialize dispatcher.

        Args:
            root: Workspace root that relative file paths are resolved against
            max_workers: Worker pool size; 1 means sequential processing
            progress_tracker: Tracker receiving file and chunk registrations
            file_walker: Reader for file contents
            max_chunk_bytes: Chunks above this size are split into parts
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.root = root
        self.max_workers = max_workers
        self.progress_tracker = progress_tracker or ProgressTracker()
        self.file_walker = file_walker or FileWalker()
        self.max_chunk_bytes = max_chunk_bytes
        self._stats = DispatcherStats()
        self._stats_lock = threading.Lock()

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    def process_files(self, files: List[str], chunk_producer: ChunkProducer) -> List[Chunk]:
        """Produce chunks for every file.

        Args:
            files: Workspace-relative paths
            chunk_producer: Collaborator turning content into chunks

        Returns:
            All chunks, grouped by file in input order
        """
        self._stats = DispatcherStats()
        results: Dict[int, List[Chunk]] = {}

        if self.max_workers == 1 or len(files) <= 1:
            self._stats.mode = MODE_SEQUENTIAL
        else:
            self._stats.mode = MODE_PARALLEL
            try:
                self._process_parallel(files, chunk_producer, results)
            except RuntimeError as e:
                logger.warning(f"Worker pool unavailable ({e}), continuing sequentially")
                self._stats.mode = MODE_FALLBACK

        # Sequential mode, or whatever the pool did not take
        for index, file_path in enumerate(files):
            if index not in results:
                results[index] = self._process_one(file_path, chunk_producer)

        chunks = [chunk for index in range(len(files)) for chunk in results[index]]
        logger.info(
            f"Produced {len(chunks)} chunks from {self._stats.files_processed} files "
            f"({self._stats.files_failed} failed, mode: {self._stats.mode})"
        )
        return chunks

    def _process_parallel(
        self, files: List[str], chunk_producer: ChunkProducer, results: Dict[int, List[Chunk]]
    ) -> None:
        futures: Dict[Future, int] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='chunk-producer') as executor:
            try:
                for index, file_path in enumerate(files):
                    futures[executor.submit(self._process_one, file_path, chunk_producer)] = index
            except RuntimeError as e:
                logger.warning(f"Worker pool refused work after {len(futures)} files ({e})")
                self._stats.mode = MODE_FALLBACK

            for future in as_completed(futures):
                results[futures[future]] = future.result()

    def _process_one(self, file_path: str, chunk_producer: ChunkProducer) -> List[Chunk]:
        """Read and chunk one file; never raises."""
        tracker = self.progress_tracker
        tracker.register_files([FileRecord(path=file_path, content_hash=None)])
        tracker.update_file_status(file_path, Status.PROCESSING)

        try:
            content = self.file_walker.read_file(file_path, root=self.root)
            produced = chunk_producer.produce_chunks(content, file_path)
            chunks: List[Chunk] = []
            for chunk in produced:
                chunks.extend(split_oversized(chunk, self.max_chunk_bytes))
        except Exception as e:
            logger.warning(f"Failed to chunk {file_path}: {e}")
            tracker.update_file_status(file_path, Status.FAILED, error=f"{type(e).__name__}: {e}")
            with self._stats_lock:
                self._stats.files_failed += 1
                self._stats.errors[file_path] = str(e)
            return []

        tracker.register_chunks(file_path, chunks)
        with self._stats_lock:
            self._stats.files_processed += 1
            self._stats.chunks_produced += len(chunks)
        logger.debug(f"Chunked {file_path}: {len(chunks)} chunks")
        return chunks
