"""Incremental indexing using hash tree change detection."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from chunking.models import Chunk
from chunking.producer import ChunkProducer, CodeChunkProducer
from embeddings.local import LocalEmbedder
from embeddings.remote import RemoteEmbeddingClient
from embeddings.types import EmbeddingService
from merkle.change_detector import ChangeDetector, FileChanges
from merkle.file_walker import FileWalker
from merkle.hash_tree import HashTree
from merkle.snapshot import WorkspaceSnapshot
from merkle.snapshot_manager import SnapshotManager
from storage.collection import CollectionIdentity
from storage.gateway import StorageGateway
from storage.local import LocalVectorStore
from storage.models import SearchHit
from storage.remote import RemoteVectorStore
from transport.errors import IndexingError

from .config import IndexerConfig
from .delivery import DeliveryPipeline, DeliveryReport
from .dispatcher import ConcurrentDispatcher
from .locks import DedupLockRegistry
from .progress import ProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class IncrementalIndexResult:
    """Result of incremental indexing operation."""

    files_added: int
    files_removed: int
    files_modified: int
    chunks_added: int
    chunks_removed: int
    time_taken: float
    success: bool
    error: Optional[str] = None
    full_index: bool = False
    files_failed: int = 0
    chunks_failed: int = 0
    chunks_buffered: int = 0
    collection: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        """True when the run finished but some files or chunks failed."""
        return self.success and bool(self.files_failed or self.chunks_failed)

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'files_added': self.files_added,
            'files_removed': self.files_removed,
            'files_modified': self.files_modified,
            'chunks_added': self.chunks_added,
            'chunks_removed': self.chunks_removed,
            'time_taken': self.time_taken,
            'success': self.success,
            'error': self.error,
            'full_index': self.full_index,
            'files_failed': self.files_failed,
            'chunks_failed': self.chunks_failed,
            'chunks_buffered': self.chunks_buffered,
            'collection': self.collection,
            'progress': self.progress,
        }


def create_embedder(config: IndexerConfig) -> EmbeddingService:
    """Build the embedding service selected by the configuration."""
    if config.embedder == 'remote':
        return RemoteEmbeddingClient(
            config.embedding_url,
            token=config.token,
            timeout=config.timeout,
            unique_id=f"{config.owner}_{config.device}",
            processing_mode=config.processing_mode,
        )
    return LocalEmbedder(model_name=config.model_name, cache_dir=str(Path(config.storage_dir) / 'models'))


def create_gateway(config: IndexerConfig, identity: CollectionIdentity) -> StorageGateway:
    """Build the storage gateway and its backend; ``disabled`` means buffer only."""
    if config.storage_backend == 'disabled':
        backend = None
    elif config.storage_backend == 'remote':
        backend = RemoteVectorStore(
            config.store_url,
            config.database,
            owner=identity.owner,
            device=identity.device,
            workspace=identity.workspace,
            token=config.token,
            timeout=config.timeout,
            dimension=config.dimension,
        )
    else:
        backend = LocalVectorStore(str(config.index_dir))
    return StorageGateway(backend, dimension=config.dimension)


def snapshot_without(snapshot: WorkspaceSnapshot, excluded: Set[str]) -> WorkspaceSnapshot:
    """Copy of ``snapshot`` with some files left out and the tree rebuilt.

    Files left out show up as added on the next run and are indexed again.
    """
    if not excluded:
        return snapshot
    files = [(path, file_hash) for path, file_hash in snapshot.files if path not in excluded]
    leaf_hashes = [file_hash for _, file_hash in files]
    result = HashTree().build(leaf_hashes)
    return WorkspaceSnapshot(
        root_path=snapshot.root_path,
        root_hash=result.root_hash,
        leaf_hashes=leaf_hashes,
        levels=result.levels,
        files=files,
    )


class IncrementalIndexer:
    """Handles incremental indexing of code changes.

    Owns a private event loop so that its async clients stay bound to one loop
    across runs; call ``close()`` when done.
    """

    def __init__(
        self,
        config: Optional[IndexerConfig] = None,
        embedder: Optional[EmbeddingService] = None,
        gateway: Optional[StorageGateway] = None,
        chunk_producer: Optional[ChunkProducer] = None,
        snapshot_manager: Optional[SnapshotManager] = None,
        identity: Optional[CollectionIdentity] = None,
    ):
        """Initialize incremental indexer.

        Args:
            config: Indexer configuration (loaded from file and environment when None)
            embedder: Embedding service (built from the configuration when None)
            gateway: Storage gateway (built from the configuration when None)
            chunk_producer: Chunk producer instance
            snapshot_manager: Snapshot manager instance
            identity: Collection identity (derived from the workspace when None)
        """
        self.config = config or IndexerConfig.load()
        self.identity = identity or CollectionIdentity(
            owner=self.config.owner,
            device=self.config.device,
            workspace=str(Path(self.config.workspace).resolve()),
            override_name=self.config.collection_name,
        )
        self.embedder = embedder or create_embedder(self.config)
        self.gateway = gateway or create_gateway(self.config, self.identity)
        self.chunk_producer = chunk_producer or CodeChunkProducer()
        self.snapshot_manager = snapshot_manager or SnapshotManager(self.config.snapshot_dir)
        self.file_walker = FileWalker(
            ignore_patterns=self.config.ignore_patterns,
            extensions=self.config.extensions or None,
            max_file_size=self.config.max_file_size,
        )
        self.change_detector = ChangeDetector(self.snapshot_manager, self.file_walker)
        self.pipeline = DeliveryPipeline(
            self.embedder,
            self.gateway,
            collection_key=self.identity.name,
            owner=self.identity.owner,
            device=self.identity.device,
            batch_size=self.config.batch_size,
            max_concurrent_batches=self.config.max_concurrent_batches,
            retry_policy=self.config.retry_policy(),
            lock_registry=DedupLockRegistry(ttl=self.config.lock_ttl, sweep_interval=self.config.sweep_interval),
            poll_interval=self.config.poll_interval,
            max_polls=self.config.max_polls,
        )
        self.progress_tracker: Optional[ProgressTracker] = None
        self._loop = asyncio.new_event_loop()
        self._closed = False

    @property
    def collection_name(self) -> str:
        return self.identity.name

    def _run(self, coro):
        if self._closed:
            coro.close()
            raise RuntimeError("Indexer is closed")
        return self._loop.run_until_complete(coro)

    def detect_changes(self, project_path: str):
        """Detect changes in project since last snapshot.

        Returns:
            Tuple of (FileChanges, current snapshot, scanned records)
        """
        return self.change_detector.detect_changes_from_snapshot(project_path)

    def incremental_index(self, project_path: Optional[str] = None, force_full: bool = False) -> IncrementalIndexResult:
        """Perform incremental indexing of a project.

        Args:
            project_path: Path to project (the configured workspace when None)
            force_full: Force full reindex even if snapshot exists

        Returns:
            IncrementalIndexResult with statistics

        Raises:
            IndexingError: On invalid configuration or unusable storage
        """
        return self._run(self.run(project_path, force_full))

    async def run(self, project_path: Optional[str] = None, force_full: bool = False) -> IncrementalIndexResult:
        """Async form of ``incremental_index``."""
        start_time = time.time()
        project_path = str(Path(project_path or self.identity.workspace).resolve())
        key = self.collection_name

        try:
            full = force_full or self.snapshot_manager.load_snapshot(project_path) is None
            if full:
                logger.info(f"Performing full index for {project_path} into {key}")
                scan = self.change_detector.scan(project_path)
                changes = FileChanges(
                    added=scan.snapshot.get_all_files(),
                    removed=[],
                    modified=[],
                    unchanged=[],
                    failed=[record.path for record in scan.failed],
                )
                snapshot, records = scan.snapshot, scan.records
            else:
                logger.info(f"Detecting changes in {project_path}")
                changes, snapshot, records = self.detect_changes(project_path)
                if not changes.has_changes() and not changes.failed:
                    logger.info(f"No changes detected in {project_path}")
                    await self._flush_buffer()
                    return IncrementalIndexResult(
                        files_added=0,
                        files_removed=0,
                        files_modified=0,
                        chunks_added=0,
                        chunks_removed=0,
                        time_taken=time.time() - start_time,
                        success=True,
                        collection=key,
                        progress=ProgressTracker().get_overall_progress(),
                    )

            logger.info(
                f"Changes detected - Added: {len(changes.added)}, Removed: {len(changes.removed)}, "
                f"Modified: {len(changes.modified)}, Unreadable: {len(changes.failed)}"
            )

            chunks_removed = await self._prepare_collection(key, changes, full)

            tracker = ProgressTracker()
            self.progress_tracker = tracker
            to_index = set(changes.changed)
            tracker.register_files([r for r in records if r.path in to_index or r.path in changes.failed])

            chunks = await self._produce_chunks(project_path, changes.changed, tracker)
            self.pipeline.progress_tracker = tracker
            report = await self.pipeline.deliver(chunks)
            await self._flush_buffer()

            failed_paths = {f['path'] for f in tracker.get_failed_files()}
            failed_paths.update(outcome.file_path for outcome in report.failed_outcomes())
            self.snapshot_manager.save_snapshot(snapshot_without(snapshot, failed_paths), {
                'collection': key,
                'full_index': full,
                'files_added': len(changes.added),
                'files_removed': len(changes.removed),
                'files_modified': len(changes.modified),
                'files_failed': len(failed_paths),
                'chunks_indexed': report.chunks_stored,
            })

            progress = tracker.summary()
            return self._result(changes, report, chunks_removed, full, failed_paths, progress, start_time)

        except IndexingError:
            raise
        except Exception as e:
            logger.error(f"Incremental indexing failed: {e}", exc_info=True)
            return IncrementalIndexResult(
                files_added=0,
                files_removed=0,
                files_modified=0,
                chunks_added=0,
                chunks_removed=0,
                time_taken=time.time() - start_time,
                success=False,
                error=str(e),
                collection=key,
            )

    async def _prepare_collection(self, key: str, changes: FileChanges, full: bool) -> int:
        """Reset or clean the collection before new chunks arrive.

        Returns:
            Number of documents removed
        """
        if full and self.config.reset_before_full_index:
            await self.gateway.reset(key)
            return 0

        await self.gateway.ensure_collection(key)
        # Added paths too: a file that was unreadable last time may still own documents
        files_to_remove = sorted(set(self.change_detector.get_files_to_remove(changes)) | set(changes.added))
        removed = await self.gateway.delete_files(key, files_to_remove)
        logger.debug(f"Removed {removed} documents for {len(files_to_remove)} files")
        return removed

    async def _produce_chunks(self, project_path: str, files: List[str], tracker: ProgressTracker) -> List[Chunk]:
        dispatcher = ConcurrentDispatcher(
            project_path,
            max_workers=self.config.max_workers,
            progress_tracker=tracker,
            file_walker=self.file_walker,
        )
        return await asyncio.to_thread(dispatcher.process_files, files, self.chunk_producer)

    async def _flush_buffer(self) -> None:
        if self.gateway.backend is not None and self.gateway.has_pending_writes:
            logger.info(f"Flushing {self.gateway.buffered_count()} buffered documents")
            await self.gateway.flush()

    def _result(
        self,
        changes: FileChanges,
        report: DeliveryReport,
        chunks_removed: int,
        full: bool,
        failed_paths: Set[str],
        progress: Dict[str, Any],
        start_time: float,
    ) -> IncrementalIndexResult:
        return IncrementalIndexResult(
            files_added=len(changes.added),
            files_removed=len(changes.removed),
            files_modified=len(changes.modified),
            chunks_added=report.chunks_stored,
            chunks_removed=chunks_removed,
            time_taken=time.time() - start_time,
            success=True,
            full_index=full,
            files_failed=len(failed_paths),
            chunks_failed=report.chunks_failed,
            chunks_buffered=report.chunks_buffered,
            collection=self.collection_name,
            progress=progress,
        )

    def search(self, query: str, top_k: int = 5) -> List[SearchHit]:
        """Semantic search over the collection; substring search while degraded."""
        return self._run(self.asearch(query, top_k))

    async def asearch(self, query: str, top_k: int = 5) -> List[SearchHit]:
        vector = None
        if not self.gateway.degraded:
            vector = await self.embedder.embed_query(query)
        return await self.gateway.search(query, top_k, self.collection_name, vector=vector)

    def get_indexing_stats(self, project_path: Optional[str] = None) -> Optional[Dict]:
        """Get indexing statistics for a project.

        Returns:
            Dictionary with statistics or None
        """
        project_path = str(Path(project_path or self.identity.workspace).resolve())
        metadata = self.snapshot_manager.load_metadata(project_path)
        if not metadata:
            return None

        metadata['snapshot_age'] = self.snapshot_manager.get_snapshot_age(project_path)
        metadata['buffered_documents'] = self.gateway.buffered_count()
        metadata['locks'] = self.pipeline.get_lock_status()
        if self.progress_tracker is not None:
            metadata['last_run'] = self.progress_tracker.get_overall_progress()
        return metadata

    def needs_reindex(self, project_path: Optional[str] = None, max_age_minutes: float = 5) -> bool:
        """Check if a project needs reindexing.

        Args:
            project_path: Path to project
            max_age_minutes: Maximum age of snapshot in minutes (default 5)

        Returns:
            True if reindex is needed
        """
        project_path = str(Path(project_path or self.identity.workspace).resolve())
        if not self.snapshot_manager.has_snapshot(project_path):
            return True

        age = self.snapshot_manager.get_snapshot_age(project_path)
        if age and age > max_age_minutes * 60:
            return True

        return self.change_detector.quick_check(project_path)

    def auto_reindex_if_needed(
        self, project_path: Optional[str] = None, max_age_minutes: float = 5
    ) -> IncrementalIndexResult:
        """Automatically reindex if the index is stale."""
        start_time = time.time()

        if self.needs_reindex(project_path, max_age_minutes):
            logger.info(f"Auto-reindexing {project_path or self.identity.workspace}")
            return self.incremental_index(project_path)

        logger.debug(f"Index for {project_path or self.identity.workspace} is fresh, skipping reindex")
        return IncrementalIndexResult(
            files_added=0,
            files_removed=0,
            files_modified=0,
            chunks_added=0,
            chunks_removed=0,
            time_taken=time.time() - start_time,
            success=True,
            collection=self.collection_name,
        )

    def close(self, grace_period: Optional[float] = None) -> None:
        """Drain in-flight deliveries, close clients and the event loop."""
        if self._closed:
            return
        grace = self.config.grace_period if grace_period is None else grace_period
        try:
            self._loop.run_until_complete(self.pipeline.shutdown(grace))
        finally:
            self._closed = True
            self._loop.close()
