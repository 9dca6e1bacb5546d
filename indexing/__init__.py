"""Indexing core: progress, dispatch, delivery and orchestration."""

from .config import IndexerConfig
from .delivery import (
    BatchJob,
    ChunkOutcome,
    DeliveryPipeline,
    DeliveryReport,
    DeliveryState,
    PendingAsyncRequest,
    make_batch_id,
)
from .dispatcher import ConcurrentDispatcher, DispatcherStats
from .incremental_indexer import IncrementalIndexer, IncrementalIndexResult, create_embedder, create_gateway
from .locks import DedupLockRegistry, DeliveryLock
from .progress import ProgressTracker
from .registry import IndexerRegistry
from .retry import RetryExecutor, RetryPolicy

__all__ = [
    'BatchJob',
    'ChunkOutcome',
    'ConcurrentDispatcher',
    'DedupLockRegistry',
    'DeliveryLock',
    'DeliveryPipeline',
    'DeliveryReport',
    'DeliveryState',
    'DispatcherStats',
    'IncrementalIndexResult',
    'IncrementalIndexer',
    'IndexerConfig',
    'IndexerRegistry',
    'PendingAsyncRequest',
    'ProgressTracker',
    'RetryExecutor',
    'RetryPolicy',
    'create_embedder',
    'create_gateway',
    'make_batch_id',
]
