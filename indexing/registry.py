"""Explicit registry of indexer instances keyed by collection identity."""

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from storage.collection import CollectionIdentity

from .config import IndexerConfig
from .incremental_indexer import IncrementalIndexer

logger = logging.getLogger(__name__)

IndexerFactory = Callable[[IndexerConfig, CollectionIdentity], IncrementalIndexer]


def _default_factory(config: IndexerConfig, identity: CollectionIdentity) -> IncrementalIndexer:
    return IncrementalIndexer(replace(config, workspace=identity.workspace), identity=identity)


class IndexerRegistry:
    """Creates at most one indexer per (owner, device, workspace)."""

    def __init__(self, config: Optional[IndexerConfig] = None, factory: Optional[IndexerFactory] = None):
        self.config = config or IndexerConfig.load()
        self._factory = factory or _default_factory
        self._indexers: Dict[CollectionIdentity, IncrementalIndexer] = {}
        self._lock = threading.Lock()

    def identity_for(self, workspace: str) -> CollectionIdentity:
        return CollectionIdentity(owner=self.config.owner, device=self.config.device, workspace=workspace)

    def get_or_create(self, identity: CollectionIdentity) -> IncrementalIndexer:
        with self._lock:
            indexer = self._indexers.get(identity)
            if indexer is None:
                logger.info(f"Creating indexer for collection {identity.name}")
                indexer = self._factory(self.config, identity)
                self._indexers[identity] = indexer
            return indexer

    def get(self, identity: CollectionIdentity) -> Optional[IncrementalIndexer]:
        with self._lock:
            return self._indexers.get(identity)

    def identities(self) -> List[CollectionIdentity]:
        with self._lock:
            return list(self._indexers)

    def shutdown(self, identity: CollectionIdentity, grace_period: Optional[float] = None) -> bool:
        """Close and forget one indexer.

        Returns:
            False if no indexer was registered for the identity
        """
        with self._lock:
            indexer = self._indexers.pop(identity, None)
        if indexer is None:
            return False
        indexer.close(grace_period)
        logger.info(f"Shut down indexer for collection {identity.name}")
        return True

    def shutdown_all(self, grace_period: Optional[float] = None) -> int:
        """Close every registered indexer; returns how many were closed."""
        closed = 0
        for identity in self.identities():
            if self.shutdown(identity, grace_period):
                closed += 1
        return closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._indexers)
