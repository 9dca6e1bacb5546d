"""On-disk vector store backed by FAISS and sqlitedict."""

import asyncio
import hashlib
import json
import logging
import shutil
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import numpy as np

try:
    import faiss
except ImportError:
    faiss = None

try:
    from sqlitedict import SqliteDict
except ImportError:
    SqliteDict = None

from .models import SearchHit, VectorDocument

T = TypeVar('T')


def faiss_id_for(chunk_id: str) -> int:
    """Stable positive int64 id for a chunk id."""
    return int(hashlib.sha1(chunk_id.encode('utf-8')).hexdigest()[:15], 16)


class LocalCollection:
    """One FAISS inner-product index plus its document metadata.

    Documents are keyed by chunk id, so upserting the same id replaces the
    earlier vector instead of adding a second one.
    """

    def __init__(self, storage_dir: Path):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.index_path = self.storage_dir / "code.index"
        self.metadata_path = self.storage_dir / "metadata.db"
        self.stats_path = self.storage_dir / "stats.json"

        self._index = None
        self._documents = None
        self._ids = None
        self.lock = threading.Lock()
        self._logger = logging.getLogger(__name__)

    @property
    def index(self):
        """Lazy loading of FAISS index."""
        if self._index is None and self.index_path.exists():
            self._logger.info(f"Loading existing index from {self.index_path}")
            self._index = faiss.read_index(str(self.index_path))
        return self._index

    @property
    def documents(self):
        """Lazy loading of metadata database (chunk id -> metadata)."""
        if self._documents is None:
            self._documents = SqliteDict(
                str(self.metadata_path),
                tablename="documents",
                autocommit=False,
                journal_mode="WAL",
            )
        return self._documents

    @property
    def ids(self):
        """FAISS id -> chunk id."""
        if self._ids is None:
            self._ids = SqliteDict(
                str(self.metadata_path),
                tablename="faiss_ids",
                autocommit=False,
                journal_mode="WAL",
            )
        return self._ids

    def create_index(self, embedding_dimension: int) -> None:
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(embedding_dimension))
        self._logger.info(f"Created flat index with dimension {embedding_dimension}")

    def ensure_index(self, embedding_dimension: int) -> None:
        if self.index is None:
            self.create_index(embedding_dimension)
            self.save()

    def upsert(self, documents: List[VectorDocument]) -> int:
        """Add or replace documents.

        Raises:
            ValueError: If a document has no vector or the dimension does not match
        """
        if not documents:
            return 0
        if any(doc.vector is None for doc in documents):
            raise ValueError("Cannot store a document without a vector")

        embeddings = np.array([doc.vector for doc in documents], dtype=np.float32)
        if self.index is None:
            self.create_index(embeddings.shape[1])
        if embeddings.shape[1] != self._index.d:
            raise ValueError(f"Vector dimension {embeddings.shape[1]} does not match index dimension {self._index.d}")

        # Normalize embeddings for cosine similarity
        faiss.normalize_L2(embeddings)

        faiss_ids = np.array([faiss_id_for(doc.id) for doc in documents], dtype=np.int64)
        self._index.remove_ids(faiss_ids)
        self._index.add_with_ids(embeddings, faiss_ids)

        for doc, faiss_id in zip(documents, faiss_ids):
            self.documents[doc.id] = {'faiss_id': int(faiss_id), 'metadata': doc.to_metadata()}
            self.ids[str(int(faiss_id))] = doc.id
        self._commit()
        self.save()

        self._logger.debug(f"Upserted {len(documents)} documents into {self.storage_dir.name}")
        return len(documents)

    def search(self, query_embedding: np.ndarray, k: int = 5) -> List[SearchHit]:
        """Search for similar chunks."""
        index = self.index
        if index is None or index.ntotal == 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float32).reshape(1, -1)
        faiss.normalize_L2(query)
        similarities, faiss_ids = index.search(query, min(k, index.ntotal))

        hits = []
        for similarity, faiss_id in zip(similarities[0], faiss_ids[0]):
            if faiss_id == -1:
                break
            chunk_id = self.ids.get(str(int(faiss_id)))
            entry = self.documents.get(chunk_id) if chunk_id else None
            if entry is None:
                continue
            metadata = dict(entry['metadata'])
            hits.append(SearchHit(
                chunk_id=chunk_id,
                score=float(similarity),
                file_path=metadata.pop('file_path', ''),
                start_line=metadata.pop('start_line', 0),
                end_line=metadata.pop('end_line', 0),
                content=metadata.pop('content', ''),
                metadata=metadata,
            ))
        return hits

    def remove_file_chunks(self, file_paths: List[str]) -> int:
        """Remove all chunks of the given files.

        Returns:
            Number of chunks removed
        """
        wanted = set(file_paths)
        doomed = [
            (chunk_id, entry['faiss_id'])
            for chunk_id, entry in self.documents.items()
            if entry['metadata'].get('file_path') in wanted
        ]
        if not doomed:
            return 0

        if self.index is not None:
            self._index.remove_ids(np.array([faiss_id for _, faiss_id in doomed], dtype=np.int64))
        for chunk_id, faiss_id in doomed:
            del self.documents[chunk_id]
            self.ids.pop(str(faiss_id), None)
        self._commit()
        self.save()

        self._logger.info(f"Removed {len(doomed)} chunks of {len(wanted)} files")
        return len(doomed)

    def count(self) -> int:
        return len(self.documents)

    def save(self) -> None:
        """Save the FAISS index and statistics to disk."""
        if self._index is not None:
            faiss.write_index(self._index, str(self.index_path))
        stats = {
            'total_chunks': len(self.documents),
            'index_size': self._index.ntotal if self._index is not None else 0,
            'embedding_dimension': self._index.d if self._index is not None else 0,
        }
        with open(self.stats_path, 'w') as f:
            json.dump(stats, f, indent=2)

    def get_stats(self) -> Dict[str, Any]:
        if self.stats_path.exists():
            with open(self.stats_path, 'r') as f:
                return json.load(f)
        return {'total_chunks': 0, 'index_size': 0, 'embedding_dimension': 0}

    def _commit(self) -> None:
        self.documents.commit()
        self.ids.commit()

    def close(self) -> None:
        for db in (self._documents, self._ids):
            if db is not None:
                db.close()
        self._documents = None
        self._ids = None
        self._index = None


class LocalVectorStore:
    """Vector store backend keeping one ``LocalCollection`` per collection name.

    FAISS and sqlite work runs in worker threads, one operation per collection
    at a time.
    """

    def __init__(self, storage_dir: str):
        if faiss is None:
            raise ImportError("faiss-cpu not found. Install with: pip install faiss-cpu")
        if SqliteDict is None:
            raise ImportError("sqlitedict not found. Install with: pip install sqlitedict")

        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._collections: Dict[str, LocalCollection] = {}
        self._logger = logging.getLogger(__name__)

    def _collection(self, name: str) -> LocalCollection:
        if name not in self._collections:
            self._collections[name] = LocalCollection(self.storage_dir / name)
        return self._collections[name]

    async def _in_thread(self, collection: LocalCollection, func: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with collection.lock:
                return func(*args)

        return await asyncio.to_thread(locked)

    async def ensure_collection(self, name: str, dimension: Optional[int] = None) -> None:
        collection = self._collection(name)
        if dimension:
            await self._in_thread(collection, collection.ensure_index, dimension)

    async def upsert(self, name: str, documents: List[VectorDocument]) -> int:
        collection = self._collection(name)
        return await self._in_thread(collection, collection.upsert, documents)

    async def search(self, name: str, vector: np.ndarray, top_k: int) -> List[SearchHit]:
        collection = self._collection(name)
        return await self._in_thread(collection, collection.search, vector, top_k)

    async def delete_by_files(self, name: str, file_paths: List[str]) -> int:
        collection = self._collection(name)
        return await self._in_thread(collection, collection.remove_file_chunks, file_paths)

    async def count(self, name: str) -> int:
        collection = self._collection(name)
        return await self._in_thread(collection, collection.count)

    async def drop_collection(self, name: str) -> bool:
        """Drop a collection; returns False when it did not exist."""
        collection = self._collections.pop(name, None)
        if collection is not None:
            await self._in_thread(collection, collection.close)
        path = self.storage_dir / name
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        self._logger.info(f"Dropped local collection {name}")
        return True

    async def close(self) -> None:
        collections = list(self._collections.values())
        self._collections.clear()
        for collection in collections:
            await self._in_thread(collection, collection.close)
