"""In-memory holding area used while the vector store is unreachable."""

import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from .models import SearchHit, VectorDocument

logger = logging.getLogger(__name__)


class TemporaryBuffer:
    """Per-collection queue of documents awaiting upload.

    A document re-buffered under the same id replaces the earlier copy, so a
    flush never uploads duplicates.
    """

    def __init__(self):
        self._pending: Dict[str, "OrderedDict[str, VectorDocument]"] = {}
        self._lock = threading.Lock()

    def add(self, key: str, documents: List[VectorDocument]) -> None:
        with self._lock:
            bucket = self._pending.setdefault(key, OrderedDict())
            for document in documents:
                bucket.pop(document.id, None)
                bucket[document.id] = document
        logger.debug(f"Buffered {len(documents)} documents for {key}")

    def peek(self, key: str) -> List[VectorDocument]:
        with self._lock:
            return list(self._pending.get(key, {}).values())

    def discard(self, key: str, ids: List[str]) -> None:
        """Remove the given ids once they were uploaded."""
        with self._lock:
            bucket = self._pending.get(key)
            if bucket is None:
                return
            for doc_id in ids:
                bucket.pop(doc_id, None)
            if not bucket:
                del self._pending[key]

    def remove_files(self, key: str, paths: List[str]) -> int:
        wanted = set(paths)
        with self._lock:
            bucket = self._pending.get(key)
            if not bucket:
                return 0
            doomed = [doc_id for doc_id, doc in bucket.items() if doc.file_path in wanted]
            for doc_id in doomed:
                del bucket[doc_id]
            return len(doomed)

    def clear(self, key: str) -> int:
        with self._lock:
            return len(self._pending.pop(key, {}))

    def keys(self) -> List[str]:
        with self._lock:
            return [key for key, bucket in self._pending.items() if bucket]

    def count(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is not None:
                return len(self._pending.get(key, {}))
            return sum(len(bucket) for bucket in self._pending.values())

    def search(self, key: str, query: str, top_k: int) -> List[SearchHit]:
        """Case-insensitive substring match over content, path and language."""
        needle = query.lower()
        hits = []
        for document in self.peek(key):
            haystacks = (document.content, document.file_path, document.language)
            if any(needle in (text or '').lower() for text in haystacks):
                # Rank by position only; there is no similarity here
                score = max(0.0, 0.9 - 0.1 * len(hits))
                hits.append(SearchHit(
                    chunk_id=document.id,
                    score=score,
                    file_path=document.file_path,
                    start_line=document.start_line,
                    end_line=document.end_line,
                    content=document.content,
                    metadata={'language': document.language, 'parser': document.parser,
                              'vector_model': 'temp-storage'},
                ))
                if len(hits) >= top_k:
                    break
        return hits
