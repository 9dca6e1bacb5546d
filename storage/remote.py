"""HTTP client for the remote vector database."""

import logging
from typing import Any, Dict, List, Optional

import httpx
import numpy as np

from transport.errors import PermanentServiceError
from transport.http import JsonServiceClient

from .models import SearchHit, VectorDocument

logger = logging.getLogger(__name__)

# Error code the store uses for "collection does not exist"
COLLECTION_NOT_FOUND_CODE = 15302
NOT_FOUND_MARKERS = ('not exist', 'not found', str(COLLECTION_NOT_FOUND_CODE))

DEFAULT_DIMENSION = 768
DEFAULT_METRIC = 'COSINE'


def is_not_found(error: PermanentServiceError) -> bool:
    text = (error.message or '').lower()
    return error.status_code == 404 or any(marker in text for marker in NOT_FOUND_MARKERS)


def collection_schema(dimension: int, metric: str = DEFAULT_METRIC) -> List[Dict[str, Any]]:
    """Index definitions declared when a collection is created."""
    indexes: List[Dict[str, Any]] = [
        {'fieldName': 'id', 'fieldType': 'string', 'indexType': 'primaryKey'},
        {
            'fieldName': 'vector',
            'fieldType': 'vector',
            'indexType': 'HNSW',
            'dimension': dimension,
            'metricType': metric,
            'params': {'M': 16, 'efConstruction': 200},
        },
    ]
    for field_name, field_type in (
        ('user_id', 'string'),
        ('device_id', 'string'),
        ('workspace_path', 'string'),
        ('file_path', 'string'),
        ('start_line', 'uint64'),
        ('end_line', 'uint64'),
        ('vector_model', 'string'),
    ):
        indexes.append({'fieldName': field_name, 'fieldType': field_type, 'indexType': 'filter'})
    return indexes


def _quote(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


class RemoteVectorStore:
    """Vector store backend speaking the ``/collection/*`` and ``/document/*`` API."""

    def __init__(
        self,
        base_url: str,
        database: str,
        owner: str,
        device: str,
        workspace: str,
        token: Optional[str] = None,
        timeout: float = JsonServiceClient.DEFAULT_TIMEOUT,
        dimension: int = DEFAULT_DIMENSION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.database = database
        self.owner = owner
        self.device = device
        self.workspace = workspace
        self.dimension = dimension
        self._client = JsonServiceClient(base_url, token=token, timeout=timeout, transport=transport)

    def _body(self, name: str, **extra: Any) -> Dict[str, Any]:
        return {'database': self.database, 'collection': name, **extra}

    async def ensure_collection(self, name: str, dimension: Optional[int] = None) -> None:
        """Create the collection unless it already exists."""
        try:
            await self._client.request('POST', '/collection/describe', self._body(name))
            return
        except PermanentServiceError as e:
            if not is_not_found(e):
                raise

        logger.info(f"Creating collection {name}")
        await self._client.request('POST', '/collection/create', self._body(
            name,
            shardNum=1,
            replicaNum=0,
            description=f"Code index collection: {name}",
            indexes=collection_schema(dimension or self.dimension),
        ))

    async def upsert(self, name: str, documents: List[VectorDocument]) -> int:
        if not documents:
            return 0
        records = [doc.to_record(self.owner, self.device, self.workspace) for doc in documents]
        envelope = await self._client.request('POST', '/document/upsert', self._body(
            name, documents=records, buildIndex=True,
        ))
        return int(envelope.data.get('affectedCount', len(records)))

    async def search(self, name: str, vector: np.ndarray, top_k: int) -> List[SearchHit]:
        envelope = await self._client.request('POST', '/document/search', self._body(
            name,
            search={
                'vectors': [[float(v) for v in vector]],
                'limit': top_k,
                'retrieveVector': False,
            },
        ))
        rows = envelope.data.get('documents') or envelope.data.get('results') or []
        # One result list per query vector
        if rows and isinstance(rows[0], list):
            rows = rows[0]

        return [
            SearchHit(
                chunk_id=row.get('id', ''),
                score=float(row.get('score', 0.0)),
                file_path=row.get('file_path', ''),
                start_line=int(row.get('start_line', 0)),
                end_line=int(row.get('end_line', 0)),
                content=row.get('code', ''),
                metadata={k: row[k] for k in ('language', 'parser', 'vector_model') if k in row},
            )
            for row in rows
        ]

    async def delete_by_files(self, name: str, file_paths: List[str]) -> int:
        if not file_paths:
            return 0
        file_filter = f"file_path in ({', '.join(_quote(p) for p in file_paths)})"
        envelope = await self._client.request('POST', '/document/delete', self._body(name, filter=file_filter))
        return int(envelope.data.get('affectedCount', 0))

    async def drop_collection(self, name: str) -> bool:
        """Drop a collection; returns False when it did not exist."""
        try:
            await self._client.request('POST', '/collection/drop', self._body(name))
        except PermanentServiceError as e:
            if is_not_found(e):
                logger.info(f"Collection {name} does not exist, nothing to drop")
                return False
            raise
        return True

    async def close(self) -> None:
        await self._client.close()
