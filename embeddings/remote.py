"""HTTP client for the remote code embedding service."""

import base64
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import numpy as np

from chunking.models import Chunk
from transport.errors import PermanentServiceError, TransientServiceError
from transport.http import JsonServiceClient

from .types import (
    STATUS_ACCEPTED,
    STATUS_ERROR,
    STATUS_SUCCESS,
    EmbedItemResult,
    EmbedResponse,
)

logger = logging.getLogger(__name__)

EMBED_PATH = '/api/v1/codebase/embed'
RESULTS_PATH = '/api/v1/codebase/embed/results/{request_id}'

MAX_CHUNKS_PER_REQUEST = 100
DEFAULT_MAX_PAYLOAD_BYTES = 2 * 1024 * 1024
MAX_QUERY_BYTES = 10 * 1024
PARSER_VERSION = 'v0.1.2'


def decode_vector(item: Dict[str, Any]) -> Optional[np.ndarray]:
    """Decode a plain or compressed (base64 little-endian float32) vector."""
    if item.get('isCompressed'):
        encoded = item.get('compressedVector')
        if not encoded:
            return None
        return np.frombuffer(base64.b64decode(encoded), dtype='<f4').astype(np.float32)
    vector = item.get('vector')
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32)


class RemoteEmbeddingClient:
    """Talks to ``/api/v1/codebase/embed``.

    One request carries at most ``MAX_CHUNKS_PER_REQUEST`` chunks. Per-chunk
    failures come back as results with status ``error``; request-level
    failures raise classified ``ServiceError`` subclasses.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = JsonServiceClient.DEFAULT_TIMEOUT,
        unique_id: str = '',
        processing_mode: str = 'sync',
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        model_name: str = 'remote',
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model_name = model_name
        self.unique_id = unique_id
        self.processing_mode = processing_mode
        self.max_payload_bytes = max_payload_bytes
        self._client = JsonServiceClient(base_url, token=token, timeout=timeout, transport=transport)
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_processing_time': 0.0,
        }

    def _build_request(self, chunks: List[Chunk], processing_mode: str) -> Dict[str, Any]:
        return {
            'requestId': f"req-{uuid.uuid4().hex[:16]}",
            'uniqueId': self.unique_id,
            'parserVersion': PARSER_VERSION,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'processingMode': processing_mode,
            'codeChunks': [chunk.to_payload() for chunk in chunks],
        }

    def _parse_results(self, data: Dict[str, Any], chunk_ids: List[str]) -> List[EmbedItemResult]:
        raw_results = data.get('results') or data.get('items') or []
        seen = {}
        for item in raw_results:
            chunk_id = item.get('chunkId')
            if chunk_id is None:
                continue
            status = str(item.get('status', STATUS_SUCCESS)).lower()
            vector = decode_vector(item) if status == STATUS_SUCCESS else None
            if status == STATUS_SUCCESS and vector is None:
                status, error = STATUS_ERROR, 'Result carries no vector'
            else:
                error = item.get('error')
            seen[chunk_id] = EmbedItemResult(
                chunk_id=chunk_id,
                vector=vector,
                status=STATUS_SUCCESS if status == STATUS_SUCCESS else STATUS_ERROR,
                error=error,
                model_version=item.get('modelVersion'),
            )

        results = []
        for chunk_id in chunk_ids:
            # A chunk the service silently dropped is worth another attempt
            results.append(seen.get(chunk_id) or EmbedItemResult(
                chunk_id=chunk_id, status=STATUS_ERROR, error='No result returned, try again',
            ))
        return results

    async def embed(self, chunks: List[Chunk], processing_mode: Optional[str] = None) -> EmbedResponse:
        """Embed up to ``MAX_CHUNKS_PER_REQUEST`` chunks in one request.

        Raises:
            ValueError: If the chunk list is empty or too long
            PermanentServiceError: If the encoded request exceeds the payload limit
            ServiceError: Classified request-level failure
        """
        if not chunks:
            raise ValueError("chunks cannot be empty")
        if len(chunks) > MAX_CHUNKS_PER_REQUEST:
            raise ValueError(f"chunks cannot exceed {MAX_CHUNKS_PER_REQUEST} items (got {len(chunks)})")

        payload = self._build_request(chunks, processing_mode or self.processing_mode)
        payload_size = len(json.dumps(payload).encode('utf-8'))
        if payload_size > self.max_payload_bytes:
            raise PermanentServiceError(
                f"Embed request of {payload_size} bytes exceeds payload limit of {self.max_payload_bytes} bytes"
            )

        start = time.monotonic()
        self.stats['total_requests'] += 1
        try:
            envelope = await self._client.request('POST', EMBED_PATH, payload)
        except Exception:
            self.stats['failed_requests'] += 1
            raise
        finally:
            self.stats['total_processing_time'] += time.monotonic() - start
        self.stats['successful_requests'] += 1

        if envelope.status == STATUS_ACCEPTED:
            request_id = envelope.data.get('requestId') or payload['requestId']
            logger.info(f"Embed request {request_id} accepted for async processing ({len(chunks)} chunks)")
            return EmbedResponse(
                status=STATUS_ACCEPTED,
                request_id=request_id,
                estimated_ms=envelope.data.get('estimatedProcessingTimeMs'),
            )

        results = self._parse_results(envelope.data, [chunk.id for chunk in chunks])
        failed = sum(1 for r in results if not r.ok)
        logger.debug(f"Embedded {len(results) - failed}/{len(results)} chunks")
        return EmbedResponse(results=results, request_id=envelope.data.get('requestId'))

    async def poll(self, request_id: str, chunk_ids: Optional[List[str]] = None) -> Optional[EmbedResponse]:
        """Fetch the result of an accepted request.

        Returns:
            The finished response, or None while the service is still processing
        """
        envelope = await self._client.request('GET', RESULTS_PATH.format(request_id=request_id))
        if envelope.status == 'processing':
            return None
        ids = chunk_ids or [item.get('chunkId') for item in envelope.data.get('results', []) if item.get('chunkId')]
        return EmbedResponse(results=self._parse_results(envelope.data, ids), request_id=request_id)

    async def embed_query(self, query: str) -> np.ndarray:
        """Generate an embedding for a search query."""
        if not query or len(query.encode('utf-8')) > MAX_QUERY_BYTES:
            raise ValueError(f"Query must be non-empty and at most {MAX_QUERY_BYTES} bytes")

        query_chunk = Chunk(
            id=f"query_{uuid.uuid4().hex[:16]}",
            file_path='search_query',
            start_line=1,
            end_line=1,
            content=query,
            language='text',
            parser='search',
        )
        response = await self.embed([query_chunk], processing_mode='sync')
        result = response.results[0] if response.results else None
        if result is None or not result.ok:
            raise TransientServiceError(f"Failed to embed query: {result.error if result else 'no result'}")
        return result.vector

    async def close(self) -> None:
        await self._client.close()
